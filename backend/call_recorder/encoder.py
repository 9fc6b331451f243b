"""
Chunked encoder for the mixed call stream, using ffmpeg.

Mixed PCM is piped into an ffmpeg process that muxes Opus into WebM on
stdout. Encoded bytes are collected continuously and handed out as one
chunk per flush interval. Empty flushes are skipped.

Callbacks (all optional, called on the event loop thread):
- on_started()
- on_chunk(data: bytes)
- on_error(cause: EncoderError)
- on_stopped()
"""

import asyncio
import functools
import shutil
import subprocess
import sys

from .constants import (
    AUDIO_BITS_PER_SECOND,
    CHUNK_INTERVAL_SECONDS,
    ENCODER_READ_SIZE,
    FALLBACK_MIME_TYPE,
    PREFERRED_MIME_TYPE,
    PUMP_INTERVAL_SECONDS,
)
from .errors import EncoderError

MIME_EXTENSIONS = {
    PREFERRED_MIME_TYPE: '.webm',
    FALLBACK_MIME_TYPE: '.webm',
}


@functools.lru_cache(maxsize=None)
def ffmpeg_encoders(ffmpeg: str = 'ffmpeg') -> str:
    """
    List ffmpeg's audio encoders.

    Returns:
        ffmpeg's encoder listing, or '' if ffmpeg is not available
    """
    if shutil.which(ffmpeg) is None:
        return ''
    try:
        result = subprocess.run(
            [ffmpeg, '-hide_banner', '-encoders'],
            capture_output=True,
            text=True,
            timeout=10
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        print(f"Warning: could not query ffmpeg encoders: {e}", file=sys.stderr)
        return ''
    return result.stdout


def is_type_supported(mime_type: str, ffmpeg: str = 'ffmpeg') -> bool:
    encoders = ffmpeg_encoders(ffmpeg)
    if not encoders:
        return False
    if mime_type == PREFERRED_MIME_TYPE:
        return 'libopus' in encoders
    return mime_type == FALLBACK_MIME_TYPE


def negotiate_mime_type(ffmpeg: str = 'ffmpeg') -> str:
    """Best available container/codec: Opus in WebM, else ffmpeg's WebM default."""
    if is_type_supported(PREFERRED_MIME_TYPE, ffmpeg):
        return PREFERRED_MIME_TYPE
    print(f"Warning: libopus not available, falling back to {FALLBACK_MIME_TYPE}", file=sys.stderr)
    return FALLBACK_MIME_TYPE


def build_ffmpeg_command(
    ffmpeg: str,
    mime_type: str,
    sample_rate: int,
    channels: int,
    bits_per_second: int = AUDIO_BITS_PER_SECOND,
    chunk_interval: float = CHUNK_INTERVAL_SECONDS
) -> list:
    """ffmpeg arguments: raw s16le on stdin, WebM on stdout."""
    cmd = [
        ffmpeg,
        '-hide_banner',
        '-loglevel', 'error',
        '-f', 's16le',
        '-ar', str(sample_rate),
        '-ac', str(channels),
        '-i', 'pipe:0',
    ]
    if mime_type == PREFERRED_MIME_TYPE:
        cmd += [
            '-c:a', 'libopus',
            '-b:a', f'{bits_per_second // 1000}k',
            '-vbr', 'on',
            '-application', 'audio',
        ]
    else:
        cmd += ['-b:a', f'{bits_per_second // 1000}k']
    cmd += [
        '-f', 'webm',
        '-live', '1',
        '-cluster_time_limit', str(int(chunk_interval * 1000)),
        '-flush_packets', '1',
        'pipe:1',
    ]
    return cmd


class CaptureRecorder:
    """
    Wraps a mixed stream with a chunked ffmpeg encoder.

    States: 'inactive' -> 'recording' -> 'stopping' -> 'inactive', with
    'errored' when ffmpeg fails mid-recording (stop() still acknowledges).
    """

    def __init__(
        self,
        stream,
        mime_type: str = None,
        audio_bits_per_second: int = AUDIO_BITS_PER_SECOND,
        ffmpeg: str = 'ffmpeg'
    ):
        self.stream = stream
        self.mime_type = mime_type
        self.audio_bits_per_second = audio_bits_per_second
        self.ffmpeg = ffmpeg
        self.state = 'inactive'

        self.on_started = None
        self.on_chunk = None
        self.on_error = None
        self.on_stopped = None

        self._process = None
        self._closed = False
        self._pending = bytearray()
        self._feed_task = None
        self._collect_task = None
        self._flush_task = None

    async def start(self, timeslice: float = CHUNK_INTERVAL_SECONDS) -> None:
        if self.state != 'inactive' or self._process is not None:
            raise EncoderError("Recorder was already started")

        if self.mime_type is None:
            self.mime_type = await asyncio.to_thread(negotiate_mime_type, self.ffmpeg)
        if not await asyncio.to_thread(is_type_supported, self.mime_type, self.ffmpeg):
            raise EncoderError(
                f"Cannot encode {self.mime_type}: ffmpeg not found or codec unavailable.\n"
                f"Install ffmpeg (with libopus) and make sure it is in PATH."
            )
        if self._closed:
            return

        cmd = build_ffmpeg_command(
            self.ffmpeg,
            self.mime_type,
            self.stream.sample_rate,
            self.stream.channels,
            self.audio_bits_per_second,
            timeslice
        )
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise EncoderError(f"Failed to start ffmpeg: {e}")

        if self._closed:
            # Stopped while ffmpeg was starting
            self._kill()
            return

        self.state = 'recording'
        self._feed_task = asyncio.create_task(self._feed())
        self._collect_task = asyncio.create_task(self._collect())
        self._flush_task = asyncio.create_task(self._flush_periodically(timeslice))
        print(f"Encoder started ({self.mime_type}, {self.audio_bits_per_second // 1000} kbps)", file=sys.stderr)
        self._emit(self.on_started)

    async def _feed(self) -> None:
        """Push mixed PCM into ffmpeg."""
        try:
            while self.state == 'recording':
                data = self.stream.read()
                if data:
                    self._process.stdin.write(data)
                    await self._process.stdin.drain()
                await asyncio.sleep(PUMP_INTERVAL_SECONDS)
        except (BrokenPipeError, ConnectionResetError) as e:
            self._fail(EncoderError(f"Encoder input closed: {e}"))

    async def _collect(self) -> None:
        """Read encoded bytes until ffmpeg closes stdout."""
        while True:
            data = await self._process.stdout.read(ENCODER_READ_SIZE)
            if not data:
                break
            self._pending.extend(data)

        returncode = await self._process.wait()
        if self.state == 'recording':
            stderr = (await self._process.stderr.read()).decode(errors='replace').strip()
            self._fail(EncoderError(f"ffmpeg exited unexpectedly (code {returncode}): {stderr}"))

    async def _flush_periodically(self, timeslice: float) -> None:
        while self.state == 'recording':
            await asyncio.sleep(timeslice)
            self._flush()

    def _flush(self) -> None:
        if not self._pending:
            return
        chunk = bytes(self._pending)
        self._pending.clear()
        self._emit(self.on_chunk, chunk)

    def _fail(self, error: EncoderError) -> None:
        if self.state != 'recording':
            return
        print(f"ERROR: {error}", file=sys.stderr)
        self.state = 'errored'
        self._cancel_tasks()
        self._kill()
        self._emit(self.on_error, error)

    async def stop(self) -> None:
        """Finish encoding; on_stopped fires once ffmpeg has drained."""
        if self.state == 'errored':
            self._pending.clear()
            self.state = 'inactive'
            self._emit(self.on_stopped)
            return
        if self.state != 'recording':
            if self._process is None and not self._closed:
                # Never got going; nothing to drain
                self._closed = True
                self._emit(self.on_stopped)
            return

        self.state = 'stopping'
        for task in (self._feed_task, self._flush_task):
            if task is not None:
                task.cancel()

        try:
            data = self.stream.read()
            if data:
                self._process.stdin.write(data)
            self._process.stdin.close()
            await self._process.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass

        if self._collect_task is not None:
            await self._collect_task

        # Final flush, delivered before on_stopped
        self._flush()
        self.state = 'inactive'
        print("Encoder stopped", file=sys.stderr)
        self._emit(self.on_stopped)

    def abort(self) -> None:
        """Kill the encoder without events. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self.state = 'inactive'
        self._cancel_tasks()
        self._kill()
        self._pending.clear()

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for task in (self._feed_task, self._collect_task, self._flush_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

    def _kill(self) -> None:
        if self._process is not None and self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    def _emit(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            print(f"Warning: recorder callback failed: {e}", file=sys.stderr)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
        return True
    except RuntimeError:
        return False
