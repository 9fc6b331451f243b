"""
Recording Orchestrator - decides when a call is recorded and owns every
resource involved.

Control events (session signals, end-call, acquisition results, encoder
events) are queued in arrival order and applied one at a time through the
pure transition() function in state.py; this module only executes the
resulting effects. The CaptureSession and the streams it holds are never
touched by anything else.
"""

import asyncio
import functools
import itertools
import sys
import time
import traceback
from datetime import datetime, timezone
from typing import Callable, Optional

from . import notifications
from .artifact import finalize
from .constants import (
    ACQUIRE_MAX_ATTEMPTS,
    ACQUIRE_RETRY_DELAY_SECONDS,
    AUDIO_SESSION_DEBOUNCE_SECONDS,
    CHUNK_INTERVAL_SECONDS,
    PREFERRED_MIME_TYPE,
    STOP_TIMEOUT_SECONDS,
)
from .encoder import CaptureRecorder
from .errors import AcquisitionError, AcquisitionFailure, EncoderError
from .mixer import MixingGraph
from .platform_utils import parse_process_names
from .state import (
    AcquireFailed,
    AcquireSucceeded,
    ChunkReady,
    Effect,
    EndCall,
    RecorderFailed,
    RecorderStarted,
    RecorderStopped,
    RetryElapsed,
    SessionSignal,
    SessionView,
    State,
    StopTimedOut,
    Teardown,
    transition,
)
from .streams import MICROPHONE, SYSTEM


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaptureSession:
    """Live, mutable state of one recording attempt."""

    def __init__(self, session_id: int, process_name: str):
        self.session_id = session_id
        self.process_name = process_name
        self.sources = {}
        self.graph = None
        self.mixed = None
        self.recorder = None
        self.chunks = []
        self.retry_count = 0
        self.end_requested = False
        self.encoder_error = None

        # Monotonic instants for the duration, wall-clock for the metadata
        self.recording_clock = None
        self.start_clock = None
        self.stop_clock = None
        self.started_at = None
        self.ended_at = None

        self.acquire_task = None
        self.retry_handle = None
        self.stop_handle = None

    def __repr__(self):
        return (
            f"<CaptureSession #{self.session_id} {self.process_name} "
            f"chunks={len(self.chunks)} retries={self.retry_count}>"
        )


def _release_when_done(task: asyncio.Future) -> None:
    """Stop a stream whose acquisition finished after nobody wanted it."""
    if task.cancelled() or task.exception() is not None:
        return
    task.result().stop()


class RecordingOrchestrator:
    """
    State machine tying monitor, acquirer, mixer, encoder and finalizer together.

    Args:
        acquirer: StreamAcquirer (acquire(kind, source_id) coroutine)
        agent_id: agent the recordings belong to
        platform: call platform name (e.g. 'Teams')
        monitor_factory: callable returning a new SessionMonitor
        recorder_factory: callable(mixed_stream) -> CaptureRecorder
        delivery: object with an async deliver(artifact) (persistence, analysis)
        bus: NotificationBus for UI status
        clock: monotonic clock used for durations
        system_source_id: optional desktop source for system audio
    """

    def __init__(
        self,
        acquirer,
        agent_id: str = '',
        platform: str = '',
        monitor_factory: Optional[Callable] = None,
        recorder_factory: Optional[Callable] = None,
        delivery=None,
        bus: Optional[notifications.NotificationBus] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _utcnow,
        max_attempts: int = ACQUIRE_MAX_ATTEMPTS,
        retry_delay: float = ACQUIRE_RETRY_DELAY_SECONDS,
        stop_timeout: float = STOP_TIMEOUT_SECONDS,
        chunk_interval: float = CHUNK_INTERVAL_SECONDS,
        debounce: float = AUDIO_SESSION_DEBOUNCE_SECONDS,
        system_source_id=None,
    ):
        self.acquirer = acquirer
        self.agent_id = agent_id
        self.platform = platform
        self.monitor_factory = monitor_factory
        self.recorder_factory = recorder_factory or CaptureRecorder
        self.delivery = delivery
        self.bus = bus
        self.clock = clock
        self.wall_clock = wall_clock
        self.max_retries = max(0, max_attempts - 1)
        self.retry_delay = retry_delay
        self.stop_timeout = stop_timeout
        self.chunk_interval = chunk_interval
        self.debounce = debounce
        self.system_source_id = system_source_id

        self.state = State.IDLE
        self.session: Optional[CaptureSession] = None
        self.sessions_created = 0

        self._queue = asyncio.Queue()
        self._session_ids = itertools.count(1)
        self._monitors = {}
        self._deliveries = set()
        self._runner = None
        self._loop = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start consuming control events on the running loop."""
        self._loop = asyncio.get_running_loop()
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self.run())

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        while True:
            event = await self._queue.get()
            try:
                self.dispatch(event)
            except Exception as e:
                print(f"ERROR handling {type(event).__name__}: {e}", file=sys.stderr)
                traceback.print_exc(file=sys.stderr)

    async def shutdown(self) -> None:
        """Stop monitoring, tear down any session, wait for pending deliveries."""
        self.stop_monitoring()
        self.teardown('shutdown')

        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None

        # Events still queued belong to the torn-down session
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if self._is_stale(event):
                self._discard_stale(event)

        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

        if self.bus is not None:
            self.bus.cancel_pending()

    @property
    def is_recording(self) -> bool:
        return self.state in (State.RECORDING, State.STOPPING)

    @property
    def level(self) -> float:
        """Peak level of the mixed stream while recording, else 0."""
        if self.session is None or self.session.mixed is None:
            return 0.0
        return self.session.mixed.level

    @property
    def watched_processes(self) -> list:
        return list(self._monitors)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def submit(self, event) -> None:
        """Queue a control event (event loop thread only)."""
        self._queue.put_nowait(event)

    def end_call(self) -> None:
        self.submit(EndCall())

    def teardown(self, reason: str = 'shutdown') -> None:
        """Forced teardown, applied immediately. Idempotent."""
        self.dispatch(Teardown(reason))

    def start_monitoring(self, process_names: str) -> None:
        """
        Watch the given comma-separated processes.

        Names are trimmed and deduplicated; a process that is already
        watched keeps its existing subscription. Processes no longer listed
        are unsubscribed, and a session belonging to one of them is torn down.
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        names = parse_process_names(process_names)
        print(f"Will monitor these processes: {names}", file=sys.stderr)

        removed = [name for name in self._monitors if name not in names]
        for name in removed:
            print(f"Stopping monitor for: {name}", file=sys.stderr)
            self._monitors.pop(name).stop()
        if self.session is not None and self.session.process_name in removed:
            self.teardown('watched-process change')

        if self.monitor_factory is None:
            if names:
                print("WARNING: No session monitor available, call detection disabled", file=sys.stderr)
            return

        for name in names:
            if name in self._monitors:
                continue
            print(f"Starting monitoring for: {name}", file=sys.stderr)
            monitor = self.monitor_factory()
            monitor.start(name, functools.partial(self._on_monitor_update, name))
            self._monitors[name] = monitor

    def stop_monitoring(self) -> None:
        if self._monitors:
            print("Stopping audio monitoring", file=sys.stderr)
        for monitor in self._monitors.values():
            monitor.stop()
        self._monitors.clear()
        self.teardown('stop-monitoring')

    def _on_monitor_update(self, process_name: str, active: bool) -> None:
        """Monitor callback; may run on a monitor thread."""
        signal = SessionSignal(process_name, bool(active))
        self._loop.call_soon_threadsafe(self._handle_signal, signal)

    def _handle_signal(self, signal: SessionSignal) -> None:
        print(f"Audio session for {signal.process_name}: {signal.active}", file=sys.stderr)
        # Raw signal drives the state machine; the UI copy is debounced
        self.submit(signal)
        if self.bus is not None:
            self.bus.publish_debounced(notifications.AUDIO_SESSION_UPDATE, signal.active, self.debounce)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    def dispatch(self, event) -> None:
        """Apply one control event."""
        if self._is_stale(event):
            self._discard_stale(event)
            return
        if isinstance(event, SessionSignal) and event.process_name not in self._monitors:
            print(f"Ignoring signal for unwatched process {event.process_name}", file=sys.stderr)
            return

        result = transition(self.state, event, self._view())
        previous = self.state
        self.state = result.state
        if previous is not result.state:
            print(f"Recorder: {previous.value} -> {result.state.value} ({type(event).__name__})", file=sys.stderr)

        for effect in result.effects:
            self._apply(effect, event)

    def _view(self) -> SessionView:
        session = self.session
        if session is None:
            return SessionView(max_retries=self.max_retries)
        return SessionView(
            process_name=session.process_name,
            retry_count=session.retry_count,
            max_retries=self.max_retries,
            end_requested=session.end_requested,
        )

    def _is_stale(self, event) -> bool:
        session_id = getattr(event, 'session_id', None)
        if session_id is None:
            return False
        return self.session is None or self.session.session_id != session_id

    def _discard_stale(self, event) -> None:
        if isinstance(event, AcquireSucceeded):
            for stream in event.sources.values():
                stream.stop()
            if event.mixed is not None:
                event.mixed.stop()

    def _apply(self, effect: Effect, event) -> None:
        session = self.session

        if effect is Effect.BEGIN_SESSION:
            self.session = CaptureSession(next(self._session_ids), event.process_name)
            self.sessions_created += 1
            print(f"Call detected on {event.process_name}, starting capture", file=sys.stderr)

        elif effect is Effect.ACQUIRE:
            session.acquire_task = asyncio.create_task(self._acquire(session.session_id))

        elif effect is Effect.SCHEDULE_RETRY:
            session.retry_count += 1
            print(
                f"Acquisition failed: {event.error}\n"
                f"  Retrying ({session.retry_count}/{self.max_retries}) in {self.retry_delay}s...",
                file=sys.stderr
            )
            session.retry_handle = self._loop.call_later(
                self.retry_delay, self.submit, RetryElapsed(session.session_id)
            )

        elif effect is Effect.CANCEL_PENDING:
            self._cancel_pending(session)

        elif effect is Effect.MARK_ENDED:
            print("Call ended while acquiring audio, recording will not start", file=sys.stderr)
            session.end_requested = True

        elif effect is Effect.ADOPT_STREAMS:
            session.sources = dict(event.sources)
            session.graph = event.graph
            session.mixed = event.mixed

        elif effect is Effect.START_RECORDER:
            self._start_recorder(session)

        elif effect is Effect.MARK_STARTED:
            session.start_clock = self.clock()
            session.started_at = self.wall_clock()

        elif effect is Effect.APPEND_CHUNK:
            if event.data:
                session.chunks.append(event.data)

        elif effect is Effect.DROP_CHUNK:
            print(f"Dropping {len(event.data)} bytes delivered after stop", file=sys.stderr)

        elif effect is Effect.MARK_ENCODER_ERROR:
            print(f"ERROR: encoder failed during recording: {event.error}", file=sys.stderr)
            session.encoder_error = event.error

        elif effect is Effect.STOP_RECORDER:
            self._stop_recorder(session)

        elif effect is Effect.ABORT_RECORDER:
            if session.recorder is not None:
                session.recorder.abort()

        elif effect is Effect.RELEASE_STREAMS:
            self._release_streams(session)

        elif effect is Effect.FINALIZE:
            self._finalize(session)

        elif effect is Effect.FINALIZE_PARTIAL:
            if session.chunks:
                print("Preserving partial recording", file=sys.stderr)
                self._finalize(session)
            else:
                print("Discarding session, nothing was recorded", file=sys.stderr)

        elif effect is Effect.REPORT_STARTED:
            print("Recording started!", file=sys.stderr)
            self._publish(notifications.RECORDING_STATUS, notifications.STARTED)

        elif effect is Effect.REPORT_FAILED:
            print(
                f"ERROR: could not start recording after {session.retry_count + 1} attempt(s): {event.error}",
                file=sys.stderr
            )
            self._publish(notifications.RECORDING_STATUS, notifications.ERROR)

        elif effect is Effect.END_SESSION:
            self._cancel_pending(session)
            self.session = None

        elif effect is Effect.IGNORE:
            print("Recording already in progress, ignoring start signal", file=sys.stderr)

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    async def _acquire(self, session_id: int) -> None:
        try:
            sources, graph, mixed = await self._acquire_sources()
        except AcquisitionError as e:
            self.submit(AcquireFailed(session_id, e))
            return
        self.submit(AcquireSucceeded(session_id, sources, graph, mixed))

    async def _acquire_sources(self):
        """Acquire system and microphone audio in parallel and mix them."""
        requests = {SYSTEM: self.system_source_id, MICROPHONE: None}
        tasks = {
            kind: asyncio.ensure_future(self.acquirer.acquire(kind, source_id))
            for kind, source_id in requests.items()
        }
        try:
            await asyncio.wait(tasks.values())
        except asyncio.CancelledError:
            # Device opens can not be interrupted; release whatever they return
            for task in tasks.values():
                task.add_done_callback(_release_when_done)
            raise

        sources = {}
        errors = []
        for kind, task in tasks.items():
            if task.exception() is None:
                sources[kind] = task.result()
            else:
                errors.append(task.exception())

        try:
            if errors:
                error = errors[0]
                if isinstance(error, AcquisitionError):
                    raise error
                raise AcquisitionError(AcquisitionFailure.DEVICE_UNAVAILABLE, str(error)) from error

            for kind, stream in sources.items():
                if not stream.active or not stream.get_audio_tracks():
                    raise AcquisitionError(
                        AcquisitionFailure.NO_AUDIO_TRACK,
                        f"{kind} stream is not active or has no audio track"
                    )

            graph = MixingGraph()
            graph.connect(sources[MICROPHONE])
            graph.connect(sources[SYSTEM])
            mixed = graph.output()
        except BaseException:
            for stream in sources.values():
                stream.stop()
            raise

        return sources, graph, mixed

    def _start_recorder(self, session: CaptureSession) -> None:
        session_id = session.session_id
        recorder = self.recorder_factory(session.mixed)
        recorder.on_started = lambda: self.submit(RecorderStarted(session_id))
        recorder.on_chunk = lambda data: self.submit(ChunkReady(session_id, data))
        recorder.on_error = lambda error: self.submit(RecorderFailed(session_id, error))
        recorder.on_stopped = lambda: self.submit(RecorderStopped(session_id))
        session.recorder = recorder
        session.recording_clock = self.clock()
        session.started_at = self.wall_clock()

        async def start():
            try:
                await recorder.start(self.chunk_interval)
            except (EncoderError, OSError) as e:
                self.submit(RecorderFailed(session_id, e))

        asyncio.create_task(start())

    def _stop_recorder(self, session: CaptureSession) -> None:
        self._mark_stop(session)
        session_id = session.session_id
        recorder = session.recorder

        session.stop_handle = self._loop.call_later(
            self.stop_timeout, self.submit, StopTimedOut(session_id)
        )

        async def stop():
            try:
                await recorder.stop()
            except Exception as e:
                self.submit(RecorderFailed(session_id, e))

        asyncio.create_task(stop())

    def _mark_stop(self, session: CaptureSession) -> None:
        if session.stop_clock is None:
            session.stop_clock = self.clock()
            session.ended_at = self.wall_clock()

    def _cancel_pending(self, session: Optional[CaptureSession]) -> None:
        if session is None:
            return
        if session.acquire_task is not None and not session.acquire_task.done():
            session.acquire_task.cancel()
        for handle in (session.retry_handle, session.stop_handle):
            if handle is not None:
                handle.cancel()
        session.retry_handle = None
        session.stop_handle = None

    def _release_streams(self, session: CaptureSession) -> None:
        """Stop every acquired stream once, then forget it."""
        for kind, stream in list(session.sources.items()):
            stream.stop()
            print(f"Released {kind} stream", file=sys.stderr)
        session.sources = {}
        if session.mixed is not None:
            session.mixed.stop()
            session.mixed = None
        session.graph = None

    def _finalize(self, session: CaptureSession) -> None:
        self._mark_stop(session)
        start_clock = session.start_clock if session.start_clock is not None else session.recording_clock
        if start_clock is None:
            start_clock = session.stop_clock
        duration = session.stop_clock - start_clock

        recorder = session.recorder
        mime_type = getattr(recorder, 'mime_type', None) or PREFERRED_MIME_TYPE

        try:
            artifact = finalize(
                session.chunks,
                mime_type,
                duration,
                self.agent_id,
                self.platform,
                session.started_at or session.ended_at,
                session.ended_at,
                now=session.ended_at,
            )
        except EncoderError as e:
            print(f"ERROR: recording produced no audio: {e}", file=sys.stderr)
            self._publish(notifications.RECORDING_STATUS, notifications.ERROR)
            return

        print(f"Recording finalized: {artifact.file_name}", file=sys.stderr)
        print(f"  Chunks: {len(session.chunks)}", file=sys.stderr)
        print(f"  Size: {artifact.size / 1024:.1f} KB", file=sys.stderr)
        print(f"  Duration: {artifact.duration_seconds:.2f} seconds", file=sys.stderr)

        if session.encoder_error is not None:
            self._publish(notifications.RECORDING_STATUS, notifications.ERROR)

        if self.delivery is not None:
            task = asyncio.ensure_future(self.delivery.deliver(artifact))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

    def _publish(self, channel: str, payload) -> None:
        if self.bus is not None:
            self.bus.publish(channel, payload)
