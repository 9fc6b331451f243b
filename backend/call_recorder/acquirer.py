"""
Stream acquisition for system (loopback) and microphone audio.

Opening a device blocks inside PortAudio, so acquire() runs the open in a
worker thread and the orchestrator's event loop keeps handling signals.
PortAudio open/close calls are not thread-safe: one acquirer opens and
closes its devices one at a time, even when both sources are requested
together.

Implementations:
- SoundDeviceStreamAcquirer: sounddevice, loopback via a monitor/virtual
  input device (PulseAudio/PipeWire monitors, BlackHole, Stereo Mix)
- WasapiStreamAcquirer: pyaudiowpatch WASAPI loopback (Windows)
"""

import asyncio
import sys
import threading
from abc import ABC, abstractmethod

from .constants import COMMON_SAMPLE_RATES, DEFAULT_BLOCK_FRAMES
from .devices import DeviceManager, select_device
from .errors import AcquisitionError, AcquisitionFailure
from .streams import AudioStream, AudioTrack, MICROPHONE, SYSTEM

# What a microphone request asks the host for
MIC_CONSTRAINTS = {
    'echo_cancellation': True,
    'noise_suppression': True,
    'auto_gain_control': True,
}

# System capture is audio only
SYSTEM_CONSTRAINTS = {
    'video': False,
}

PERMISSION_HINTS = ('permission', 'denied', 'not authorized', 'unauthorized', 'access')


def classify_device_error(kind: str, error: Exception) -> AcquisitionError:
    """Map a PortAudio/host error onto the acquisition taxonomy."""
    message = str(error)
    lowered = message.lower()
    if any(hint in lowered for hint in PERMISSION_HINTS):
        return AcquisitionError(
            AcquisitionFailure.PERMISSION_DENIED,
            f"Access to the {kind} device was refused ({message}).\n"
            f"Grant microphone / screen recording access to this application and retry."
        )
    return AcquisitionError(
        AcquisitionFailure.DEVICE_UNAVAILABLE,
        f"Could not open the {kind} device ({message})."
    )


def mic_settings() -> dict:
    """
    Constraints actually applied to a microphone stream.

    PortAudio offers no echo canceller; noise suppression (DC removal and
    gate) and automatic gain are done by the mixing graph.
    """
    return {
        'requested': dict(MIC_CONSTRAINTS),
        'echo_cancellation': False,
        'noise_suppression': True,
        'auto_gain_control': True,
    }


def candidate_rates(default_rate: int) -> list:
    """Default rate first, then the common rates."""
    rates = [default_rate]
    for rate in COMMON_SAMPLE_RATES:
        if rate not in rates:
            rates.append(rate)
    return rates


class BaseStreamAcquirer(ABC):
    """Abstract base class for platform-specific stream acquirers."""

    def __init__(self):
        self._device_lock = threading.Lock()

    async def acquire(self, kind: str, source_id=None) -> AudioStream:
        """
        Obtain a live audio stream.

        Args:
            kind: 'system' or 'microphone'
            source_id: Optional device id or name substring

        Returns:
            AudioStream: started stream

        Raises:
            AcquisitionError: PermissionDenied, NoAudioTrack or DeviceUnavailable
        """
        if kind not in (SYSTEM, MICROPHONE):
            raise ValueError(f"Unknown source kind: {kind!r}")
        return await asyncio.to_thread(self._open_serialized, kind, source_id)

    def _open_serialized(self, kind: str, source_id) -> AudioStream:
        with self._device_lock:
            return self._open(kind, source_id)

    @abstractmethod
    def _open(self, kind: str, source_id) -> AudioStream:
        """Open and start a device stream (blocking)."""

    def close(self) -> None:
        """Release host audio resources held by the acquirer."""

    def _no_device(self, kind: str, source_id) -> AcquisitionError:
        wanted = f" matching {source_id!r}" if source_id not in (None, '') else ''
        if kind == SYSTEM:
            suggestions = (
                "Suggestions:\n"
                "  1. Check that the call application plays through the default output device\n"
                "  2. On Linux, make sure the PulseAudio/PipeWire monitor source is available\n"
                "  3. On macOS, install a loopback device such as BlackHole"
            )
        else:
            suggestions = (
                "Suggestions:\n"
                "  1. Check that a microphone is connected and enabled\n"
                "  2. Check microphone privacy settings for this application"
            )
        return AcquisitionError(
            AcquisitionFailure.DEVICE_UNAVAILABLE,
            f"No {kind} capture device found{wanted}.\n{suggestions}"
        )


class SoundDeviceStreamAcquirer(BaseStreamAcquirer):
    """Stream acquisition using sounddevice (macOS, Linux)."""

    def __init__(self, block_frames: int = DEFAULT_BLOCK_FRAMES):
        super().__init__()
        self.block_frames = block_frames
        self.devices = DeviceManager()

    def _resolve(self, kind: str, source_id):
        listing = self.devices.list_all_devices()
        if kind == MICROPHONE:
            if source_id in (None, ''):
                return self.devices.get_default_input()
            return select_device(listing['input_devices'], source_id)
        return select_device(listing['loopback_devices'], source_id)

    def _open(self, kind: str, source_id) -> AudioStream:
        import sounddevice as sd

        try:
            device = self._resolve(kind, source_id)
        except sd.PortAudioError as e:
            raise classify_device_error(kind, e)
        if device is None:
            raise self._no_device(kind, source_id)

        channels = max(1, min(device['channels'], 2))
        last_error = None

        for rate in candidate_rates(device['sample_rate']):
            track = AudioTrack(device['name'], rate, channels)

            def callback(indata, frames, time_info, status, track=track):
                if status:
                    print(f"{kind} status: {status}", file=sys.stderr)
                track.push(indata.copy().reshape(-1))

            try:
                stream = sd.InputStream(
                    device=device['id'],
                    channels=channels,
                    samplerate=rate,
                    dtype='int16',
                    blocksize=self.block_frames,
                    callback=callback
                )
                stream.start()
            except sd.PortAudioError as e:
                print(f"  {kind}: {rate} Hz failed: {str(e)[:60]}", file=sys.stderr)
                last_error = e
                continue

            def closer(stream=stream):
                with self._device_lock:
                    stream.stop()
                    stream.close()

            print(f"✓ {kind} stream opened: {device['name']} ({rate} Hz, {channels} ch)", file=sys.stderr)
            settings = mic_settings() if kind == MICROPHONE else {'requested': dict(SYSTEM_CONSTRAINTS)}
            return AudioStream(kind, [track], closer, settings, label=device['name'])

        raise classify_device_error(kind, last_error or RuntimeError('no working sample rate'))


class WasapiStreamAcquirer(BaseStreamAcquirer):
    """
    Stream acquisition using pyaudiowpatch (Windows).

    System audio comes from the WASAPI loopback of the default output
    device unless a source_id selects another loopback device.
    """

    def __init__(self, block_frames: int = DEFAULT_BLOCK_FRAMES):
        super().__init__()
        self.block_frames = block_frames
        self.devices = DeviceManager()

    def _resolve(self, kind: str, source_id):
        if source_id in (None, ''):
            if kind == MICROPHONE:
                return self.devices.get_default_input()
            return self.devices.get_default_loopback()
        listing = self.devices.list_all_devices()
        key = 'input_devices' if kind == MICROPHONE else 'loopback_devices'
        return select_device(listing[key], source_id)

    def _open(self, kind: str, source_id) -> AudioStream:
        import pyaudiowpatch as pyaudio

        device = self._resolve(kind, source_id)
        if device is None:
            raise self._no_device(kind, source_id)

        # Loopback streams must use the device's own channel count
        channels = device['channels'] if kind == SYSTEM else max(1, min(device['channels'], 2))
        last_error = None

        for rate in candidate_rates(device['sample_rate']):
            track = AudioTrack(device['name'], rate, channels)

            def callback(in_data, frame_count, time_info, status, track=track):
                if status:
                    print(f"{kind} status: {status}", file=sys.stderr)
                track.push(in_data)
                return (None, pyaudio.paContinue)

            try:
                stream = self.devices.pa.open(
                    format=pyaudio.paInt16,
                    channels=channels,
                    rate=rate,
                    input=True,
                    input_device_index=device['id'],
                    frames_per_buffer=self.block_frames,
                    stream_callback=callback
                )
                stream.start_stream()
            except Exception as e:
                print(f"  {kind}: {rate} Hz failed: {str(e)[:60]}", file=sys.stderr)
                last_error = e
                continue

            def closer(stream=stream):
                with self._device_lock:
                    stream.stop_stream()
                    stream.close()

            print(f"✓ {kind} stream opened: {device['name']} ({rate} Hz, {channels} ch)", file=sys.stderr)
            settings = mic_settings() if kind == MICROPHONE else {'requested': dict(SYSTEM_CONSTRAINTS)}
            return AudioStream(kind, [track], closer, settings, label=device['name'])

        raise classify_device_error(kind, last_error or RuntimeError('no working sample rate'))

    def close(self) -> None:
        with self._device_lock:
            self.devices.close()
