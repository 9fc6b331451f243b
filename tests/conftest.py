"""
Test doubles for the orchestrator's collaborators.

Streams are real AudioStream objects (with real tracks) so the mixing graph
can be built from them; only device access, the encoder and the clock are
faked.
"""

import asyncio

from call_recorder import notifications
from call_recorder.constants import PREFERRED_MIME_TYPE
from call_recorder.errors import AcquisitionError, AcquisitionFailure
from call_recorder.orchestrator import RecordingOrchestrator
from call_recorder.streams import AudioStream, AudioTrack, SYSTEM


class CountingStream(AudioStream):
    """AudioStream that records every stop() call."""

    def __init__(self, kind, sample_rate=48000, channels=2):
        self.closed = 0
        self.stop_calls = 0
        super().__init__(
            kind,
            [AudioTrack(kind, sample_rate, channels)],
            closer=self._close,
            settings={},
        )

    def _close(self):
        self.closed += 1

    def stop(self):
        self.stop_calls += 1
        return super().stop()


class FakeAcquirer:
    """
    Hands out CountingStreams.

    failures: errors raised by successive system-audio requests; the
    microphone request of the same attempt still succeeds so the caller has
    to release it.
    """

    def __init__(self, failures=None, tracks=True):
        self.failures = list(failures or [])
        self.tracks = tracks
        self.calls = []
        self.streams = []
        self.gate = None

    async def acquire(self, kind, source_id=None):
        self.calls.append(kind)
        if self.gate is not None:
            await self.gate.wait()
        if kind == SYSTEM and self.failures:
            raise self.failures.pop(0)
        stream = CountingStream(kind)
        if not self.tracks:
            stream.tracks = []
        self.streams.append(stream)
        return stream

    def close(self):
        pass


class FakeRecorder:
    def __init__(self, stream):
        self.stream = stream
        self.mime_type = PREFERRED_MIME_TYPE
        self.on_started = None
        self.on_chunk = None
        self.on_error = None
        self.on_stopped = None
        self.started = False
        self.stop_calls = 0
        self.aborted = 0
        self.acknowledge_stop = True

    async def start(self, timeslice):
        self.started = True
        self.on_started()

    async def stop(self):
        self.stop_calls += 1
        if self.acknowledge_stop:
            self.on_stopped()

    def abort(self):
        self.aborted += 1


class FakeMonitor:
    def __init__(self):
        self.process_name = None
        self.callback = None
        self.stopped = False

    def start(self, process_name, callback):
        self.process_name = process_name
        self.callback = callback

    def stop(self):
        self.stopped = True

    def emit(self, active):
        self.callback(active)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeDelivery:
    def __init__(self):
        self.artifacts = []

    async def deliver(self, artifact):
        self.artifacts.append(artifact)


class Harness:
    """An orchestrator wired to fakes, plus everything it published."""

    def __init__(self, **kwargs):
        self.acquirer = kwargs.pop('acquirer', None) or FakeAcquirer()
        self.clock = FakeClock()
        self.delivery = FakeDelivery()
        self.bus = notifications.NotificationBus()
        self.monitors = []
        self.recorders = []
        self.published = []

        for channel in (
            notifications.AUDIO_SESSION_UPDATE,
            notifications.RECORDING_STATUS,
            notifications.ANALYSIS_STATUS,
        ):
            self.bus.subscribe(channel, lambda payload, channel=channel: self.published.append((channel, payload)))

        kwargs.setdefault('retry_delay', 0)
        kwargs.setdefault('debounce', 0)
        self.orchestrator = RecordingOrchestrator(
            self.acquirer,
            agent_id='agent-7',
            platform='Teams',
            monitor_factory=self._new_monitor,
            recorder_factory=self._new_recorder,
            delivery=self.delivery,
            bus=self.bus,
            clock=self.clock,
            **kwargs
        )

    def _new_monitor(self):
        monitor = FakeMonitor()
        self.monitors.append(monitor)
        return monitor

    def _new_recorder(self, stream):
        recorder = FakeRecorder(stream)
        self.recorders.append(recorder)
        return recorder

    def monitor(self, process_name='ms-teams.exe'):
        for monitor in self.monitors:
            if monitor.process_name == process_name and not monitor.stopped:
                return monitor
        raise LookupError(process_name)

    @property
    def recorder(self):
        return self.recorders[-1]

    def statuses(self, channel=notifications.RECORDING_STATUS):
        return [payload for ch, payload in self.published if ch == channel]


async def settle(rounds=50):
    """Let queued events and the tasks they spawn run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def device_unavailable():
    return AcquisitionError(AcquisitionFailure.DEVICE_UNAVAILABLE, "device busy")
