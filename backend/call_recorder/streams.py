"""
Live audio streams.

An AudioStream owns one or more AudioTracks plus whatever device handle
feeds them. Device callbacks run on PortAudio threads and push int16
frames into the track; the mixer drains them on the event loop thread.
"""

import sys
import threading
from collections import deque
from typing import Callable, Optional

import numpy as np

from .constants import TRACK_MAX_PENDING_SECONDS

SYSTEM = 'system'
MICROPHONE = 'microphone'
MIXED = 'mixed'


class AudioTrack:
    """A single live audio track with its native format."""

    kind = 'audio'

    def __init__(self, label: str, sample_rate: int, channels: int):
        self.label = label
        self.sample_rate = sample_rate
        self.channels = channels
        self.enabled = True
        self.ready_state = 'live'

        self._pending = deque()
        self._pending_samples = 0
        self._max_pending = int(sample_rate * channels * TRACK_MAX_PENDING_SECONDS)
        self._lock = threading.Lock()

    def push(self, data) -> None:
        """Append captured frames (bytes or int16 array). Thread-safe."""
        if self.ready_state != 'live' or not self.enabled:
            return
        samples = np.frombuffer(data, dtype=np.int16) if isinstance(data, (bytes, bytearray)) else data
        if len(samples) == 0:
            return
        with self._lock:
            self._pending.append(samples)
            self._pending_samples += len(samples)
            # A consumer that stopped draining must not grow memory forever
            while self._pending_samples > self._max_pending and len(self._pending) > 1:
                dropped = self._pending.popleft()
                self._pending_samples -= len(dropped)

    def drain(self) -> np.ndarray:
        """Take every pending sample (interleaved int16)."""
        with self._lock:
            if not self._pending:
                return np.array([], dtype=np.int16)
            samples = np.concatenate(list(self._pending))
            self._pending.clear()
            self._pending_samples = 0
        return samples

    def stop(self) -> None:
        self.ready_state = 'ended'
        with self._lock:
            self._pending.clear()
            self._pending_samples = 0


class AudioStream:
    """
    A capturable stream: tracks plus the device resource behind them.

    stop() is idempotent: the device closer runs at most once, and calling
    stop() on an already-stopped stream is a no-op.
    """

    def __init__(
        self,
        kind: str,
        tracks: list,
        closer: Optional[Callable[[], None]] = None,
        settings: Optional[dict] = None,
        label: str = ''
    ):
        self.kind = kind
        self.tracks = list(tracks)
        self.settings = dict(settings or {})
        self.label = label or kind
        self._closer = closer
        self._stopped = False
        self._stop_lock = threading.Lock()

    @property
    def active(self) -> bool:
        return not self._stopped and any(t.ready_state == 'live' for t in self.tracks)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def get_audio_tracks(self) -> list:
        return [t for t in self.tracks if t.kind == 'audio']

    def stop(self) -> bool:
        """
        Stop every track and release the device.

        Returns:
            True if this call released the stream, False if it was already stopped
        """
        with self._stop_lock:
            if self._stopped:
                return False
            self._stopped = True

        for track in self.tracks:
            track.stop()

        if self._closer is not None:
            try:
                self._closer()
            except Exception as e:
                print(f"  Warning: error closing {self.label} stream: {e}", file=sys.stderr)
        return True

    def __repr__(self):
        state = 'stopped' if self._stopped else 'active'
        return f"<AudioStream {self.label} {state} tracks={len(self.tracks)}>"
