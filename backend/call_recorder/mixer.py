"""
Mixing graph: N live input streams -> one mixed output stream.

Each input goes through its own gain stage (resample to the output rate,
convert to stereo, optional automatic gain, linear gain). The output is
pulled: every read() emits only the frames every live input has delivered;
the rest stays buffered per input until the next read. An input that has
delivered nothing for longer than GAP_THRESHOLD_SECONDS (a loopback device
while nothing plays) stops holding the mix back and is padded with silence.
"""

import sys
import time

import numpy as np

from .constants import (
    DEFAULT_CHANNELS,
    DEFAULT_SAMPLE_RATE,
    GAP_THRESHOLD_SECONDS,
    MAX_BACKLOG_SECONDS,
    MIC_GAIN,
    SYSTEM_GAIN,
)
from .errors import AcquisitionError, AcquisitionFailure
from .processor import (
    AutoGain,
    Resampler,
    float_to_int16,
    int16_to_float,
    mix_blocks,
    peak_level,
    to_stereo,
)
from .streams import AudioStream, AudioTrack, MICROPHONE, MIXED, SYSTEM

DEFAULT_GAINS = {
    MICROPHONE: MIC_GAIN,
    SYSTEM: SYSTEM_GAIN,
}


class GainStage:
    """One graph input: a stream, its converters and its gain."""

    def __init__(self, stream: AudioStream, gain: float, sample_rate: int, now: float = 0.0):
        self.stream = stream
        self.gain = gain
        self.sample_rate = sample_rate
        self.tracks = stream.get_audio_tracks()
        self._resamplers = [
            Resampler(track.sample_rate, sample_rate, track.channels)
            for track in self.tracks
        ]
        self._auto_gain = AutoGain() if stream.settings.get('auto_gain_control') else None
        self._buffer = np.zeros((0, 2), dtype=np.float32)
        self.last_delivery = now

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def fill(self, now: float) -> None:
        """Move newly captured audio into this input's backlog."""
        block = self.pull()
        if len(block) == 0:
            return
        self.last_delivery = now
        self._buffer = np.concatenate([self._buffer, block])

        max_frames = int(MAX_BACKLOG_SECONDS * self.sample_rate)
        excess = len(self._buffer) - max_frames
        if excess > 0:
            print(f"Warning: {self.stream.kind} input ran {excess} frames ahead, dropping oldest", file=sys.stderr)
            self._buffer = self._buffer[excess:]

    def is_starved(self, now: float) -> bool:
        """True once the input has delivered nothing for longer than the gap threshold."""
        return now - self.last_delivery > GAP_THRESHOLD_SECONDS

    def take(self, frames: int) -> np.ndarray:
        """Remove up to `frames` frames from the backlog."""
        block = self._buffer[:frames]
        self._buffer = self._buffer[frames:]
        return block

    def pull(self) -> np.ndarray:
        """Drain every track of the input and return a float32 stereo block."""
        blocks = []
        for track, resampler in zip(self.tracks, self._resamplers):
            samples = track.drain()
            if len(samples) == 0:
                continue
            block = int16_to_float(samples, track.channels)
            block = resampler.process(block)
            blocks.append(to_stereo(block))

        if not blocks:
            return np.zeros((0, 2), dtype=np.float32)

        block = blocks[0] if len(blocks) == 1 else mix_blocks(blocks, [1.0] * len(blocks))
        if self._auto_gain is not None:
            block = self._auto_gain.process(block)
        return block


class MixedStream(AudioStream):
    """Output of a MixingGraph; read() yields interleaved int16 PCM."""

    def __init__(self, graph: 'MixingGraph'):
        track = AudioTrack('mixed', graph.sample_rate, graph.channels)
        super().__init__(MIXED, [track], closer=graph.close, label='mixed')
        self.graph = graph
        self.sample_rate = graph.sample_rate
        self.channels = graph.channels
        self.level = 0.0

    def read(self) -> bytes:
        if self.stopped:
            return b''
        samples = self.graph.render()
        self.level = peak_level(samples)
        return samples.tobytes()


class MixingGraph:
    """
    Combines any number of input streams into one output stream.

    Microphone inputs default to unity gain, system inputs to SYSTEM_GAIN.
    The graph never stops its input streams; their owner does.
    """

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        clock=time.monotonic
    ):
        if channels != 2:
            raise ValueError("MixingGraph only produces stereo output")
        self.sample_rate = sample_rate
        self.channels = channels
        self.clock = clock
        self.stages = []
        self._output = None
        self._closed = False

    def connect(self, stream: AudioStream, gain: float = None) -> GainStage:
        """Add an input with its own gain stage."""
        if gain is None:
            gain = DEFAULT_GAINS.get(stream.kind, 1.0)
        stage = GainStage(stream, gain, self.sample_rate, now=self.clock())
        self.stages.append(stage)
        return stage

    def output(self) -> MixedStream:
        """
        The combined output stream.

        Raises:
            AcquisitionError: NoAudioTrack if no input carries an audio track
        """
        if self._output is None:
            if not any(stage.tracks for stage in self.stages):
                raise AcquisitionError(
                    AcquisitionFailure.NO_AUDIO_TRACK,
                    f"Mixing graph has no audio tracks ({len(self.stages)} input(s) connected)"
                )
            self._output = MixedStream(self)
        return self._output

    def render(self) -> np.ndarray:
        """
        Mix the frames every live input has delivered (interleaved int16).

        Starved inputs do not limit the block; whatever they still hold is
        mixed in and the remainder is silence.
        """
        if self._closed or not self.stages:
            return np.array([], dtype=np.int16)

        now = self.clock()
        for stage in self.stages:
            stage.fill(now)

        live = [stage.buffered for stage in self.stages if not stage.is_starved(now)]
        if live:
            frames = min(live)
        else:
            frames = max(stage.buffered for stage in self.stages)
        if frames == 0:
            return np.array([], dtype=np.int16)

        blocks = [stage.take(frames) for stage in self.stages]
        gains = [stage.gain for stage in self.stages]
        return float_to_int16(mix_blocks(blocks, gains))

    def close(self) -> None:
        self._closed = True
        self.stages = []
