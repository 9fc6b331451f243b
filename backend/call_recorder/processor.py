"""
Audio processing utilities for the live mix.

Provides streaming resampling, channel conversion, automatic gain and the
N-input mix. Everything works on float32 blocks shaped (frames, channels)
in the -1.0..1.0 range; int16 conversion happens at the edges.
"""

import numpy as np
import soxr

from .constants import (
    AGC_TARGET_PEAK,
    AGC_CEILING_PEAK,
    AGC_MAX_GAIN,
    AGC_ATTACK,
    AGC_RELEASE,
    NOISE_GATE_PEAK,
    SOFT_LIMIT_DRIVE,
)

# Downmix coefficients
CENTER_CHANNEL_ATTENUATION = 0.707  # -3dB, equivalent to 1/sqrt(2)
SURROUND_CHANNEL_ATTENUATION = 0.5  # -6dB for extra surround channels


def int16_to_float(audio_data: np.ndarray, channels: int) -> np.ndarray:
    """
    Convert interleaved int16 samples to a float32 (frames, channels) block.

    Trailing samples that do not fill a whole frame are dropped.
    """
    usable = len(audio_data) - (len(audio_data) % channels)
    block = audio_data[:usable].astype(np.float32) / 32768.0
    return block.reshape(-1, channels)


def float_to_int16(block: np.ndarray) -> np.ndarray:
    """Convert a float32 (frames, channels) block to interleaved int16."""
    clipped = np.clip(block, -1.0, 1.0)
    return (clipped * 32767.0).astype(np.int16).reshape(-1)


def to_stereo(block: np.ndarray) -> np.ndarray:
    """
    Convert a (frames, channels) block to stereo.

    Mono is duplicated. Multi-channel audio uses the standard layout
    L, R, C, LFE, SL, SR... with center at -3dB and the rest at -6dB.
    """
    num_channels = block.shape[1]
    if num_channels == 2:
        return block
    if num_channels == 1:
        return np.column_stack([block[:, 0], block[:, 0]])

    left = block[:, 0].copy()
    right = block[:, 1].copy()

    if num_channels >= 3:
        center = block[:, 2] * CENTER_CHANNEL_ATTENUATION
        left = left + center
        right = right + center

    for i in range(3, num_channels):
        ch = block[:, i] * SURROUND_CHANNEL_ATTENUATION
        left = left + ch
        right = right + ch

    return np.column_stack([left, right])


class Resampler:
    """
    Streaming resampler for one input.

    Wraps soxr.ResampleStream so block boundaries do not click, which a
    per-block soxr.resample call would.
    """

    def __init__(self, input_rate: int, output_rate: int, channels: int):
        self.input_rate = input_rate
        self.output_rate = output_rate
        self.channels = channels
        self._stream = None
        if input_rate != output_rate:
            self._stream = soxr.ResampleStream(
                input_rate,
                output_rate,
                channels,
                dtype='float32',
                quality='HQ'
            )

    def process(self, block: np.ndarray, last: bool = False) -> np.ndarray:
        if self._stream is None:
            return block
        out = self._stream.resample_chunk(np.ascontiguousarray(block, dtype=np.float32), last=last)
        return out.reshape(-1, self.channels)


class AutoGain:
    """
    Slow automatic gain control for a microphone input.

    Same targets as the offline normalizer: quiet voices are lifted towards
    AGC_TARGET_PEAK, loud ones are held under AGC_CEILING_PEAK. Gain drops
    fast and rises slowly so speech does not pump. Blocks under the noise
    gate leave the gain untouched (silence is not boosted).
    """

    def __init__(self):
        self.gain = 1.0
        self._dc = 0.0

    def process(self, block: np.ndarray) -> np.ndarray:
        if len(block) == 0:
            return block

        # Running DC offset removal (prevents pops/clicks)
        self._dc = 0.99 * self._dc + 0.01 * float(np.mean(block))
        block = block - self._dc

        peak = float(np.max(np.abs(block)))
        if peak >= NOISE_GATE_PEAK:
            if peak * self.gain > AGC_CEILING_PEAK:
                wanted = AGC_CEILING_PEAK / peak
                self.gain += (wanted - self.gain) * AGC_ATTACK
            elif peak * self.gain < AGC_TARGET_PEAK:
                wanted = min(AGC_TARGET_PEAK / peak, AGC_MAX_GAIN)
                self.gain += (wanted - self.gain) * AGC_RELEASE

        return block * self.gain


def pad_to_length(block: np.ndarray, frames: int) -> np.ndarray:
    """Pad a (frames, channels) block at the end with silence."""
    missing = frames - len(block)
    if missing <= 0:
        return block
    padding = np.zeros((missing, block.shape[1]), dtype=np.float32)
    return np.concatenate([block, padding])


def mix_blocks(blocks: list, gains: list) -> np.ndarray:
    """
    Mix N stereo blocks with per-input gain.

    Shorter blocks are padded with silence (loopback devices only deliver
    frames while something is playing). Soft limiting is applied only if
    the sum would clip.

    Args:
        blocks: list of float32 (frames, 2) arrays
        gains: linear gain per block

    Returns:
        float32 (frames, 2) array
    """
    if not blocks:
        return np.zeros((0, 2), dtype=np.float32)

    frames = max(len(b) for b in blocks)
    mixed = np.zeros((frames, 2), dtype=np.float32)
    for block, gain in zip(blocks, gains):
        if len(block) == 0:
            continue
        mixed += pad_to_length(block, frames) * gain

    max_val = float(np.max(np.abs(mixed))) if frames else 0.0
    if max_val > 1.0:
        mixed = np.tanh(mixed * SOFT_LIMIT_DRIVE)

    return mixed


def peak_level(audio_data: np.ndarray, subsample: int = 8) -> float:
    """Peak level (0.0 to 1.0) of int16 samples, subsampled for speed."""
    if len(audio_data) == 0:
        return 0.0
    peak = np.abs(audio_data[::subsample].astype(np.int32)).max()
    return min(float(peak) / 32768.0, 1.0)
