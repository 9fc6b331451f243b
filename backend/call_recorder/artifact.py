"""
Artifact finalization.

Turns the chunk sequence of a finished capture into one container with the
true measured duration written into its trailing duration field, plus the
metadata envelope the persistence and analysis collaborators expect.
"""

import math
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .constants import DURATION_FIELD_SIZE, DURATION_SCALE
from .encoder import MIME_EXTENSIONS
from .errors import AcquisitionFailure, EncoderError

DURATION_FORMAT = '>d'  # big-endian float64


def whole_seconds(seconds: float) -> int:
    """Round to whole seconds, halves up (4.5 -> 5)."""
    return int(math.floor(seconds + 0.5))


@dataclass(frozen=True)
class ArtifactMetadata:
    agent_id: str
    platform: str
    start_time: datetime
    end_time: datetime
    duration_seconds: float

    def to_dict(self) -> dict:
        return {
            'agentId': self.agent_id,
            'platform': self.platform,
            'startTime': isoformat(self.start_time),
            'endTime': isoformat(self.end_time),
            'durationSeconds': self.duration_seconds,
        }

    def analysis_payload(self) -> dict:
        """Metadata object sent alongside the audio to the analysis service."""
        return {
            'agentId': self.agent_id,
            'platform': self.platform,
            'duration': whole_seconds(self.duration_seconds),
            'timestamp': isoformat(self.start_time),
            'endTime': isoformat(self.end_time),
        }


@dataclass(frozen=True)
class Artifact:
    container_bytes: bytes = field(repr=False)
    mime_type: str
    duration_seconds: float
    file_name: str
    metadata: ArtifactMetadata

    @property
    def size(self) -> int:
        return len(self.container_bytes)


def isoformat(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a 'Z' suffix."""
    value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f"{value.microsecond // 1000:03d}Z"


def write_duration(buffer: bytes, duration_seconds: float) -> bytes:
    """
    Overwrite the trailing duration field with the measured duration.

    The field is the last 8 bytes of the container, a big-endian float64
    holding the duration in nanoseconds.
    """
    if len(buffer) < DURATION_FIELD_SIZE:
        raise EncoderError(
            f"Container too small to hold a duration field ({len(buffer)} bytes)",
            reason=AcquisitionFailure.NO_AUDIO_TRACK
        )
    data = bytearray(buffer)
    struct.pack_into(DURATION_FORMAT, data, len(data) - DURATION_FIELD_SIZE, duration_seconds * DURATION_SCALE)
    return bytes(data)


def read_duration(buffer: bytes) -> float:
    """Read the trailing duration field back, in seconds."""
    if len(buffer) < DURATION_FIELD_SIZE:
        raise ValueError("Buffer too small to hold a duration field")
    (scaled,) = struct.unpack_from(DURATION_FORMAT, buffer, len(buffer) - DURATION_FIELD_SIZE)
    return scaled / DURATION_SCALE


def make_file_name(duration_seconds: float, mime_type: str, now: Optional[datetime] = None) -> str:
    """
    recording-<timestamp>-<seconds>s.<ext>

    The timestamp is ISO-8601 with ':' and '.' replaced by '-', so two
    recordings finished within the same second still get distinct names.
    """
    stamp = isoformat(now or datetime.now(timezone.utc)).replace(':', '-').replace('.', '-')
    extension = MIME_EXTENSIONS.get(mime_type, '.webm')
    return f"recording-{stamp}-{whole_seconds(duration_seconds)}s{extension}"


def finalize(
    chunks: list,
    mime_type: str,
    duration_seconds: float,
    agent_id: str,
    platform: str,
    started_at: datetime,
    ended_at: datetime,
    now: Optional[datetime] = None
) -> Artifact:
    """
    Assemble an Artifact from captured chunks.

    Args:
        chunks: encoded chunks in capture order (empty ones are ignored)
        mime_type: negotiated container/codec
        duration_seconds: measured wall-clock duration
        agent_id, platform: who/where the call was
        started_at, ended_at: wall-clock instants of the recording

    Raises:
        EncoderError: NoAudioTrack when nothing was captured
    """
    chunks = [c for c in chunks if c]
    if not chunks:
        raise EncoderError(
            "No audio data recorded",
            reason=AcquisitionFailure.NO_AUDIO_TRACK
        )

    duration_seconds = max(0.0, float(duration_seconds))
    container = write_duration(b''.join(chunks), duration_seconds)

    metadata = ArtifactMetadata(
        agent_id=agent_id,
        platform=platform,
        start_time=started_at,
        end_time=ended_at,
        duration_seconds=duration_seconds,
    )
    return Artifact(
        container_bytes=container,
        mime_type=mime_type,
        duration_seconds=duration_seconds,
        file_name=make_file_name(duration_seconds, mime_type, now),
        metadata=metadata,
    )
