"""
Error taxonomy for call capture.

All errors subclass RuntimeError so callers that only care about
"recording failed" can keep catching RuntimeError.
"""

from enum import Enum


class AcquisitionFailure(str, Enum):
    """Why a live audio source could not be obtained."""

    PERMISSION_DENIED = 'PermissionDenied'
    NO_AUDIO_TRACK = 'NoAudioTrack'
    DEVICE_UNAVAILABLE = 'DeviceUnavailable'


class AcquisitionError(RuntimeError):
    """A system or microphone stream could not be acquired or mixed."""

    def __init__(self, kind: AcquisitionFailure, message: str = ''):
        self.kind = AcquisitionFailure(kind)
        super().__init__(f"{self.kind.value}: {message}" if message else self.kind.value)


class EncoderError(RuntimeError):
    """The chunked encoder failed, or produced nothing usable."""

    def __init__(self, message: str = '', reason: AcquisitionFailure = None):
        self.reason = reason
        if reason is not None and not message:
            message = reason.value
        super().__init__(message)


class AnalysisError(RuntimeError):
    """The analysis service rejected the artifact or could not be reached."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(RuntimeError):
    """The artifact or its metadata could not be written."""
