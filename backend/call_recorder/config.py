"""
Deployment settings, read from the environment (and a .env file if present).
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .constants import ANALYSIS_TIMEOUT_SECONDS, STOP_TIMEOUT_SECONDS

DEFAULT_DATA_DIR = Path.home() / ".call-recorder"


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip()


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        value = float(v)
    except ValueError:
        print(f"Warning: {name}={v!r} is not a number, using {default}", file=sys.stderr)
        return default
    if value <= 0:
        print(f"Warning: {name} must be positive, using {default}", file=sys.stderr)
        return default
    return value


@dataclass
class Settings:
    analysis_url: str = ''
    data_dir: Path = DEFAULT_DATA_DIR
    analysis_timeout: float = ANALYSIS_TIMEOUT_SECONDS
    ffmpeg: str = 'ffmpeg'
    stop_timeout: float = STOP_TIMEOUT_SECONDS

    @property
    def analysis_enabled(self) -> bool:
        return bool(self.analysis_url)

    @classmethod
    def from_env(cls, dotenv: bool = True) -> 'Settings':
        """
        Build settings from environment variables.

        API_AUDIO_ANALYSIS: analysis endpoint, empty disables analysis
        CALL_RECORDER_DATA_DIR: root for recordings/ and analysis/
        CALL_RECORDER_ANALYSIS_TIMEOUT: seconds to wait for the analysis service
        CALL_RECORDER_FFMPEG: ffmpeg executable
        CALL_RECORDER_STOP_TIMEOUT: seconds to wait for the encoder to drain
        """
        if dotenv:
            load_dotenv()
        return cls(
            analysis_url=_env_str('API_AUDIO_ANALYSIS', ''),
            data_dir=Path(_env_str('CALL_RECORDER_DATA_DIR', str(DEFAULT_DATA_DIR))).expanduser(),
            analysis_timeout=_env_float('CALL_RECORDER_ANALYSIS_TIMEOUT', ANALYSIS_TIMEOUT_SECONDS),
            ffmpeg=_env_str('CALL_RECORDER_FFMPEG', 'ffmpeg') or 'ffmpeg',
            stop_timeout=_env_float('CALL_RECORDER_STOP_TIMEOUT', STOP_TIMEOUT_SECONDS),
        )
