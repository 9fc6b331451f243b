"""
Call recording constants and configuration.

Centralizes magic numbers and policy values for the call capture system.
"""

# Sample rates
DEFAULT_SAMPLE_RATE = 48000  # Hz - mix/encode rate (matches Opus native rate)
COMMON_SAMPLE_RATES = [48000, 44100, 32000, 16000, 8000]  # For device probing

# Channels
DEFAULT_CHANNELS = 2  # Stereo output

# Buffer sizes
DEFAULT_BLOCK_FRAMES = 1024  # frames per device callback
TRACK_MAX_PENDING_SECONDS = 10  # Drop oldest audio if a track is not drained for this long

# Mixing gains (linear)
MIC_GAIN = 1.0
SYSTEM_GAIN = 1.5  # Loopback capture is typically attenuated
SOFT_LIMIT_DRIVE = 0.85

# Live mix alignment
GAP_THRESHOLD_SECONDS = 0.1  # An input silent for longer than this is padded (ignore normal callback jitter)
MAX_BACKLOG_SECONDS = 1.0  # Drop the oldest audio of an input running this far ahead of the others

# Automatic gain (microphone)
AGC_TARGET_PEAK = 0.3  # Level quiet voices are lifted towards
AGC_CEILING_PEAK = 0.7  # -3dB headroom
AGC_MAX_GAIN = 4.0
AGC_ATTACK = 0.5  # Smoothing when gain must drop (fast)
AGC_RELEASE = 0.05  # Smoothing when gain may rise (slow)
NOISE_GATE_PEAK = 0.01  # Below this a block is treated as silence, gain is held

# Encoder (ffmpeg)
PREFERRED_MIME_TYPE = 'audio/webm;codecs=opus'
FALLBACK_MIME_TYPE = 'audio/webm'
AUDIO_BITS_PER_SECOND = 256000
CHUNK_INTERVAL_SECONDS = 1.0  # Encoder flush interval
PUMP_INTERVAL_SECONDS = 0.1  # How often mixed PCM is pushed to the encoder
ENCODER_READ_SIZE = 4096

# Orchestrator policy
ACQUIRE_MAX_ATTEMPTS = 3  # First attempt + 2 retries
ACQUIRE_RETRY_DELAY_SECONDS = 1.0
STOP_TIMEOUT_SECONDS = 5.0  # Max wait for the encoder's stop acknowledgement

# Artifact container
DURATION_FIELD_SIZE = 8  # Trailing float64
DURATION_SCALE = 1_000_000_000  # Seconds -> nanoseconds

# Notifications
AUDIO_SESSION_DEBOUNCE_SECONDS = 0.1

# Session monitor
MONITOR_POLL_INTERVAL_SECONDS = 1.0

# Platform -> watched process name
PLATFORM_PROCESS_NAMES = {
    'teams': 'ms-teams.exe',
    'zoom': 'Zoom.exe',
}

# Analysis
ANALYSIS_TIMEOUT_SECONDS = 120.0
TRANSCRIPT_LANGUAGE = 'english'
