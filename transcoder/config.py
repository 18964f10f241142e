"""Audio HLS Transcoder - Configuration constants.

No external config libraries. Paths default to locations under the
repository root; every tunable can be overridden with a TRANSCODER_*
environment variable, read once at import time.
"""

import os
from pathlib import Path

# Repository root (parent of transcoder/)
REPO_ROOT = Path(__file__).parent.parent.resolve()


def _get_str(name: str, default: str) -> str:
    """Get a string setting from the environment, falling back to default."""
    env_val = os.environ.get(name)
    if env_val:
        return env_val
    return default


def _get_positive_float(name: str, default: float) -> float:
    """Get a positive number from the environment or use default.

    Invalid or non-positive values are ignored.

    Args:
        name: Environment variable name.
        default: Value used when the variable is unset or invalid.

    Returns:
        The configured value in the variable's unit (usually seconds).
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = float(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_positive_int(name: str, default: int) -> int:
    """Get a positive integer from the environment or use default."""
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_bool(name: str, default: bool) -> bool:
    """Get a boolean flag from the environment ("1"/"true"/"yes" are true)."""
    env_val = os.environ.get(name)
    if env_val is None or env_val == "":
        return default
    return env_val.strip().lower() in ("1", "true", "yes", "on")


# Data directories
DATA_DIR = Path(_get_str("TRANSCODER_DATA_DIR", str(REPO_ROOT / "data")))

# Per-job working directories: {SCRATCH_DIR}/{job_id}/
SCRATCH_DIR = Path(_get_str("TRANSCODER_SCRATCH_DIR", str(DATA_DIR / "scratch")))

# Status database path
DB_PATH = Path(_get_str("TRANSCODER_DB_PATH", str(DATA_DIR / "transcoder.db")))

# External tools
FFMPEG_BIN = _get_str("TRANSCODER_FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = _get_str("TRANSCODER_FFPROBE_BIN", "ffprobe")

# Canonical output format (fixed, not overridable)
TARGET_CODEC = "libmp3lame"
TARGET_BITRATE = "320k"
TARGET_SAMPLE_RATE = 48000

# HLS packaging (fixed): 5s MPEG-TS segments, unbounded playlist
HLS_SEGMENT_SECONDS = 5
HLS_SEGMENT_TYPE = "mpegts"
HLS_LIST_SIZE = 0
HLS_PLAYLIST_NAME = "playlist.m3u8"
HLS_SEGMENTS_SUBDIR = "segments"
HLS_SEGMENT_PATTERN = "segment%03d.ts"

# Prefix written in front of each segment URI in the playlist.
# Empty string disables -hls_base_url.
HLS_BASE_URL = os.environ.get("TRANSCODER_HLS_BASE_URL", "segments/")

# Per-stage subprocess deadlines in seconds
PROBE_TIMEOUT_SECONDS = _get_positive_float("TRANSCODER_PROBE_TIMEOUT_SEC", 30.0)
CONVERT_TIMEOUT_SECONDS = _get_positive_float("TRANSCODER_CONVERT_TIMEOUT_SEC", 900.0)
SEGMENT_TIMEOUT_SECONDS = _get_positive_float("TRANSCODER_SEGMENT_TIMEOUT_SEC", 900.0)

# How often a running subprocess is checked for cancellation
ENCODER_POLL_INTERVAL_SECONDS = 0.5

# Content-addressed store (IPFS HTTP API)
IPFS_API_URL = _get_str("TRANSCODER_IPFS_API_URL", "http://127.0.0.1:5001")
PUBLISH_TIMEOUT_SECONDS = _get_positive_float("TRANSCODER_PUBLISH_TIMEOUT_SEC", 300.0)

# Pipeline flags
# Publish the untouched original next to the HLS output.
PUBLISH_ORIGINAL = _get_bool("TRANSCODER_PUBLISH_ORIGINAL", False)
# Keep scratch original/ after the job ends (debugging aid).
RETAIN_ORIGINAL = _get_bool("TRANSCODER_RETAIN_ORIGINAL", False)

# Sources longer than this are rejected at probe time
MAX_AUDIO_DURATION_SECONDS = _get_positive_float("TRANSCODER_MAX_DURATION_SEC", 61000.0)

# How long an admission request waits for the slot before giving up
ADMISSION_TIMEOUT_SECONDS = _get_positive_float("TRANSCODER_ADMISSION_TIMEOUT_SEC", 600.0)

# Threads available to producers blocked in admission. Separate from the
# default threadpool so status and health queries are never starved.
ADMISSION_THREADS = _get_positive_int("TRANSCODER_ADMISSION_THREADS", 64)

# Content types accepted at admission
ALLOWED_CONTENT_TYPES = frozenset(
    {
        "audio/aac",
        "audio/wav",
        "audio/x-wav",
        "audio/mp3",
        "audio/mpeg",
        "application/octet-stream",
    }
)

# File extensions accepted for local submissions (content type is not sent)
ALLOWED_EXTENSIONS = frozenset({"aac", "wav", "mp3", "m4a", "flac", "ogg"})
