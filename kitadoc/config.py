"""KitaDoc Audio Pipeline - Configuration.

Environment-driven settings with defaults. No external config libraries.
All paths are relative to the repository root by default.

Every KITADOC_* variable is read through a small parser that falls back
to the default on a missing or invalid value, so a bad override never
prevents startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

# Repository root (parent of kitadoc/)
REPO_ROOT = Path(__file__).parent.parent.resolve()


def _get_path(name: str, default: Path) -> Path:
    """Get a path from the environment or use the default."""
    env_val = os.environ.get(name)
    if env_val:
        return Path(env_val)
    return default


def _get_positive_int(name: str, default: int) -> int:
    """Get a positive integer from the environment or use the default.

    Args:
        name: Environment variable name.
        default: Value used when unset, non-numeric, or not positive.

    Returns:
        The parsed value or the default.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Get a comma-separated list from the environment or use the default.

    Blank items are dropped. An override that leaves nothing falls back
    to the default list.
    """
    env_val = os.environ.get(name)
    if env_val:
        items = tuple(item.strip() for item in env_val.split(",") if item.strip())
        if items:
            return items
    return default


def _get_str(name: str, default: str) -> str:
    env_val = os.environ.get(name, "").strip()
    return env_val or default


def _get_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    """Get a lower-cased value from the environment if it is one of choices."""
    env_val = os.environ.get(name, "").strip().lower()
    if env_val in choices:
        return env_val
    return default


# --- Storage ---

DATA_DIR = _get_path("KITADOC_DATA_DIR", REPO_ROOT / "data")

# Database path
DB_PATH = _get_path("KITADOC_DB_PATH", DATA_DIR / "kitadoc.db")

# Queue directory and Huey database path
QUEUE_DIR = DATA_DIR / "queue"
HUEY_DB_PATH = QUEUE_DIR / "huey.db"

# --- Upload limits ---

DEFAULT_MAX_UPLOAD_SIZE_MB = 10
DEFAULT_ALLOWED_AUDIO_TYPES = ("audio/mpeg", "audio/wav")

# Chunk size used when buffering an uploaded file part
UPLOAD_READ_CHUNK_BYTES = 64 * 1024

# --- Analysis service ---

DEFAULT_AUDIO_PROC_SERVICE_URL = "http://127.0.0.1:8000/analyze-audio"

# Transcription + LLM analysis of a long recording can take minutes
DEFAULT_ANALYSIS_TIMEOUT_SECONDS = 600

AUDIO_PROC_SERVICE_URL = _get_str("KITADOC_AUDIO_PROC_SERVICE_URL", DEFAULT_AUDIO_PROC_SERVICE_URL)
ANALYSIS_TIMEOUT_SECONDS = _get_positive_int(
    "KITADOC_ANALYSIS_TIMEOUT_SEC", DEFAULT_ANALYSIS_TIMEOUT_SECONDS
)

# --- Logging ---

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")
LOG_FORMATS = ("json", "text")

LOG_LEVEL = _get_choice("KITADOC_LOG_LEVEL", "info", LOG_LEVELS)
LOG_FORMAT = _get_choice("KITADOC_LOG_FORMAT", "json", LOG_FORMATS)

# --- Task queue ---

# Run Huey tasks in-process instead of through a consumer (dev/tests)
HUEY_IMMEDIATE = os.environ.get("KITADOC_HUEY_IMMEDIATE") == "1"


@dataclass(frozen=True)
class UploadLimits:
    """Limits applied by the upload validator.

    Supplied by the surrounding application; the validator never reads
    the environment itself.
    """

    max_bytes: int
    allowed_content_types: tuple[str, ...]

    @property
    def max_size_mb(self) -> int:
        return self.max_bytes >> 20


def get_upload_limits() -> UploadLimits:
    """Build upload limits from the environment.

    Read on every call so that a restarted worker or a test picks up
    overrides without re-importing this module.

    Returns:
        UploadLimits with max_bytes derived from KITADOC_MAX_UPLOAD_SIZE_MB.
    """
    max_mb = _get_positive_int("KITADOC_MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB)
    allowed = _get_list("KITADOC_ALLOWED_AUDIO_TYPES", DEFAULT_ALLOWED_AUDIO_TYPES)
    return UploadLimits(max_bytes=max_mb << 20, allowed_content_types=allowed)
