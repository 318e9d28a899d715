"""
Runtime configuration.

Everything is pulled from environment variables so nothing is hardcoded.
main.py loads a .env file (python-dotenv) before anything reads these in
development; in production the variables are set by the host.
"""

import os
import tempfile
from pathlib import Path

# ---------------------------------------------------------------------------
# External tools
# ---------------------------------------------------------------------------
FFMPEG_PATH: str = os.getenv("FFMPEG_PATH", "ffmpeg")
FFPROBE_PATH: str = os.getenv("FFPROBE_PATH", "ffprobe")

# 0 disables the limit: a hung ffmpeg then runs until it exits on its own
FFMPEG_TIMEOUT_SECONDS: float = float(os.getenv("FFMPEG_TIMEOUT_SECONDS", "0"))

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
TEMP_DIR: str = os.getenv(
    "TEMP_DIR", str(Path(tempfile.gettempdir()) / "audio2mp4")
)
JOB_DIR_PREFIX: str = "audio2mp4-"

# ---------------------------------------------------------------------------
# Upload limits (enforced by the admission layer before a job exists)
# ---------------------------------------------------------------------------
MAX_FILE_MB: int = int(os.getenv("MAX_FILE_MB", "100"))
MAX_TOTAL_MB: int = int(os.getenv("MAX_TOTAL_MB", "600"))
MIN_TRACKS: int = 2
MAX_TRACKS: int = 10

# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------
CLEANUP_MINUTES: float = float(os.getenv("CLEANUP_MINUTES", "15"))
CLEANUP_SECONDS: float = CLEANUP_MINUTES * 60

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8080"))
CORS_ORIGIN: str = os.getenv("CORS_ORIGIN", "http://localhost:5173")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Per-subscriber buffer; a listener that falls this far behind is dropped
EVENT_QUEUE_SIZE: int = int(os.getenv("EVENT_QUEUE_SIZE", "1000"))
