import os
import logging
from pathlib import Path

# --- Configuration ---
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

PORT = int(os.getenv("PORT", 3000))
BASE_URL = os.getenv("BASE_URL", f"http://localhost:{PORT}").rstrip("/")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# Always resolve to absolute paths
BASE_DIR = Path(__file__).resolve().parent.parent
DOWNLOAD_PATH = Path(os.getenv("DOWNLOAD_PATH", str(BASE_DIR / "tmp" / "torrents"))).resolve()

# --- Session knobs ---
MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", 10))
METADATA_TIMEOUT_SECONDS = float(os.getenv("METADATA_TIMEOUT_SECONDS", 300))
READY_TIMEOUT_SECONDS = float(os.getenv("READY_TIMEOUT_SECONDS", 30))
IDLE_THRESHOLD_SECONDS = float(os.getenv("IDLE_THRESHOLD_SECONDS", 600))
REAPER_INTERVAL_SECONDS = float(os.getenv("REAPER_INTERVAL_SECONDS", 60))
# How long the stream endpoint waits for readiness before answering 503
STREAM_READY_GRACE_SECONDS = float(os.getenv("STREAM_READY_GRACE_SECONDS", 2))

# --- Engine knobs ---
MAX_CONNECTIONS = int(os.getenv("MAX_CONNECTIONS", 55))
LISTEN_PORT = int(os.getenv("LISTEN_PORT", PORT + 10))

# Log the resolved paths at import time for debugging
logging.info(f"[CONFIG] DOWNLOAD_PATH: {DOWNLOAD_PATH}")


def validate_config():
    """Raises ValueError when a knob is outside its usable range."""
    if not 1 <= PORT <= 65535:
        raise ValueError(f"Invalid PORT configuration: {PORT}")
    if not BASE_URL:
        raise ValueError("BASE_URL must be configured")
    if MAX_SESSIONS < 1:
        raise ValueError(f"MAX_SESSIONS must be at least 1, got {MAX_SESSIONS}")
    for name, value in (
        ("METADATA_TIMEOUT_SECONDS", METADATA_TIMEOUT_SECONDS),
        ("READY_TIMEOUT_SECONDS", READY_TIMEOUT_SECONDS),
        ("IDLE_THRESHOLD_SECONDS", IDLE_THRESHOLD_SECONDS),
        ("REAPER_INTERVAL_SECONDS", REAPER_INTERVAL_SECONDS),
    ):
        if value <= 0:
            raise ValueError(f"{name} must be positive, got {value}")

    logging.info(
        f"[CONFIG] max_sessions={MAX_SESSIONS} metadata_timeout={METADATA_TIMEOUT_SECONDS}s "
        f"idle_threshold={IDLE_THRESHOLD_SECONDS}s reaper_interval={REAPER_INTERVAL_SECONDS}s"
    )
