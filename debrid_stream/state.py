from fastapi import Request

from debrid_stream.manager import SessionManager

# --- Process-wide services ---
# The session manager and its engine live on `app.state`; handlers reach them
# through the `get_manager` dependency instead of module globals.


def get_manager(request: Request) -> SessionManager:
    """FastAPI dependency returning the application's SessionManager."""
    return request.app.state.manager


def build_engine():
    """Returns the libtorrent-backed engine configured from the environment."""
    from debrid_stream.config import DOWNLOAD_PATH, LISTEN_PORT, MAX_CONNECTIONS
    from debrid_stream.engine.lt_engine import LibtorrentEngine

    return LibtorrentEngine(
        download_path=DOWNLOAD_PATH,
        listen_port=LISTEN_PORT,
        max_connections=MAX_CONNECTIONS,
    )


def build_manager(engine, **overrides) -> SessionManager:
    """Constructs a SessionManager with knobs from config, overridable per app."""
    from debrid_stream import config

    knobs = {
        "max_sessions": config.MAX_SESSIONS,
        "metadata_timeout": config.METADATA_TIMEOUT_SECONDS,
        "ready_timeout": config.READY_TIMEOUT_SECONDS,
        "idle_threshold": config.IDLE_THRESHOLD_SECONDS,
        "reaper_interval": config.REAPER_INTERVAL_SECONDS,
    }
    knobs.update(overrides)
    return SessionManager(engine, **knobs)
