import logging
import time

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from debrid_stream.api import streaming, torrents
from debrid_stream.background import start_background_tasks, stop_background_tasks
from debrid_stream.config import BASE_URL, LOG_LEVEL, PORT, validate_config
from debrid_stream.errors import DebridError, InvalidRange, ReadinessTimeout
from debrid_stream.state import build_engine, build_manager

# --- Logging Setup ---
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "self-hosted-debrid"
VERSION = "1.0.0"
RETRY_AFTER_SECONDS = 5


def create_app(engine=None, **manager_overrides) -> FastAPI:
    """
    Builds the application around one SessionManager. Tests pass their own
    engine and knobs; in production the libtorrent engine is used.
    """
    app = FastAPI(title="Self-Hosted Debrid")
    app.state.manager = build_manager(engine if engine is not None else build_engine(), **manager_overrides)
    app.state.started_at = time.monotonic()

    # --- CORS Middleware ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Range"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
    )

    # --- Event Handlers ---
    @app.on_event("startup")
    async def startup_event():
        """On startup, start the engine and the idle reaper."""
        await start_background_tasks(app.state.manager)

    @app.on_event("shutdown")
    async def shutdown_event():
        """On shutdown, release every torrent session."""
        try:
            await stop_background_tasks(app.state.manager)
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    # --- Error Handling ---
    @app.exception_handler(DebridError)
    async def debrid_error_handler(request: Request, exc: DebridError):
        headers = {}
        if isinstance(exc, InvalidRange) and exc.length is not None:
            headers["Content-Range"] = f"bytes */{exc.length}"
        if isinstance(exc, ReadinessTimeout):
            headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)

    # --- Health Check ---
    @app.get("/health", include_in_schema=False)
    async def health_check():
        """Health check endpoint for Docker and monitoring."""
        sessions = app.state.manager.list_status()
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "version": VERSION,
            "uptime": round(time.monotonic() - app.state.started_at, 1),
            "activeSessions": len(sessions),
            "maxSessions": app.state.manager.registry.max_sessions,
            "sessions": [torrents.TorrentStatus.from_status(s).model_dump(by_alias=True) for s in sessions],
        }

    @app.get("/", include_in_schema=False)
    async def root():
        """Service info with the endpoint URLs clients should use."""
        return {
            "name": "Self-Hosted Debrid",
            "version": VERSION,
            "description": "Self-hosted P2P torrent streaming service",
            "endpoints": {
                "resolve": f"{BASE_URL}/api/torrents",
                "status": f"{BASE_URL}/api/torrents/{{infoHash}}",
                "stream": f"{BASE_URL}/stream/{{infoHash}}/{{fileIndex}}",
                "health": f"{BASE_URL}/health",
                "docs": f"{BASE_URL}/docs",
            },
        }

    # --- API Routers ---
    app.include_router(torrents.router, prefix="/api/torrents", tags=["torrents"])
    app.include_router(streaming.router, prefix="/stream", tags=["streaming"])

    return app


# --- Main Entry Point ---
if __name__ == "__main__":
    validate_config()
    logger.info(f"Starting Self-Hosted Debrid on http://0.0.0.0:{PORT}")
    logger.info(f"API Documentation: http://0.0.0.0:{PORT}/docs")
    logger.info(f"Health Check: http://0.0.0.0:{PORT}/health")

    uvicorn.run(
        create_app(),
        host="0.0.0.0",
        port=PORT,
        log_level="info"
    )
