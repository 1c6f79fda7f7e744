import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from debrid_stream.config import STREAM_READY_GRACE_SECONDS
from debrid_stream.errors import EngineError
from debrid_stream.manager import SessionManager
from debrid_stream.state import get_manager
from debrid_stream.streaming import open_stream, plan_stream

router = APIRouter()
logger = logging.getLogger(__name__)


@router.api_route("/{info_hash}/{file_index}", methods=["GET", "HEAD"])
async def stream_file(
    info_hash: str,
    file_index: str,
    request: Request,
    manager: SessionManager = Depends(get_manager),
):
    """
    Streams one file of a torrent, honouring the Range header for seeking.
    Sessions that are not ready yet get a 503 with Retry-After instead of
    holding the request open.
    """
    try:
        index = int(file_index)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid file index")

    info_hash = info_hash.lower()
    session = manager.get(info_hash)
    if session is None:
        raise HTTPException(status_code=404, detail="Torrent not found")

    await manager.await_ready(session, timeout=STREAM_READY_GRACE_SECONDS)
    range_header = request.headers.get("range")

    if request.method == "HEAD":
        plan = plan_stream(manager.choose_file(session, index), range_header)
        return Response(status_code=plan.status_code, headers=plan.headers)

    plan, stream = await open_stream(manager, info_hash, index, range_header)

    # Pull the first chunk before committing to a status line, so an engine
    # failure here can still be answered with a proper error response.
    try:
        first_chunk = await stream.__anext__()
    except StopAsyncIteration:
        first_chunk = b""
    except EngineError as e:
        logger.error(f"Stream error for {info_hash}/{index} before any bytes were sent: {e}")
        raise

    async def body():
        try:
            if first_chunk:
                yield first_chunk
            async for chunk in stream:
                yield chunk
        except EngineError as e:
            # Headers are already on the wire; dropping the connection is all that's left
            logger.error(f"Stream error for {info_hash}/{index} after {stream.bytes_sent} bytes: {e}")
            raise
        finally:
            await stream.aclose()

    return StreamingResponse(
        body(),
        status_code=plan.status_code,
        headers=plan.headers,
        media_type=plan.headers["Content-Type"],
        # Closes the stream even when body() never started
        background=BackgroundTask(stream.aclose),
    )
