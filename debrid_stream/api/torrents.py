import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from debrid_stream.config import BASE_URL
from debrid_stream.errors import InvalidIdentifier, ReadinessTimeout
from debrid_stream.manager import SessionManager
from debrid_stream.models import SessionStatus
from debrid_stream.state import get_manager

router = APIRouter()
logger = logging.getLogger(__name__)


# Pydantic Models for API requests and responses
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TorrentAddRequest(ApiModel):
    info_hash: Optional[str] = None
    magnet: Optional[str] = None
    torrent_url: Optional[str] = None
    file_index: Optional[int] = None

    def identifier(self) -> str:
        """The one non-empty identifier of the request."""
        provided = [v.strip() for v in (self.info_hash, self.magnet, self.torrent_url) if v and v.strip()]
        if len(provided) != 1:
            raise InvalidIdentifier(
                "Exactly one torrent identifier (infoHash, magnet, or torrentUrl) is required"
            )
        return provided[0]


class ResolveResponse(ApiModel):
    info_hash: str
    url: str
    name: str
    size: int
    file_index: int
    ready: bool


class FileStatus(ApiModel):
    index: int
    name: str
    path: str
    size: int
    is_video: bool = False


class TorrentStatus(ApiModel):
    info_hash: str
    name: Optional[str]
    state: str
    progress: float
    download_rate: int
    upload_rate: int
    peer_count: int
    bytes_downloaded: int
    bytes_uploaded: int
    ready: bool

    @classmethod
    def from_status(cls, status: SessionStatus) -> "TorrentStatus":
        return cls(
            info_hash=status.info_hash,
            name=status.name,
            state=status.state.value,
            progress=status.progress,
            download_rate=status.download_rate,
            upload_rate=status.upload_rate,
            peer_count=status.peer_count,
            bytes_downloaded=status.bytes_downloaded,
            bytes_uploaded=status.bytes_uploaded,
            ready=status.ready,
        )


def stream_url(info_hash: str, file_index: int) -> str:
    return f"{BASE_URL}/stream/{info_hash}/{file_index}"


@router.post("", response_model=ResolveResponse, include_in_schema=False)
@router.post("/", response_model=ResolveResponse)
async def resolve_torrent(request: TorrentAddRequest, manager: SessionManager = Depends(get_manager)):
    """
    Adds a torrent (or joins an existing session) and returns a stream URL
    for the requested file, or the largest video file when no index is given.
    """
    identifier = request.identifier()
    session = await manager.add_by_identifier(identifier)
    file = manager.choose_file(session, request.file_index)

    try:
        await manager.await_ready(session)
    except ReadinessTimeout as e:
        logger.warning(f"Resolved {session.info_hash} before it was ready: {e}")

    return ResolveResponse(
        info_hash=session.info_hash,
        url=stream_url(session.info_hash, file.index),
        name=file.name,
        size=file.length,
        file_index=file.index,
        ready=session.content_ready,
    )


@router.get("", response_model=List[TorrentStatus], include_in_schema=False)
@router.get("/", response_model=List[TorrentStatus])
async def get_all_torrents(manager: SessionManager = Depends(get_manager)):
    """Returns the status of all active torrents."""
    return [TorrentStatus.from_status(s) for s in manager.list_status()]


@router.get("/{info_hash}", response_model=TorrentStatus)
async def get_single_torrent(info_hash: str, manager: SessionManager = Depends(get_manager)):
    """Returns the status of a single torrent."""
    status = manager.status(info_hash.lower())
    if status is None:
        raise HTTPException(status_code=404, detail="Torrent not found")
    return TorrentStatus.from_status(status)


@router.get("/{info_hash}/files", response_model=List[FileStatus])
async def get_torrent_files(info_hash: str, manager: SessionManager = Depends(get_manager)):
    """Lists the files of a torrent once its metadata is known."""
    session = manager.get(info_hash)
    if session is None:
        raise HTTPException(status_code=404, detail="Torrent not found")
    if not session.files:
        raise HTTPException(status_code=503, detail="Metadata not ready, please wait.", headers={"Retry-After": "5"})
    return [
        FileStatus(index=f.index, name=f.name, path=f.path, size=f.length, is_video=f.is_video)
        for f in session.files
    ]


@router.delete("/{info_hash}", status_code=200)
async def remove_torrent(info_hash: str, manager: SessionManager = Depends(get_manager)):
    """Stops a torrent and releases everything it holds."""
    info_hash = info_hash.lower()
    logger.info(f"Removing torrent: {info_hash}")
    if not await manager.remove(info_hash):
        raise HTTPException(status_code=404, detail="Torrent not found")
    return {"message": "Torrent removed successfully"}
