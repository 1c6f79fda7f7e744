import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple

from debrid_stream.utils import is_video_file


class SessionState(str, enum.Enum):
    PENDING = "pending"
    METADATA_WAIT = "metadata_wait"
    READY = "ready"
    STREAMING = "streaming"
    IDLE = "idle"
    FAILED = "failed"
    EVICTED = "evicted"


# States in which the file list is known and streams may be opened
STREAMABLE_STATES = (SessionState.READY, SessionState.STREAMING, SessionState.IDLE)
TERMINAL_STATES = (SessionState.FAILED, SessionState.EVICTED)


@dataclass(frozen=True)
class FileEntry:
    index: int
    name: str
    path: str
    length: int

    @property
    def is_video(self) -> bool:
        return is_video_file(self.name)


@dataclass(frozen=True)
class TorrentMetadata:
    """What the engine knows once metadata has been received."""

    name: str
    total_length: int
    files: Tuple[FileEntry, ...]


@dataclass(frozen=True)
class TorrentSource:
    """
    A resolved torrent identifier: the canonical info-hash plus whatever the
    engine needs to start the transfer (a magnet URI, or raw .torrent bytes).
    """

    info_hash: str
    uri: str
    data: Optional[bytes] = None


@dataclass(frozen=True)
class EngineStats:
    progress: float = 0.0
    download_rate: int = 0
    upload_rate: int = 0
    peer_count: int = 0
    bytes_downloaded: int = 0
    bytes_uploaded: int = 0

    @property
    def has_throughput(self) -> bool:
        return self.download_rate > 0 or self.upload_rate > 0


@dataclass
class TorrentSession:
    """One tracked torrent. Owned by the SessionRegistry."""

    info_hash: str
    identifier: str
    state: SessionState = SessionState.PENDING
    display_name: Optional[str] = None
    total_length: Optional[int] = None
    files: Tuple[FileEntry, ...] = ()
    added_at: float = field(default_factory=time.monotonic)
    last_active_at: float = field(default_factory=time.monotonic)
    engine_handle: Optional[object] = None
    content_ready: bool = False
    open_streams: int = 0
    bytes_served: int = 0
    error: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)
    metadata_task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    def set_metadata(self, metadata: TorrentMetadata):
        if self.files:
            raise RuntimeError(f"Metadata for {self.info_hash} is already populated")
        self.display_name = metadata.name
        self.total_length = metadata.total_length
        self.files = tuple(metadata.files)

    def touch(self, now: Optional[float] = None):
        self.last_active_at = time.monotonic() if now is None else now

    @property
    def is_streamable(self) -> bool:
        return self.state in STREAMABLE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def snapshot(self) -> "SessionSnapshot":
        return SessionSnapshot(
            info_hash=self.info_hash,
            display_name=self.display_name,
            total_length=self.total_length,
            files=self.files,
            state=self.state,
            added_at=self.added_at,
            last_active_at=self.last_active_at,
            content_ready=self.content_ready,
            open_streams=self.open_streams,
            bytes_served=self.bytes_served,
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Point-in-time, read-only copy of a TorrentSession."""

    info_hash: str
    display_name: Optional[str]
    total_length: Optional[int]
    files: Tuple[FileEntry, ...]
    state: SessionState
    added_at: float
    last_active_at: float
    content_ready: bool
    open_streams: int
    bytes_served: int


@dataclass(frozen=True)
class SessionStatus:
    info_hash: str
    name: Optional[str]
    state: SessionState
    progress: float
    download_rate: int
    upload_rate: int
    peer_count: int
    bytes_downloaded: int
    bytes_uploaded: int
    ready: bool
