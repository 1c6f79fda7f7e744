"""Shared fixtures: an in-memory transfer engine and a controllable clock."""

from __future__ import annotations

import asyncio

import pytest

from debrid_stream.engine.base import EngineHandle, TransferEngine
from debrid_stream.errors import EngineError
from debrid_stream.manager import SessionManager
from debrid_stream.models import EngineStats, FileEntry, TorrentMetadata, TorrentSource

HASH_A = "a" * 40
HASH_B = "b" * 40
HASH_C = "c" * 40
HASH_D = "d" * 40


def make_metadata(name: str, files: list[tuple[str, int]]) -> TorrentMetadata:
    entries = tuple(
        FileEntry(index=i, name=file_name, path=f"{name}/{file_name}", length=length)
        for i, (file_name, length) in enumerate(files)
    )
    return TorrentMetadata(name=name, total_length=sum(f.length for f in entries), files=entries)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEngine(TransferEngine):
    """In-memory engine. Metadata and content are registered per info-hash."""

    def __init__(self, auto_metadata: bool = True, auto_ready: bool = True, chunk_size: int = 32) -> None:
        self.auto_metadata = auto_metadata
        self.auto_ready = auto_ready
        self.chunk_size = chunk_size
        self.metadata: dict[str, TorrentMetadata] = {}
        self.content: dict[tuple[str, int], bytes] = {}
        self.stats_by_hash: dict[str, EngineStats] = {}
        self.url_sources: dict[str, str] = {}
        self.handles: dict[str, EngineHandle] = {}
        self.submissions: list[str] = []
        self.released: list[str] = []
        self.reads: list[tuple[str, int, int, int]] = []
        self.submit_error: Exception | None = None
        self.release_error: Exception | None = None
        self.fail_read_after: int | None = None
        self.started = False
        self.closed = False

    def add_torrent(self, info_hash: str, metadata: TorrentMetadata, fill: bool = True) -> None:
        self.metadata[info_hash] = metadata
        if fill:
            for f in metadata.files:
                self.content[(info_hash, f.index)] = bytes(i % 251 for i in range(f.length))

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def fetch_source(self, url: str) -> TorrentSource:
        if url not in self.url_sources:
            raise EngineError(f"Torrent file download failed: {url}")
        return TorrentSource(info_hash=self.url_sources[url], uri=url, data=b"d4:infod...ee")

    async def submit(self, source: TorrentSource) -> EngineHandle:
        self.submissions.append(source.info_hash)
        # Let racing callers interleave with the submission
        await asyncio.sleep(0)
        if self.submit_error is not None:
            raise self.submit_error
        handle = EngineHandle(source)
        self.handles[source.info_hash] = handle
        if self.auto_metadata and source.info_hash in self.metadata:
            handle.resolve_metadata(self.metadata[source.info_hash])
            if self.auto_ready:
                handle.mark_content_ready()
        return handle

    async def read_stream(self, handle, file_index, start, end):
        self.reads.append((handle.info_hash, file_index, start, end))
        data = self.content[(handle.info_hash, file_index)][start:end + 1]
        for offset in range(0, len(data), self.chunk_size):
            if self.fail_read_after is not None and offset >= self.fail_read_after:
                raise EngineError("piece read failed")
            await asyncio.sleep(0)
            yield data[offset:offset + self.chunk_size]

    def stats(self, handle) -> EngineStats:
        return self.stats_by_hash.get(handle.info_hash, EngineStats())

    async def release(self, handle) -> None:
        self.released.append(handle.info_hash)
        if self.release_error is not None:
            raise self.release_error


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(engine: FakeEngine, clock: FakeClock) -> SessionManager:
    return SessionManager(
        engine,
        max_sessions=3,
        metadata_timeout=0.2,
        ready_timeout=0.2,
        idle_threshold=600,
        reaper_interval=60,
        clock=clock,
    )
