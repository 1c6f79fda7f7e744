"""
Interface between the session core and the peer-to-peer transfer engine.

The engine's callback events (metadata received, content ready, error) are
surfaced as asyncio futures on an EngineHandle. Each future is resolved at
most once; later events for the same handle are ignored.
"""

import asyncio
from abc import ABCMeta, abstractmethod
from typing import AsyncIterator, Optional

from debrid_stream.errors import EngineError
from debrid_stream.models import EngineStats, TorrentMetadata, TorrentSource


class EngineHandle:
    """A single submitted transfer, as seen by the session core."""

    def __init__(self, source: TorrentSource, native=None):
        loop = asyncio.get_running_loop()
        self.source = source
        self.native = native
        self.released = False
        self._metadata: asyncio.Future = loop.create_future()
        self._content_ready: asyncio.Future = loop.create_future()
        # Nobody may be waiting when a failure lands; avoid "exception never retrieved" noise.
        self._metadata.add_done_callback(_consume_exception)
        self._content_ready.add_done_callback(_consume_exception)

    @property
    def info_hash(self) -> str:
        return self.source.info_hash

    @property
    def has_metadata(self) -> bool:
        return self._metadata.done() and not self._metadata.cancelled() and self._metadata.exception() is None

    @property
    def is_content_ready(self) -> bool:
        return self._content_ready.done() and not self._content_ready.cancelled() and self._content_ready.exception() is None

    def resolve_metadata(self, metadata: TorrentMetadata):
        if not self._metadata.done():
            self._metadata.set_result(metadata)

    def mark_content_ready(self):
        if not self._content_ready.done():
            self._content_ready.set_result(None)

    def fail(self, cause):
        error = cause if isinstance(cause, EngineError) else EngineError(str(cause))
        for future in (self._metadata, self._content_ready):
            if not future.done():
                future.set_exception(error)

    async def wait_metadata(self) -> TorrentMetadata:
        return await asyncio.shield(self._metadata)

    async def wait_content_ready(self):
        await asyncio.shield(self._content_ready)

    def __repr__(self):
        return f"<EngineHandle {self.info_hash} released={self.released}>"


def _consume_exception(future: asyncio.Future):
    if not future.cancelled():
        future.exception()


class TransferEngine(metaclass=ABCMeta):
    """Abstract base class for transfer engine implementations"""

    async def start(self):
        """Start background machinery (alert pumps, network sessions)."""

    async def close(self):
        """Stop background machinery. Handles are released by the registry first."""

    @abstractmethod
    async def fetch_source(self, url: str) -> TorrentSource:
        """Download a .torrent file and compute its info-hash."""

    @abstractmethod
    async def submit(self, source: TorrentSource) -> EngineHandle:
        """Start transferring a torrent. Raises EngineError when refused."""

    @abstractmethod
    def read_stream(
        self, handle: EngineHandle, file_index: int, start: int, end: int
    ) -> AsyncIterator[bytes]:
        """
        Iterate over the inclusive byte span [start, end] of one file.

        Implementations must only fetch data as the consumer pulls, so a slow
        client slows the transfer instead of growing an in-memory buffer.
        """

    @abstractmethod
    def stats(self, handle: EngineHandle) -> EngineStats:
        """Current transfer counters for a handle."""

    @abstractmethod
    async def release(self, handle: EngineHandle):
        """Stop the transfer and free everything the handle holds."""

    async def release_once(self, handle: Optional[EngineHandle]):
        """Release a handle unless it was already released."""
        if handle is None or handle.released:
            return
        handle.released = True
        handle.fail(EngineError("Torrent was released"))
        await self.release(handle)
