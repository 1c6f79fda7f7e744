"""
Session lifecycle controller.

Turns raw torrent identifiers into ready, streamable sessions and drives
each session through its states:

    PENDING -> METADATA_WAIT -> READY <-> STREAMING
                     |            |
                   FAILED        IDLE -> EVICTED

A STREAMING session whose client stopped reading goes IDLE like any
other inactive one.

Any non-terminal session can also be EVICTED by capacity pressure or
explicit removal. Failed sessions are evicted straight away so they never
hold on to capacity.
"""

import asyncio
import logging
import time
from typing import List, Optional

from debrid_stream.engine.base import TransferEngine
from debrid_stream.errors import (
    EngineError,
    FileIndexOutOfRange,
    MetadataTimeout,
    NoPlayableFile,
    ReadinessTimeout,
    SessionNotFound,
)
from debrid_stream.models import (
    FileEntry,
    SessionState,
    SessionStatus,
    TorrentSession,
)
from debrid_stream.registry import SessionRegistry
from debrid_stream.utils import format_bytes, parse_identifier

logger = logging.getLogger(__name__)

_REAPABLE_STATES = (SessionState.READY, SessionState.STREAMING, SessionState.IDLE)


def _consume_exception(task: asyncio.Task):
    # Failures are delivered to whoever awaits the task; none may be left.
    if not task.cancelled():
        task.exception()


class SessionManager:
    def __init__(
        self,
        engine: TransferEngine,
        max_sessions: int = 10,
        metadata_timeout: float = 300,
        ready_timeout: float = 30,
        idle_threshold: float = 600,
        reaper_interval: float = 60,
        clock=time.monotonic,
    ):
        self.engine = engine
        self.registry = SessionRegistry(engine, max_sessions=max_sessions, clock=clock)
        self.metadata_timeout = metadata_timeout
        self.ready_timeout = ready_timeout
        self.idle_threshold = idle_threshold
        self.reaper_interval = reaper_interval
        self.clock = clock
        self._reaper_task: Optional[asyncio.Task] = None
        self._watchers = set()

    # --- lookups ---

    def get(self, info_hash: str) -> Optional[TorrentSession]:
        return self.registry.get(info_hash.lower())

    def require(self, info_hash: str) -> TorrentSession:
        session = self.get(info_hash)
        if session is None:
            raise SessionNotFound(f"Torrent {info_hash} not found")
        return session

    # --- adding ---

    async def add_by_identifier(self, raw_identifier: str) -> TorrentSession:
        """
        Adds (or joins) the session for an identifier and waits for its metadata.

        Concurrent calls for the same info-hash share one engine submission and
        one metadata wait. Cancelling the caller only abandons its own wait.
        """
        source = parse_identifier(raw_identifier)
        if source is None:
            source = await self.engine.fetch_source(raw_identifier.strip())

        def start_metadata_task(new_session):
            logger.info(f"Adding torrent {source.info_hash}")
            task = asyncio.create_task(self._resolve_metadata(new_session, source))
            task.add_done_callback(_consume_exception)
            new_session.metadata_task = task

        session, _ = await self.registry.upsert_pending(
            source.info_hash, source.uri, on_create=start_metadata_task
        )
        await self._join_metadata(session)
        return session

    async def _join_metadata(self, session: TorrentSession, timeout: Optional[float] = None):
        """Wait on the shared metadata task without letting our cancellation reach it."""
        task = session.metadata_task
        if task is None:
            return
        try:
            if timeout is None:
                await asyncio.shield(task)
            else:
                await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.CancelledError:
            if task.cancelled():
                raise SessionNotFound(f"Torrent {session.info_hash} was evicted before its metadata arrived")
            raise

    async def _resolve_metadata(self, session: TorrentSession, source):
        try:
            handle = await self.engine.submit(source)
        except EngineError as e:
            await self._fail(session, e)
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected engine failure adding {session.info_hash}", exc_info=True)
            error = EngineError(str(e))
            await self._fail(session, error)
            raise error from e

        async with session.lock:
            session.engine_handle = handle
            if session.is_terminal:
                # Evicted while the submission was in flight
                session.engine_handle = None
                await self.engine.release_once(handle)
                raise SessionNotFound(f"Torrent {session.info_hash} was evicted")
            session.state = SessionState.METADATA_WAIT

        try:
            metadata = await asyncio.wait_for(handle.wait_metadata(), self.metadata_timeout)
        except asyncio.TimeoutError:
            error = MetadataTimeout(f"Torrent metadata timeout after {self.metadata_timeout:g}s")
            await self._fail(session, error)
            raise error
        except EngineError as e:
            await self._fail(session, e)
            raise

        async with session.lock:
            if session.is_terminal:
                raise SessionNotFound(f"Torrent {session.info_hash} was evicted")
            session.set_metadata(metadata)
            session.state = SessionState.READY
            session.touch(self.clock())
            session.content_ready = handle.is_content_ready
        logger.info(
            f"Metadata ready for {metadata.name} ({len(metadata.files)} files, "
            f"{format_bytes(metadata.total_length)})"
        )

        if not session.content_ready:
            watcher = asyncio.create_task(self._watch_content_ready(session, handle))
            self._watchers.add(watcher)
            watcher.add_done_callback(self._watchers.discard)
        return session

    async def _watch_content_ready(self, session, handle):
        try:
            await handle.wait_content_ready()
        except EngineError as e:
            if not session.is_terminal:
                logger.warning(f"Torrent {session.info_hash} failed before becoming ready: {e}")
                await self._fail(session, e)
            return
        session.content_ready = True
        logger.info(f"Torrent {session.info_hash} is ready for streaming")

    async def _fail(self, session, error):
        session.error = str(error)
        logger.warning(f"Torrent {session.info_hash} failed: {error}")
        await self.registry.evict(session, reason=f"failed: {error}", state=SessionState.FAILED)

    # --- readiness / file selection ---

    async def await_ready(self, session: TorrentSession, timeout: Optional[float] = None):
        """Blocks until the engine reports the torrent ready for streaming, or the timeout passes."""
        if session.is_terminal:
            raise SessionNotFound(f"Torrent {session.info_hash} is no longer available")
        if session.content_ready:
            return
        timeout = self.ready_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        try:
            await self._join_metadata(session, timeout)
            handle = session.engine_handle
            if handle is None:
                raise SessionNotFound(f"Torrent {session.info_hash} is no longer available")
            await asyncio.wait_for(handle.wait_content_ready(), max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            raise ReadinessTimeout(f"Torrent {session.info_hash} not ready after {timeout:g}s")
        except EngineError as e:
            # Released handles fail their futures; an evicted session reports not-found
            if session.state is SessionState.EVICTED:
                raise SessionNotFound(f"Torrent {session.info_hash} was evicted") from e
            raise
        session.content_ready = True

    @staticmethod
    def choose_file(session: TorrentSession, file_index: Optional[int] = None) -> FileEntry:
        if file_index is not None:
            if not 0 <= file_index < len(session.files):
                raise FileIndexOutOfRange(f"File index {file_index} out of range for {session.info_hash}")
            return session.files[file_index]

        best = None
        for entry in session.files:
            if entry.is_video and (best is None or entry.length > best.length):
                best = entry
        if best is None:
            raise NoPlayableFile(f"No video file found in torrent {session.info_hash}")
        return best

    # --- status / removal ---

    def status(self, info_hash: str) -> Optional[SessionStatus]:
        session = self.get(info_hash)
        if session is None:
            return None
        return self._status_of(session)

    def list_status(self) -> List[SessionStatus]:
        return [self._status_of(s) for s in self.registry.sessions()]

    def _status_of(self, session: TorrentSession) -> SessionStatus:
        handle = session.engine_handle
        stats = self.engine.stats(handle) if handle is not None else None
        return SessionStatus(
            info_hash=session.info_hash,
            name=session.display_name,
            state=session.state,
            progress=stats.progress if stats else 0.0,
            download_rate=stats.download_rate if stats else 0,
            upload_rate=stats.upload_rate if stats else 0,
            peer_count=stats.peer_count if stats else 0,
            bytes_downloaded=stats.bytes_downloaded if stats else 0,
            bytes_uploaded=stats.bytes_uploaded if stats else 0,
            ready=session.content_ready,
        )

    async def remove(self, info_hash: str) -> bool:
        return await self.registry.remove(info_hash.lower())

    # --- idle reaping ---

    async def reap_idle(self) -> List[str]:
        """
        One reaper sweep. Sessions with no read activity for idle_threshold
        become IDLE, including STREAMING ones whose client went away without
        closing the stream; those whose transfer has no throughput either
        are evicted.
        """
        now = self.clock()
        reaped = []
        for session in self.registry.sessions():
            if session.state not in _REAPABLE_STATES:
                continue
            if now - session.last_active_at <= self.idle_threshold:
                continue

            if session.open_streams:
                logger.warning(
                    f"Torrent {session.info_hash} has {session.open_streams} stalled stream(s), "
                    f"treating it as inactive"
                )
            handle = session.engine_handle
            stats = self.engine.stats(handle) if handle is not None else None
            if stats is not None and stats.has_throughput:
                if session.state is not SessionState.IDLE:
                    logger.info(f"Torrent {session.info_hash} has no stream activity, marking idle")
                    session.state = SessionState.IDLE
                continue

            session.state = SessionState.IDLE
            await self.registry.evict(session, reason=f"idle for {now - session.last_active_at:.0f}s")
            reaped.append(session.info_hash)
        return reaped

    async def run_reaper(self):
        """Periodically checks for abandoned sessions and evicts them."""
        while True:
            await asyncio.sleep(self.reaper_interval)
            try:
                reaped = await self.reap_idle()
            except Exception:
                logger.error("Idle reaper sweep failed", exc_info=True)
                continue
            if reaped:
                logger.info(f"Reaped {len(reaped)} idle torrent(s)")

    def start_reaper(self):
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self.run_reaper())

    async def close(self):
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None
        for watcher in list(self._watchers):
            watcher.cancel()
        await self.registry.close()
