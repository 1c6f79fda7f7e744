"""
Process-wide bookkeeping of torrent sessions.

The registry is the only owner of engine handles. It maps info-hashes to
TorrentSession records, keeps them in a min-heap ordered by (added_at,
insertion sequence) and evicts from the top of that heap whenever an insert
takes it past max_sessions.

All mapping mutations happen without an await in between, so on a single
event loop they are atomic. Engine release is awaited under the victim's own
session lock, which is what serialises eviction against stream opens.
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Dict, List, Optional

from debrid_stream.engine.base import TransferEngine
from debrid_stream.models import SessionSnapshot, SessionState, TorrentSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self, engine: TransferEngine, max_sessions: int = 10, clock=time.monotonic):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.engine = engine
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: Dict[str, TorrentSession] = {}
        self._order: List[tuple] = []
        self._seq = itertools.count()

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, info_hash):
        return info_hash in self._sessions

    def get(self, info_hash: str) -> Optional[TorrentSession]:
        return self._sessions.get(info_hash)

    async def upsert_pending(self, info_hash: str, identifier: str, on_create=None):
        """
        Returns (session, created). An existing session for the key is
        returned as-is, so concurrent callers share one engine submission.

        on_create is called with the new session before anything is awaited,
        so a racing caller can never observe it half-initialised.
        """
        existing = self._sessions.get(info_hash)
        if existing is not None:
            return existing, False

        now = self._clock()
        session = TorrentSession(
            info_hash=info_hash,
            identifier=identifier,
            added_at=now,
            last_active_at=now,
        )
        self._sessions[info_hash] = session
        heapq.heappush(self._order, (session.added_at, next(self._seq), info_hash, session))
        if on_create is not None:
            on_create(session)
        logger.info(f"Tracking new torrent session {info_hash} ({len(self._sessions)}/{self.max_sessions})")

        await self.enforce_capacity()
        return session, True

    async def enforce_capacity(self):
        """Evict the oldest sessions until the registry is back within max_sessions."""
        victims = []
        while len(self._sessions) > self.max_sessions:
            victim = self._pop_oldest()
            if victim is None:
                break
            logger.info(f"Session limit of {self.max_sessions} reached, evicting oldest torrent {victim.info_hash}")
            self._detach(victim)
            victims.append(victim)
        for victim in victims:
            await self._release(victim)

    async def remove(self, info_hash: str, reason: str = "removed") -> bool:
        session = self._sessions.get(info_hash)
        if session is None:
            return False
        await self.evict(session, reason=reason)
        return True

    async def evict(self, session: TorrentSession, reason: str, state: SessionState = SessionState.EVICTED):
        """
        Drop a session from the mapping and release its engine handle.
        A session that is no longer the mapped entry for its key is only released.
        """
        if self._sessions.get(session.info_hash) is session:
            self._detach(session, state)
        elif not session.is_terminal:
            session.state = state
        logger.info(f"Evicting torrent {session.info_hash}: {reason}")
        await self._release(session)

    def list_active(self) -> List[SessionSnapshot]:
        return [session.snapshot() for session in self._sessions.values()]

    def sessions(self) -> List[TorrentSession]:
        return list(self._sessions.values())

    async def close(self):
        """Best-effort release of every engine handle at shutdown."""
        sessions = list(self._sessions.values())
        for session in sessions:
            self._detach(session)
        self._order.clear()
        for session in sessions:
            await self._release(session)
        if sessions:
            logger.info(f"Released {len(sessions)} torrent session(s)")

    def _pop_oldest(self) -> Optional[TorrentSession]:
        while self._order:
            _, _, info_hash, session = heapq.heappop(self._order)
            # Entries of sessions that were already removed are skipped lazily
            if self._sessions.get(info_hash) is session:
                return session
        return None

    def _detach(self, session: TorrentSession, state: SessionState = SessionState.EVICTED):
        self._sessions.pop(session.info_hash, None)
        if len(self._order) > 2 * len(self._sessions) + 16:
            self._order = [e for e in self._order if self._sessions.get(e[2]) is e[3]]
            heapq.heapify(self._order)
        if not session.is_terminal:
            session.state = state
        task = session.metadata_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _release(self, session: TorrentSession):
        async with session.lock:
            handle, session.engine_handle = session.engine_handle, None
            if handle is None:
                return
            try:
                await self.engine.release_once(handle)
            except Exception as e:
                logger.warning(f"Error releasing torrent {session.info_hash}: {e}")
