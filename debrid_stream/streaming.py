"""
Range streaming controller: maps an HTTP Range header onto a byte span of a
session's file and hands back the response status, headers and a
pull-driven byte stream for exactly that span.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Optional

from debrid_stream.errors import InvalidRange, ReadinessTimeout, SessionNotFound
from debrid_stream.models import FileEntry, SessionState, TorrentSession

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    'mp4': 'video/mp4',
    'mkv': 'video/x-matroska',
    'avi': 'video/x-msvideo',
    'mov': 'video/quicktime',
    'wmv': 'video/x-ms-wmv',
    'flv': 'video/x-flv',
    'webm': 'video/webm',
    'm4v': 'video/x-m4v',
    'mpg': 'video/mpeg',
    'mpeg': 'video/mpeg',
    'ts': 'video/mp2t',
    '3gp': 'video/3gpp',
    'srt': 'application/x-subrip',
    'vtt': 'text/vtt',
    'mp3': 'audio/mpeg',
    'flac': 'audio/flac',
}
DEFAULT_CONTENT_TYPE = 'application/octet-stream'

_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d*)$")


def content_type_for(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lower().lstrip('.')
    return CONTENT_TYPES.get(ext, DEFAULT_CONTENT_TYPE)


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def parse_range(header: Optional[str], length: int) -> Optional[ByteRange]:
    """
    Parses a single `bytes=start-end` range (end optional) against a file of
    the given length. Returns None when there is no header.
    """
    if header is None or not header.strip():
        return None
    match = _RANGE_RE.match(header.strip().replace(" ", ""))
    if not match:
        raise InvalidRange(f"Unsupported range: {header}", length=length)

    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else length - 1
    if start >= length or end >= length or start > end:
        raise InvalidRange(f"Range {header} not satisfiable for length {length}", length=length)
    return ByteRange(start, end)


@dataclass
class StreamPlan:
    """Everything needed to answer a stream request, minus the body."""

    status_code: int
    headers: Dict[str, str]
    file: FileEntry
    byte_range: Optional[ByteRange]


def plan_stream(file: FileEntry, range_header: Optional[str] = None) -> StreamPlan:
    byte_range = parse_range(range_header, file.length)
    headers = {
        'Accept-Ranges': 'bytes',
        'Content-Type': content_type_for(file.name),
    }
    if byte_range is None:
        headers['Content-Length'] = str(file.length)
        return StreamPlan(200, headers, file, None)

    headers['Content-Range'] = f"bytes {byte_range.start}-{byte_range.end}/{file.length}"
    headers['Content-Length'] = str(byte_range.length)
    return StreamPlan(206, headers, file, byte_range)


class ByteStream:
    """
    Async iterator over the engine's bytes for one open stream.

    Every chunk counts as read activity on the session. Closing the stream
    (normally, on error, or because the client went away) gives the session
    back to READY once no other stream is open.
    """

    def __init__(self, session: TorrentSession, source, clock):
        self.session = session
        self._source = source
        self._clock = clock
        self._closed = False
        self.bytes_sent = 0

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            chunk = await self._source.__anext__()
        except BaseException:
            await self.aclose()
            raise
        self.bytes_sent += len(chunk)
        self.session.bytes_served += len(chunk)
        if self.session.state is SessionState.IDLE:
            self.session.state = SessionState.STREAMING
        self.session.touch(self._clock())
        return chunk

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        close = getattr(self._source, "aclose", None)
        try:
            if close is not None:
                await close()
        finally:
            session = self.session
            session.open_streams = max(session.open_streams - 1, 0)
            session.touch(self._clock())
            if session.open_streams == 0 and session.state is SessionState.STREAMING:
                session.state = SessionState.READY
            logger.info(f"Stream closed for {session.info_hash} after {self.bytes_sent} bytes")


async def _empty():
    return
    yield  # pragma: no cover


async def open_stream(manager, info_hash: str, file_index: Optional[int], range_header: Optional[str] = None):
    """
    Returns (plan, ByteStream) for a ready session. The session must already
    have metadata; callers wait with SessionManager.await_ready beforehand.
    """
    session = manager.require(info_hash)
    async with session.lock:
        # Eviction flips the state before it takes this lock to release the handle
        if session.is_terminal or manager.get(info_hash) is not session or session.engine_handle is None:
            raise SessionNotFound(f"Torrent {info_hash} not found")
        if not session.is_streamable:
            raise ReadinessTimeout(f"Torrent {info_hash} not ready yet, please retry")

        file = manager.choose_file(session, file_index)
        plan = plan_stream(file, range_header)
        if file.length == 0:
            source = _empty()
        else:
            span = plan.byte_range or ByteRange(0, file.length - 1)
            source = manager.engine.read_stream(session.engine_handle, file.index, span.start, span.end)

        session.open_streams += 1
        session.state = SessionState.STREAMING
        session.touch(manager.clock())

    logger.info(
        f"Streaming {file.name} from {info_hash} "
        f"({plan.headers.get('Content-Range', 'full file')})"
    )
    return plan, ByteStream(session, source, manager.clock)
