import asyncio
import logging
from collections import defaultdict
from pathlib import Path

import aiohttp
import libtorrent as lt

from debrid_stream.engine.base import EngineHandle, TransferEngine
from debrid_stream.errors import EngineError
from debrid_stream.models import EngineStats, FileEntry, TorrentMetadata, TorrentSource

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
# Pieces ahead of the read position that get a download deadline
READ_AHEAD_PIECES = 8
PIECE_DEADLINE_MS = 1000
# A read that makes no progress for this long is treated as an engine failure
PIECE_STALL_TIMEOUT_SECONDS = 120
MAX_TORRENT_FILE_BYTES = 10 * 1024 * 1024
ALERT_POLL_SECONDS = 0.1

_READY_STATES = {
    lt.torrent_status.states.downloading,
    lt.torrent_status.states.finished,
    lt.torrent_status.states.seeding,
}


def _hash_of(native_handle):
    return str(native_handle.info_hashes().v1).lower()


class LibtorrentEngine(TransferEngine):
    """Transfer engine backed by a libtorrent session."""

    def __init__(self, download_path, listen_port, max_connections=55):
        self.download_path = Path(download_path)
        self.listen_port = listen_port
        self.max_connections = max_connections
        self._ses = None
        self._pump_task = None
        self._handles = {}
        # (info_hash, piece) -> futures resolved when the piece is on disk
        self._piece_waiters = defaultdict(list)
        # (info_hash, piece) -> futures resolved with the piece bytes
        self._read_waiters = defaultdict(list)

    # --- lifecycle ---

    async def start(self):
        if self._ses is not None:
            return
        self.download_path.mkdir(parents=True, exist_ok=True)
        self._ses = lt.session({
            'listen_interfaces': f'0.0.0.0:{self.listen_port}',
            'alert_mask': lt.alert.category_t.all_categories,
            'user_agent': 'debrid-stream/1.0.0',
            'download_rate_limit': 0,
            'upload_rate_limit': 0,
            'connections_limit': self.max_connections,
            'active_dht_limit': 88,
            'active_tracker_limit': 1600,
            'active_lsd_limit': 60,
            'active_limit': 500,
        })
        self._pump_task = asyncio.create_task(self._alert_pump())
        logger.info(f"libtorrent session listening on port {self.listen_port}")

    async def close(self):
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        self._fail_waiters(None, EngineError("Engine is shutting down"))
        self._ses = None

    # --- submission ---

    async def fetch_source(self, url):
        timeout = aiohttp.ClientTimeout(total=60, connect=15, sock_read=30)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise EngineError(f"Torrent file download failed with HTTP {response.status}")
                    data = await response.content.read(MAX_TORRENT_FILE_BYTES + 1)
        except aiohttp.ClientError as e:
            raise EngineError(f"Torrent file download failed: {e}") from e
        if len(data) > MAX_TORRENT_FILE_BYTES:
            raise EngineError("Torrent file is too large")

        decoded = lt.bdecode(data)
        if not decoded:
            raise EngineError("Downloaded file is not a valid torrent")
        try:
            ti = lt.torrent_info(decoded)
        except RuntimeError as e:
            raise EngineError(f"Downloaded file is not a valid torrent: {e}") from e
        return TorrentSource(info_hash=str(ti.info_hashes().v1).lower(), uri=url, data=data)

    async def submit(self, source):
        if self._ses is None:
            raise EngineError("Engine is not started")
        try:
            if source.data is not None:
                params = lt.add_torrent_params()
                params.ti = lt.torrent_info(lt.bdecode(source.data))
            else:
                params = lt.parse_magnet_uri(source.uri)
            params.save_path = str(self.download_path)
            params.storage_mode = lt.storage_mode_t.storage_mode_sparse
            native = self._ses.add_torrent(params)
        except RuntimeError as e:
            raise EngineError(f"Failed to add torrent: {e}") from e

        handle = EngineHandle(source, native)
        self._handles[source.info_hash] = handle
        logger.info(f"Submitted torrent {source.info_hash} with save_path: {params.save_path}")

        if native.status().has_metadata:
            handle.resolve_metadata(self._metadata_of(native))
        return handle

    # --- alerts ---

    async def _alert_pump(self):
        """Listens for and processes libtorrent alerts."""
        while True:
            for alert in self._ses.pop_alerts():
                try:
                    self._dispatch(alert)
                except Exception:
                    logger.error(f"Error handling alert {alert.what()}", exc_info=True)
            await asyncio.sleep(ALERT_POLL_SECONDS)

    def _dispatch(self, alert):
        if isinstance(alert, lt.read_piece_alert):
            key = (_hash_of(alert.handle), alert.piece)
            waiters = self._read_waiters.pop(key, [])
            error = alert.error.message() if alert.error.value() else None
            for future in waiters:
                if future.done():
                    continue
                if error:
                    future.set_exception(EngineError(f"Reading piece {alert.piece} failed: {error}"))
                else:
                    future.set_result(bytes(alert.buffer))
            return

        if isinstance(alert, lt.piece_finished_alert):
            key = (_hash_of(alert.handle), alert.piece_index)
            for future in self._piece_waiters.pop(key, []):
                if not future.done():
                    future.set_result(None)
            return

        if not isinstance(alert, (
            lt.metadata_received_alert,
            lt.torrent_checked_alert,
            lt.state_changed_alert,
            lt.torrent_error_alert,
        )):
            return

        handle = self._handles.get(_hash_of(alert.handle))
        if handle is None:
            return

        if isinstance(alert, lt.metadata_received_alert):
            metadata = self._metadata_of(alert.handle)
            handle.resolve_metadata(metadata)
            logger.info(f"Metadata received for {metadata.name}")
            if alert.handle.status().state in _READY_STATES:
                handle.mark_content_ready()
        elif isinstance(alert, lt.torrent_error_alert):
            message = alert.error.message()
            logger.error(f"Torrent error for {handle.info_hash}: {message}")
            handle.fail(EngineError(message))
            self._fail_waiters(handle.info_hash, EngineError(message))
        elif alert.handle.status().state in _READY_STATES and handle.has_metadata:
            handle.mark_content_ready()

    @staticmethod
    def _metadata_of(native):
        ti = native.torrent_file()
        fs = ti.files()
        files = tuple(
            FileEntry(index=i, name=fs.file_name(i), path=fs.file_path(i), length=fs.file_size(i))
            for i in range(fs.num_files())
        )
        return TorrentMetadata(name=ti.name(), total_length=ti.total_size(), files=files)

    def _fail_waiters(self, info_hash, error):
        for waiters in (self._piece_waiters, self._read_waiters):
            for key in [k for k in waiters if info_hash is None or k[0] == info_hash]:
                for future in waiters.pop(key):
                    if not future.done():
                        future.set_exception(error)

    # --- reads ---

    async def read_stream(self, handle, file_index, start, end):
        native = handle.native
        ti = native.torrent_file()
        piece_length = ti.piece_length()
        num_pieces = ti.num_pieces()
        file_offset = ti.files().file_offset(file_index)
        abs_start = file_offset + start
        abs_end = file_offset + end
        first_piece = abs_start // piece_length
        last_piece = abs_end // piece_length

        for piece in range(first_piece, last_piece + 1):
            if handle.released:
                raise EngineError("Torrent was released")
            window_end = min(piece + READ_AHEAD_PIECES, last_piece, num_pieces - 1)
            for i, ahead in enumerate(range(piece, window_end + 1)):
                native.set_piece_deadline(ahead, PIECE_DEADLINE_MS * (i + 1))

            data = await self._read_piece(handle, piece)
            piece_start = piece * piece_length
            lo = max(abs_start, piece_start) - piece_start
            hi = min(abs_end, piece_start + len(data) - 1) - piece_start
            view = memoryview(data)[lo:hi + 1]
            for offset in range(0, len(view), CHUNK_SIZE):
                yield bytes(view[offset:offset + CHUNK_SIZE])

    async def _read_piece(self, handle, piece):
        loop = asyncio.get_running_loop()
        native = handle.native
        key = (handle.info_hash, piece)
        try:
            while not native.have_piece(piece):
                finished = loop.create_future()
                self._piece_waiters[key].append(finished)
                # Re-check: the piece may have completed before the waiter existed
                if native.have_piece(piece):
                    break
                await asyncio.wait_for(finished, PIECE_STALL_TIMEOUT_SECONDS)

            data = loop.create_future()
            self._read_waiters[key].append(data)
            native.read_piece(piece)
            return await asyncio.wait_for(data, PIECE_STALL_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            raise EngineError(f"Piece {piece} of {handle.info_hash} stalled") from e

    # --- stats / teardown ---

    def stats(self, handle):
        native = handle.native
        if handle.released or not native.is_valid():
            return EngineStats()
        s = native.status()
        return EngineStats(
            progress=s.progress,
            download_rate=s.download_rate,
            upload_rate=s.upload_rate,
            peer_count=s.num_peers,
            bytes_downloaded=s.all_time_download,
            bytes_uploaded=s.all_time_upload,
        )

    async def release(self, handle):
        self._handles.pop(handle.info_hash, None)
        self._fail_waiters(handle.info_hash, EngineError("Torrent was released"))
        if self._ses is None or not handle.native.is_valid():
            return
        try:
            self._ses.remove_torrent(handle.native, lt.session.delete_files)
        except RuntimeError as e:
            raise EngineError(f"Error removing torrent from session: {e}") from e
        logger.info(f"Removed torrent {handle.info_hash} from session")
