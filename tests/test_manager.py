"""Tests for the session lifecycle controller."""

from __future__ import annotations

import asyncio

import pytest

from conftest import HASH_A, HASH_B, HASH_C, HASH_D, make_metadata
from debrid_stream.errors import (
    EngineError,
    FileIndexOutOfRange,
    InvalidIdentifier,
    MetadataTimeout,
    NoPlayableFile,
    ReadinessTimeout,
    SessionNotFound,
)
from debrid_stream.models import EngineStats, SessionState
from debrid_stream.streaming import open_stream

MB = 1024 * 1024


async def wait_for_submission(engine, info_hash) -> None:
    while info_hash not in engine.handles:
        await asyncio.sleep(0)


class TestAddByIdentifier:
    @pytest.mark.asyncio
    async def test_populates_metadata(self, manager, engine) -> None:
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 700), ("info.nfo", 5)]))

        session = await manager.add_by_identifier(HASH_A.upper())

        assert session.info_hash == HASH_A
        assert session.identifier == f"magnet:?xt=urn:btih:{HASH_A}"
        assert session.state is SessionState.READY
        assert session.display_name == "Movie"
        assert session.total_length == 705
        assert [f.name for f in session.files] == ["movie.mkv", "info.nfo"]
        assert session.content_ready is True

    @pytest.mark.asyncio
    async def test_concurrent_adds_share_one_submission(self, manager, engine) -> None:
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 700)]))

        first, second = await asyncio.gather(
            manager.add_by_identifier(HASH_A),
            manager.add_by_identifier(f"magnet:?xt=urn:btih:{HASH_A}&dn=Movie"),
        )

        assert first is second
        assert engine.submissions == [HASH_A]

    @pytest.mark.asyncio
    async def test_re_add_of_ready_session_does_not_resubmit(self, manager, engine) -> None:
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 700)]))
        first = await manager.add_by_identifier(HASH_A)
        second = await manager.add_by_identifier(HASH_A)

        assert first is second
        assert engine.submissions == [HASH_A]

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_wait(self, manager, engine) -> None:
        engine.auto_metadata = False
        metadata = make_metadata("Movie", [("movie.mkv", 700)])
        engine.add_torrent(HASH_A, metadata)

        aborted = asyncio.create_task(manager.add_by_identifier(HASH_A))
        patient = asyncio.create_task(manager.add_by_identifier(HASH_A))
        await wait_for_submission(engine, HASH_A)

        aborted.cancel()
        with pytest.raises(asyncio.CancelledError):
            await aborted

        engine.handles[HASH_A].resolve_metadata(metadata)
        session = await patient

        assert session.state is SessionState.READY
        assert engine.submissions == [HASH_A]

    @pytest.mark.asyncio
    async def test_metadata_timeout_frees_capacity(self, manager, engine) -> None:
        engine.auto_metadata = False

        with pytest.raises(MetadataTimeout):
            await manager.add_by_identifier(HASH_A)

        assert manager.get(HASH_A) is None
        assert len(manager.registry) == 0
        assert engine.released == [HASH_A]

    @pytest.mark.asyncio
    async def test_submit_failure(self, manager, engine) -> None:
        engine.submit_error = EngineError("tracker refused")

        with pytest.raises(EngineError, match="tracker refused"):
            await manager.add_by_identifier(HASH_A)

        assert manager.get(HASH_A) is None

    @pytest.mark.asyncio
    async def test_engine_error_during_metadata_wait(self, manager, engine) -> None:
        engine.auto_metadata = False
        task = asyncio.create_task(manager.add_by_identifier(HASH_A))
        await wait_for_submission(engine, HASH_A)

        engine.handles[HASH_A].fail(EngineError("torrent error"))

        with pytest.raises(EngineError):
            await task
        assert manager.get(HASH_A) is None
        assert engine.released == [HASH_A]

    @pytest.mark.asyncio
    async def test_failed_add_can_be_retried(self, manager, engine) -> None:
        engine.auto_metadata = False
        with pytest.raises(MetadataTimeout):
            await manager.add_by_identifier(HASH_A)

        engine.auto_metadata = True
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 700)]))
        session = await manager.add_by_identifier(HASH_A)

        assert session.state is SessionState.READY
        assert engine.submissions == [HASH_A, HASH_A]

    @pytest.mark.asyncio
    async def test_torrent_url_is_fetched_first(self, manager, engine) -> None:
        url = "https://example.com/movie.torrent"
        engine.url_sources[url] = HASH_B
        engine.add_torrent(HASH_B, make_metadata("Movie", [("movie.mp4", 700)]))

        session = await manager.add_by_identifier(url)

        assert session.info_hash == HASH_B
        assert session.identifier == url

    @pytest.mark.asyncio
    async def test_invalid_identifier(self, manager, engine) -> None:
        with pytest.raises(InvalidIdentifier):
            await manager.add_by_identifier("definitely not a torrent")
        assert engine.submissions == []

    @pytest.mark.asyncio
    async def test_capacity_never_exceeded(self, manager, engine, clock) -> None:
        hashes = [HASH_A, HASH_B, HASH_C, HASH_D]
        for info_hash in hashes:
            engine.add_torrent(info_hash, make_metadata(info_hash[:4], [("movie.mkv", 10)]))

        for info_hash in hashes:
            await manager.add_by_identifier(info_hash)
            clock.advance(1)
            assert len(manager.registry) <= manager.registry.max_sessions

        assert manager.get(HASH_A) is None
        assert engine.released == [HASH_A]

    @pytest.mark.asyncio
    async def test_eviction_while_pending_reports_not_found(self, manager, engine, clock) -> None:
        engine.auto_metadata = False
        pending = asyncio.create_task(manager.add_by_identifier(HASH_A))
        await wait_for_submission(engine, HASH_A)

        engine.auto_metadata = True
        for info_hash in (HASH_B, HASH_C, HASH_D):
            clock.advance(1)
            engine.add_torrent(info_hash, make_metadata(info_hash[:4], [("movie.mkv", 10)]))
            await manager.add_by_identifier(info_hash)

        with pytest.raises(SessionNotFound):
            await pending
        assert HASH_A in engine.released


class TestChooseFile:
    @pytest.mark.asyncio
    async def test_prefers_largest_video(self, manager, engine) -> None:
        engine.add_torrent(
            HASH_A,
            make_metadata("Movie", [("movie.nfo", 50 * MB), ("movie.mkv", 700 * MB)]),
            fill=False,
        )
        session = await manager.add_by_identifier(HASH_A)

        assert manager.choose_file(session).name == "movie.mkv"

    @pytest.mark.asyncio
    async def test_ignores_large_non_video(self, manager, engine) -> None:
        engine.add_torrent(
            HASH_A,
            make_metadata("Pack", [("sample.mp4", 10), ("bonus.iso", 5000), ("feature.mp4", 900)]),
            fill=False,
        )
        session = await manager.add_by_identifier(HASH_A)

        assert manager.choose_file(session).index == 2

    @pytest.mark.asyncio
    async def test_tie_goes_to_lowest_index(self, manager, engine) -> None:
        engine.add_torrent(
            HASH_A,
            make_metadata("Pack", [("a.txt", 1), ("cd1.avi", 100), ("cd2.avi", 100)]),
            fill=False,
        )
        session = await manager.add_by_identifier(HASH_A)

        assert manager.choose_file(session).index == 1

    @pytest.mark.asyncio
    async def test_explicit_index(self, manager, engine) -> None:
        engine.add_torrent(HASH_A, make_metadata("Pack", [("a.nfo", 1), ("b.mkv", 2)]), fill=False)
        session = await manager.add_by_identifier(HASH_A)

        assert manager.choose_file(session, 0).name == "a.nfo"
        with pytest.raises(FileIndexOutOfRange):
            manager.choose_file(session, 2)
        with pytest.raises(FileIndexOutOfRange):
            manager.choose_file(session, -1)

    @pytest.mark.asyncio
    async def test_no_playable_file(self, manager, engine) -> None:
        engine.add_torrent(HASH_A, make_metadata("Docs", [("a.pdf", 1), ("b.txt", 2)]), fill=False)
        session = await manager.add_by_identifier(HASH_A)

        with pytest.raises(NoPlayableFile):
            manager.choose_file(session)


class TestAwaitReady:
    @pytest.mark.asyncio
    async def test_returns_immediately_when_ready(self, manager, engine) -> None:
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 10)]))
        session = await manager.add_by_identifier(HASH_A)

        await asyncio.wait_for(manager.await_ready(session, timeout=5), 0.1)

    @pytest.mark.asyncio
    async def test_times_out(self, manager, engine) -> None:
        engine.auto_ready = False
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 10)]))
        session = await manager.add_by_identifier(HASH_A)

        with pytest.raises(ReadinessTimeout):
            await manager.await_ready(session, timeout=0.05)
        assert session.content_ready is False
        await manager.close()

    @pytest.mark.asyncio
    async def test_wakes_on_content_ready(self, manager, engine) -> None:
        engine.auto_ready = False
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 10)]))
        session = await manager.add_by_identifier(HASH_A)

        waiter = asyncio.create_task(manager.await_ready(session, timeout=5))
        await asyncio.sleep(0)
        engine.handles[HASH_A].mark_content_ready()
        await waiter

        assert session.content_ready is True
        assert manager.status(HASH_A).ready is True

    @pytest.mark.asyncio
    async def test_evicted_session(self, manager, engine) -> None:
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 10)]))
        session = await manager.add_by_identifier(HASH_A)
        await manager.remove(HASH_A)

        with pytest.raises(SessionNotFound):
            await manager.await_ready(session)

    @pytest.mark.asyncio
    async def test_eviction_during_wait_reports_not_found(self, manager, engine) -> None:
        engine.auto_ready = False
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 10)]))
        session = await manager.add_by_identifier(HASH_A)

        waiter = asyncio.create_task(manager.await_ready(session, timeout=5))
        await asyncio.sleep(0.05)
        await manager.remove(HASH_A)

        with pytest.raises(SessionNotFound):
            await waiter

    @pytest.mark.asyncio
    async def test_engine_error_during_wait_is_reported(self, manager, engine) -> None:
        engine.auto_ready = False
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 10)]))
        session = await manager.add_by_identifier(HASH_A)

        waiter = asyncio.create_task(manager.await_ready(session, timeout=5))
        await asyncio.sleep(0)
        engine.handles[HASH_A].fail(EngineError("tracker error"))

        with pytest.raises(EngineError, match="tracker error"):
            await waiter
        await asyncio.sleep(0)
        assert manager.get(HASH_A) is None


class TestIdleReaper:
    @pytest.fixture
    def movie(self, engine):
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 100)]))

    @pytest.mark.asyncio
    async def test_idle_session_is_evicted(self, manager, engine, clock, movie) -> None:
        await manager.add_by_identifier(HASH_A)
        clock.advance(601)

        reaped = await manager.reap_idle()

        assert reaped == [HASH_A]
        assert manager.get(HASH_A) is None
        assert engine.released == [HASH_A]

    @pytest.mark.asyncio
    async def test_recent_activity_keeps_session(self, manager, clock, movie) -> None:
        await manager.add_by_identifier(HASH_A)
        clock.advance(599)

        assert await manager.reap_idle() == []
        assert manager.get(HASH_A) is not None

    @pytest.mark.asyncio
    async def test_throughput_marks_idle_before_evicting(self, manager, engine, clock, movie) -> None:
        session = await manager.add_by_identifier(HASH_A)
        engine.stats_by_hash[HASH_A] = EngineStats(download_rate=2048)
        clock.advance(700)

        assert await manager.reap_idle() == []
        assert session.state is SessionState.IDLE

        engine.stats_by_hash[HASH_A] = EngineStats()
        assert await manager.reap_idle() == [HASH_A]
        assert session.state is SessionState.EVICTED

    @pytest.mark.asyncio
    async def test_abandoned_stream_is_reaped(self, manager, engine, clock, movie) -> None:
        session = await manager.add_by_identifier(HASH_A)
        await open_stream(manager, HASH_A, 0)
        clock.advance(24 * 3600)

        assert await manager.reap_idle() == [HASH_A]
        assert session.state is SessionState.EVICTED
        assert engine.released == [HASH_A]

    @pytest.mark.asyncio
    async def test_stalled_stream_with_throughput_goes_idle(self, manager, engine, clock, movie) -> None:
        session = await manager.add_by_identifier(HASH_A)
        _, stream = await open_stream(manager, HASH_A, 0)
        engine.stats_by_hash[HASH_A] = EngineStats(download_rate=2048)
        clock.advance(601)

        assert await manager.reap_idle() == []
        assert session.state is SessionState.IDLE

        await stream.__anext__()
        assert session.state is SessionState.STREAMING
        await stream.aclose()
        assert session.state is SessionState.READY

    @pytest.mark.asyncio
    async def test_streaming_session_with_recent_reads_is_kept(self, manager, clock, movie) -> None:
        await manager.add_by_identifier(HASH_A)
        _, stream = await open_stream(manager, HASH_A, 0)
        clock.advance(599)

        assert await manager.reap_idle() == []
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_reads_count_as_activity(self, manager, clock, movie) -> None:
        await manager.add_by_identifier(HASH_A)
        clock.advance(500)
        _, stream = await open_stream(manager, HASH_A, 0)
        async for _ in stream:
            pass
        clock.advance(500)

        assert await manager.reap_idle() == []

    @pytest.mark.asyncio
    async def test_reaper_loop_runs_sweeps(self, engine, clock, movie) -> None:
        from debrid_stream.manager import SessionManager

        manager = SessionManager(engine, idle_threshold=10, reaper_interval=0.01, clock=clock)
        await manager.add_by_identifier(HASH_A)
        clock.advance(11)

        manager.start_reaper()
        for _ in range(100):
            if manager.get(HASH_A) is None:
                break
            await asyncio.sleep(0.01)
        await manager.close()

        assert manager.get(HASH_A) is None


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_reports_engine_counters(self, manager, engine) -> None:
        engine.add_torrent(HASH_A, make_metadata("Movie", [("movie.mkv", 10)]))
        engine.stats_by_hash[HASH_A] = EngineStats(
            progress=0.25,
            download_rate=1000,
            upload_rate=10,
            peer_count=7,
            bytes_downloaded=2500,
            bytes_uploaded=30,
        )
        await manager.add_by_identifier(HASH_A)

        status = manager.status(HASH_A)

        assert status.progress == 0.25
        assert status.peer_count == 7
        assert status.bytes_downloaded == 2500
        assert status.ready is True
        assert status.name == "Movie"

    def test_status_unknown(self, manager) -> None:
        assert manager.status(HASH_A) is None

    @pytest.mark.asyncio
    async def test_close_releases_all_sessions(self, manager, engine) -> None:
        for info_hash in (HASH_A, HASH_B):
            engine.add_torrent(info_hash, make_metadata("x", [("movie.mkv", 10)]))
            await manager.add_by_identifier(info_hash)

        await manager.close()

        assert sorted(engine.released) == [HASH_A, HASH_B]
        assert manager.list_status() == []
