from __future__ import annotations

import logging
from dataclasses import replace

import pytest

from motionlog.domain_models import Chunk, DeviceInfo, Session

from conftest import T0_MS, all_records, make_logger, open_session, run_ticks


async def _crashed_session(store, clock, committed: int) -> str:
    """Log *committed* records, then drop the logger as a crash would."""
    logger = make_logger(store, clock)
    session = await open_session(logger)
    await run_ticks(logger, clock, committed)
    await logger.buffer.flush()
    # a few more that never reach the store
    await run_ticks(logger, clock, 3)
    return session.session_id


@pytest.mark.asyncio
async def test_resume_cursor_continues_after_last_committed(store, clock) -> None:
    session_id = await _crashed_session(store, clock, 120)

    logger = make_logger(store, clock)
    info = await logger.restore_if_needed()

    assert info is not None
    assert info.session_id == session_id
    assert info.chunk_index == 1
    assert info.row_count == 120
    assert info.next_sample_index == 121
    assert info.chunk_start_ms == T0_MS
    assert info.target_hz == 50

    await run_ticks(logger, clock, 4)
    await logger.buffer.flush()
    batches = list(store.iter_batches(session_id, 1))
    assert batches[-1].start_sample_index == 121
    records = all_records(store, session_id, 1)
    assert [r["sample_index"] for r in records] == list(range(1, 125))


@pytest.mark.asyncio
async def test_counters_repaired_from_batches(store, clock, caplog) -> None:
    session_id = await _crashed_session(store, clock, 120)
    # crash between batch commit and counter write
    stale = replace(store.get_session(session_id), current_sample_index=0, last_sample_ms=None)
    store.put_session(stale)
    stale_chunk = replace(store.get_chunk(session_id, 1), row_count=0)
    store.put_chunk(stale_chunk)

    logger = make_logger(store, clock)
    with caplog.at_level(logging.WARNING, logger="motionlog.recovery"):
        info = await logger.restore_if_needed()

    assert info is not None
    assert info.next_sample_index == 121
    assert "Repairing counters" in caplog.text
    repaired = store.get_session(session_id)
    assert repaired.current_sample_index == 120
    assert repaired.last_sample_ms == T0_MS + 120 * 20
    assert store.get_chunk(session_id, 1).row_count == 120


@pytest.mark.asyncio
async def test_no_active_session_means_nothing_to_restore(store, clock) -> None:
    logger = make_logger(store, clock)
    session = await open_session(logger)
    await logger.sessions.mark_stopped()

    fresh = make_logger(store, clock)
    assert await fresh.restore_if_needed() is None
    assert fresh.public_state()["session_id"] is None
    assert session.active is False


def _put_active_session(store, session_id: str, chunk_index: int) -> Session:
    session = Session.create(
        session_id=session_id, start_ms=T0_MS, target_hz=5, device_info=DeviceInfo()
    )
    session.current_chunk_index = chunk_index
    store.put_session(session)
    return session


@pytest.mark.asyncio
async def test_missing_current_chunk_is_not_resumable(store, clock, caplog) -> None:
    _put_active_session(store, "s_missing", 3)
    logger = make_logger(store, clock)
    with caplog.at_level(logging.WARNING, logger="motionlog.recovery"):
        assert await logger.restore_if_needed() is None
    assert "missing" in caplog.text


@pytest.mark.asyncio
async def test_finalized_current_chunk_is_not_resumable(store, clock) -> None:
    _put_active_session(store, "s_final", 1)
    chunk = Chunk.open("s_final", 1, T0_MS)
    chunk.finalized = True
    store.put_chunk(chunk)

    logger = make_logger(store, clock)
    assert await logger.restore_if_needed() is None
    assert logger.sessions.session is None


@pytest.mark.asyncio
async def test_most_recent_session_by_last_sample_is_restored(store, clock) -> None:
    first = await _crashed_session(store, clock, 10)
    clock.advance(60_000)
    second = await _crashed_session(store, clock, 5)
    assert first != second

    logger = make_logger(store, clock)
    info = await logger.restore_if_needed()
    assert info is not None
    assert info.session_id == second
    assert info.next_sample_index == 6


@pytest.mark.asyncio
async def test_start_after_restore_resumes_same_session(store, clock) -> None:
    session_id = await _crashed_session(store, clock, 20)
    logger = make_logger(store, clock)
    await logger.restore_if_needed()

    state = await logger.start(100)
    try:
        assert state["running"] is True
        assert state["session_id"] == session_id
        assert state["target_hz"] == 100
        assert state["rows_in_chunk"] == 20
    finally:
        await logger.stop()

    stored = store.get_session(session_id)
    assert stored.target_hz == 100
    assert stored.active is False
    assert len(store.list_sessions()) == 1


@pytest.mark.asyncio
async def test_restore_after_rollover_counts_only_current_chunk(store, clock) -> None:
    logger = make_logger(store, clock, chunk_duration_s=1)
    session = await open_session(logger)
    # tick 50 reaches the 1000 ms boundary and rolls over before sampling
    await run_ticks(logger, clock, 49)
    await run_ticks(logger, clock, 30)
    await logger.buffer.flush()
    await run_ticks(logger, clock, 3)

    restored = make_logger(store, clock, chunk_duration_s=1)
    info = await restored.restore_if_needed()

    assert info is not None
    assert info.session_id == session.session_id
    assert info.chunk_index == 2
    assert info.row_count == 30
    assert info.next_sample_index == 31
    assert info.chunk_start_ms == T0_MS + 1000

    chunks = store.list_chunks(session.session_id)
    assert [(c.chunk_index, c.finalized) for c in chunks] == [(1, True), (2, False)]
    assert sum(c.row_count for c in chunks) == 79

    await run_ticks(restored, clock, 2)
    await restored.buffer.flush()
    records = all_records(store, session.session_id, 2)
    assert [r["sample_index"] for r in records] == list(range(1, 33))
