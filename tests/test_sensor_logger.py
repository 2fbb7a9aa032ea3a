from __future__ import annotations

import asyncio

import pytest

from motionlog.domain_models import DeviceInfo, Session
from motionlog.sensor_logger import SensorLogger, sample_interval_s, validate_target_hz
from motionlog.sensors import SensorState
from motionlog.store import StorageError

from conftest import T0_MS, all_records, async_wait_until, make_logger, open_session, run_ticks


def test_validate_target_hz_accepts_only_menu() -> None:
    assert [validate_target_hz(v) for v in (5, 50, 100)] == [5, 50, 100]
    for bad in (0, 10, 200, "50", None, True):
        with pytest.raises(ValueError):
            validate_target_hz(bad)


def test_sample_interval_rounds_to_whole_ms() -> None:
    assert sample_interval_s(5) == pytest.approx(0.2)
    assert sample_interval_s(50) == pytest.approx(0.02)
    assert sample_interval_s(100) == pytest.approx(0.01)


def test_public_state_without_session(store, clock) -> None:
    logger = make_logger(store, clock)
    state = logger.public_state()
    assert state["running"] is False
    for key in ("session_id", "target_hz", "chunk_index", "rows_in_chunk", "achieved_hz"):
        assert state[key] is None
    assert state["buffered"] == 0
    assert state["backpressure"] is False


@pytest.mark.asyncio
async def test_start_rejects_unknown_rate(store, clock) -> None:
    logger = make_logger(store, clock)
    with pytest.raises(ValueError):
        await logger.start(25)
    assert store.list_sessions() == []


@pytest.mark.asyncio
async def test_sampling_loop_commits_contiguous_records(tmp_path) -> None:
    from motionlog.sqlite_store import SqliteSampleStore

    store = SqliteSampleStore(tmp_path / "live.db")
    sensors = SensorState()
    sensors.update_motion(accel_including_gravity=(0.1, 9.8, 0.2), rotation_rate=(1, 2, 3))
    logger = SensorLogger(store, sensors, flush_every_samples=10, flush_interval_s=0.05)

    state = await logger.start(100, DeviceInfo(device="ua", platform="Linux"))
    session_id = state["session_id"]
    assert state["running"] is True
    try:
        assert await async_wait_until(
            lambda: store.chunk_commit_summary(session_id, 1).record_count >= 20
        )
    finally:
        final = await logger.stop()

    assert final["running"] is False
    records = all_records(store, session_id, 1)
    assert [r["sample_index"] for r in records] == list(range(1, len(records) + 1))
    assert records[0]["dt_ms"] == 0
    assert all(r["motion_ok"] == 1 and r["gps_ok"] == 0 for r in records)
    assert records[0]["ay"] == pytest.approx(9.8)
    stored = store.get_session(session_id)
    assert stored.active is False
    assert stored.current_sample_index == len(records)
    assert final["buffered"] == 0
    store.close()


@pytest.mark.asyncio
async def test_start_is_noop_while_running(store, clock) -> None:
    logger = make_logger(store, clock)
    first = await logger.start(50)
    try:
        second = await logger.start(5)
        assert second["session_id"] == first["session_id"]
        assert second["target_hz"] == 50
    finally:
        await logger.stop()
    assert (await logger.stop())["running"] is False


@pytest.mark.asyncio
async def test_start_leaves_exactly_one_active_session(store, clock) -> None:
    for i in range(25):
        stale = Session.create(
            session_id=f"s_stale{i}",
            start_ms=T0_MS - 1000 * i,
            target_hz=50,
            device_info=DeviceInfo(),
        )
        store.put_session(stale)

    logger = make_logger(store, clock)
    state = await logger.start(50)
    try:
        active = [s.session_id for s in store.list_sessions() if s.active]
        assert active == [state["session_id"]]
    finally:
        await logger.stop()


@pytest.mark.asyncio
async def test_stop_then_start_resumes_with_new_rate(store, clock) -> None:
    logger = make_logger(store, clock)
    first = await logger.start(50)
    await logger.stop()
    second = await logger.start(5)
    try:
        assert second["session_id"] == first["session_id"]
        assert second["target_hz"] == 5
        assert store.get_session(first["session_id"]).active is True
    finally:
        await logger.stop()


@pytest.mark.asyncio
async def test_failed_final_flush_can_be_retried_by_stop(store, clock) -> None:
    logger = make_logger(store, clock)
    session = await open_session(logger)
    await run_ticks(logger, clock, 3)
    store.fail_add_batch = True

    with pytest.raises(StorageError):
        await logger.stop()
    assert session.active is True

    store.fail_add_batch = False
    await logger.stop()
    assert store.get_session(session.session_id).active is False
    assert store.chunk_commit_summary(session.session_id, 1).record_count == 3


@pytest.mark.asyncio
async def test_shutdown_flushes_records_left_by_failed_stop(store, clock) -> None:
    logger = make_logger(store, clock)
    session = await open_session(logger)
    await run_ticks(logger, clock, 3)
    store.fail_add_batch = True

    with pytest.raises(StorageError):
        await logger.stop()
    assert logger.running is False
    assert len(logger.buffer) == 3

    store.fail_add_batch = False
    await logger.shutdown()
    assert len(logger.buffer) == 0
    assert store.chunk_commit_summary(session.session_id, 1).record_count == 3
    assert store.get_session(session.session_id).active is True


@pytest.mark.asyncio
async def test_backpressure_pauses_without_consuming_indexes(store, clock) -> None:
    logger = make_logger(store, clock, flush_every_samples=5, max_buffered_samples=10)
    session = await open_session(logger)
    store.fail_add_batch = True

    await run_ticks(logger, clock, 14)
    state = logger.public_state()
    assert state["buffered"] == 10
    assert state["backpressure"] is True
    assert logger.backpressure_skips == 4

    store.fail_add_batch = False
    assert (await logger.flush_now()).committed == 10
    await run_ticks(logger, clock, 2)
    await logger.flush_now()

    records = all_records(store, session.session_id, 1)
    assert [r["sample_index"] for r in records] == list(range(1, 13))
    assert logger.public_state()["backpressure"] is False


@pytest.mark.asyncio
async def test_achieved_rate_estimate(store, clock) -> None:
    logger = make_logger(store, clock)
    await open_session(logger)
    await run_ticks(logger, clock, 50, step_ms=20)
    # window opened on the first tick: 50 samples over 980 ms
    assert logger.public_state()["achieved_hz"] == pytest.approx(51.0)

    await run_ticks(logger, clock, 70, step_ms=20)
    # window restarted on tick 102; 19 samples over 360 ms since then
    assert logger.public_state()["achieved_hz"] == pytest.approx(52.8)


@pytest.mark.asyncio
async def test_dt_ms_tracks_gap_between_samples(store, clock) -> None:
    logger = make_logger(store, clock)
    session = await open_session(logger)
    await run_ticks(logger, clock, 1, step_ms=20)
    await run_ticks(logger, clock, 1, step_ms=35)
    await logger.flush_now()
    records = all_records(store, session.session_id, 1)
    assert [r["dt_ms"] for r in records] == [0, 35]


@pytest.mark.asyncio
async def test_periodic_flush_timer(store, clock) -> None:
    logger = make_logger(store, clock, flush_interval_s=0.05)
    state = await logger.start(5)
    session_id = state["session_id"]
    try:
        assert await async_wait_until(
            lambda: store.chunk_commit_summary(session_id, 1).record_count >= 1
        )
    finally:
        await logger.stop()


@pytest.mark.asyncio
async def test_reset_refuses_while_running_then_clears(store, clock) -> None:
    logger = make_logger(store, clock)
    await logger.start(50)
    with pytest.raises(RuntimeError):
        await logger.reset()
    await logger.stop()

    await logger.reset()
    assert store.list_sessions() == []
    assert logger.public_state()["session_id"] is None

    state = await logger.start(50)
    try:
        assert state["rows_in_chunk"] == 0
        assert state["chunk_index"] == 1
    finally:
        await logger.stop()


@pytest.mark.asyncio
async def test_shutdown_keeps_session_resumable(store, clock) -> None:
    logger = make_logger(store, clock)
    state = await logger.start(50)
    await asyncio.sleep(0.05)
    await logger.shutdown()

    assert logger.running is False
    stored = store.get_session(state["session_id"])
    assert stored.active is True

    restored = make_logger(store, clock)
    info = await restored.restore_if_needed()
    assert info is not None
    assert info.session_id == state["session_id"]


@pytest.mark.asyncio
async def test_flush_success_keeps_rollover_error_reported(store, clock, monkeypatch) -> None:
    logger = make_logger(store, clock)
    await open_session(logger)

    async def _failing_rollover(now_ms):
        raise StorageError("rollover write failed")

    monkeypatch.setattr(logger.chunks, "rollover_if_due", _failing_rollover)
    await run_ticks(logger, clock, 3)
    assert logger.public_state()["write_error"].startswith("chunk rollover failed")

    assert (await logger.flush_now()).committed == 3
    assert logger.public_state()["write_error"].startswith("chunk rollover failed")

    monkeypatch.undo()
    await run_ticks(logger, clock, 1)
    assert logger.public_state()["write_error"] is None


@pytest.mark.asyncio
async def test_flush_success_clears_its_own_error(store, clock) -> None:
    logger = make_logger(store, clock, flush_every_samples=2)
    session = await open_session(logger)
    store.fail_add_batch = True
    await run_ticks(logger, clock, 2)
    assert logger.public_state()["write_error"].startswith("threshold flush failed")

    store.fail_add_batch = False
    await logger.flush_now()
    assert logger.public_state()["write_error"] is None
    assert store.chunk_commit_summary(session.session_id, 1).record_count == 2
