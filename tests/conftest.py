"""Shared test helpers for the motionlog test suite."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from motionlog.domain_models import DeviceInfo, Session
from motionlog.sensor_logger import SensorLogger
from motionlog.sensors import SensorState
from motionlog.sqlite_store import SqliteSampleStore
from motionlog.store import StorageError

# 2026-01-01T00:00:00Z
T0_MS = 1_767_225_600_000

TEST_DEVICE = DeviceInfo(device="Mozilla/5.0 (test)", platform="Linux", screen_w=390, screen_h=844)


def wait_until(predicate, timeout_s: float = 2.0, step_s: float = 0.02) -> bool:
    """Poll *predicate* until it returns truthy, or *timeout_s* expires."""
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step_s)
    return False


async def async_wait_until(predicate, timeout_s: float = 2.0, step_s: float = 0.02) -> bool:
    """Async version of :func:`wait_until` that yields to the event loop between polls."""
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(step_s)
    return False


class FakeClock:
    def __init__(self, start_ms: int = T0_MS) -> None:
        self.value = int(start_ms)

    def now_ms(self) -> int:
        return self.value

    def advance(self, ms: int) -> int:
        self.value += int(ms)
        return self.value


class FailingStore(SqliteSampleStore):
    """SQLite store whose writes can be made to fail on demand."""

    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.fail_add_batch = False
        self.fail_put_session = False
        self.fail_put_chunk = False
        self.add_batch_calls = 0

    def add_batch(self, batch):
        self.add_batch_calls += 1
        if self.fail_add_batch:
            raise StorageError("disk full")
        return super().add_batch(batch)

    def put_session(self, session):
        if self.fail_put_session:
            raise StorageError("session write failed")
        return super().put_session(session)

    def put_chunk(self, chunk):
        if self.fail_put_chunk:
            raise StorageError("chunk write failed")
        return super().put_chunk(chunk)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path):
    db = FailingStore(tmp_path / "motionlog.db")
    yield db
    db.close()


def make_logger(store, clock, **kwargs) -> SensorLogger:
    kwargs.setdefault("flush_interval_s", 60.0)
    return SensorLogger(store, SensorState(), clock=clock, **kwargs)


async def open_session(logger: SensorLogger, target_hz: int = 50) -> Session:
    """Start a session without launching the sampler tasks."""
    session, chunk = await logger.sessions.start_new(target_hz, TEST_DEVICE)
    logger.chunks.open(chunk, chunk.start_ms)
    return session


async def run_ticks(logger: SensorLogger, clock: FakeClock, count: int, step_ms: int = 20) -> None:
    """Drive *count* sampler ticks by hand, advancing the fake clock each time."""
    stop = asyncio.Event()
    for _ in range(count):
        clock.advance(step_ms)
        await logger._sample_tick(stop)


def all_records(store, session_id: str, chunk_index: int) -> list[dict]:
    return [r for batch in store.iter_batches(session_id, chunk_index) for r in batch.records]
