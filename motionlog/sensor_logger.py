from __future__ import annotations

import asyncio
import logging
from typing import Any

from .batch_buffer import BatchBuffer
from .chunk_lifecycle import ChunkLifecycle
from .clock import Clock, SystemClock
from .constants import (
    ACHIEVED_RATE_WINDOW_MS,
    CHUNK_DURATION_S,
    FLUSH_EVERY_SAMPLES,
    FLUSH_INTERVAL_S,
    MAX_BUFFERED_SAMPLES,
    MS_PER_SECOND,
    TARGET_HZ_OPTIONS,
)
from .domain_models import DeviceInfo, FlushResult, ResumeInfo
from .records import build_record
from .recovery import Recovery
from .sensors import SensorState
from .session_lifecycle import SessionLifecycle
from .store import SampleStore

LOGGER = logging.getLogger(__name__)


def validate_target_hz(target_hz: object) -> int:
    if isinstance(target_hz, bool) or target_hz not in TARGET_HZ_OPTIONS:
        raise ValueError(f"target_hz must be one of {TARGET_HZ_OPTIONS}, got {target_hz!r}")
    return int(target_hz)  # type: ignore[call-overload]


def sample_interval_s(target_hz: int) -> float:
    return max(1, round(MS_PER_SECOND / target_hz)) / MS_PER_SECOND


class SensorLogger:
    """Drives sampling of :class:`SensorState` into durable sessions.

    Two tasks run while logging: the sampler (one record per tick) and the
    flush timer. Both watch one stop event and only exit between ticks, so
    :meth:`stop` never interrupts a store write.
    """

    def __init__(
        self,
        store: SampleStore,
        sensors: SensorState,
        *,
        clock: Clock | None = None,
        flush_every_samples: int = FLUSH_EVERY_SAMPLES,
        flush_interval_s: float = FLUSH_INTERVAL_S,
        chunk_duration_s: float = CHUNK_DURATION_S,
        max_buffered_samples: int = MAX_BUFFERED_SAMPLES,
    ):
        self.store = store
        self.sensors = sensors
        self.clock: Clock = clock if clock is not None else SystemClock()
        self.flush_interval_s = max(0.01, float(flush_interval_s))
        self.sessions = SessionLifecycle(store, self.clock)
        self.chunks = ChunkLifecycle(
            store,
            self.sessions,
            flush=self._flush_buffer,
            chunk_duration_s=chunk_duration_s,
        )
        self.buffer = BatchBuffer(
            store,
            self.sessions,
            self.chunks,
            flush_every_samples=flush_every_samples,
            max_buffered_samples=max_buffered_samples,
        )
        self.recovery = Recovery(store, self.sessions, self.chunks, self.buffer)

        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._sampler_task: asyncio.Task[None] | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._transition_lock = asyncio.Lock()
        self._last_sample_ms: int | None = None
        self._rate_window_start_ms: int | None = None
        self._rate_window_samples = 0
        self._last_write_error: str | None = None
        self._write_error_source: str | None = None
        self.backpressure_skips = 0
        self._backpressure = False

    @property
    def running(self) -> bool:
        return self._running

    async def _flush_buffer(self) -> FlushResult:
        return await self.buffer.flush()

    def _set_last_write_error(self, source: str, message: str) -> None:
        self._last_write_error = message
        self._write_error_source = source

    def _clear_write_error(self, source: str | None = None) -> None:
        """Clear the reported error; with *source*, only if that path set it."""
        if source is None or self._write_error_source == source:
            self._last_write_error = None
            self._write_error_source = None

    # -- lifecycle -----------------------------------------------------------

    async def restore_if_needed(self) -> ResumeInfo | None:
        return await self.recovery.restore_if_needed()

    async def start(self, target_hz: int, device_info: DeviceInfo | None = None) -> dict[str, Any]:
        """Begin logging, resuming the held session if there is one."""
        hz = validate_target_hz(target_hz)
        async with self._transition_lock:
            if self._running:
                return self.public_state()
            session = self.sessions.session
            if session is None:
                session, chunk = await self.sessions.start_new(hz, device_info or DeviceInfo())
                self.chunks.open(chunk, chunk.start_ms or self.clock.now_ms())
                self.buffer.clear()
            else:
                await self.sessions.resume(session, hz)
            await self.sessions.enforce_single_active(session.session_id)

            now_ms = self.clock.now_ms()
            self._last_sample_ms = None
            self._rate_window_start_ms = now_ms
            self._rate_window_samples = 0
            self._clear_write_error()
            self._backpressure = False
            self._stop_event = asyncio.Event()
            self._running = True
            self._sampler_task = asyncio.create_task(
                self._sampler_loop(self._stop_event, sample_interval_s(hz)),
                name="motionlog-sampler",
            )
            self._flush_task = asyncio.create_task(
                self._flush_loop(self._stop_event),
                name="motionlog-flush",
            )
            return self.public_state()

    async def stop(self) -> dict[str, Any]:
        """Stop both tasks, flush what is buffered and mark the session inactive.

        A failed final flush leaves the session active, so calling ``stop``
        again retries the flush and the deactivation.
        """
        async with self._transition_lock:
            session = self.sessions.session
            if not self._running and (session is None or not session.active):
                return self.public_state()
            await self._halt_tasks()
            if self.sessions.session is not None:
                await self.buffer.flush()
                await self.sessions.mark_stopped()
            return self.public_state()

    async def shutdown(self) -> None:
        """Halt sampling and flush, leaving the session active for recovery.

        Records left behind by a failed :meth:`stop` are flushed here too.
        """
        async with self._transition_lock:
            if self._running:
                await self._halt_tasks()
            session = self.sessions.session
            if session is None:
                return
            if len(self.buffer) or self.buffer.counters_dirty:
                await self.buffer.flush()
            if session.active:
                LOGGER.info(
                    "Logging halted for shutdown; session %s stays resumable",
                    session.session_id,
                )

    async def _halt_tasks(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        tasks = [t for t in (self._sampler_task, self._flush_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks)
        self._sampler_task = None
        self._flush_task = None
        self._stop_event = None

    async def flush_now(self) -> FlushResult:
        result = await self.buffer.flush()
        self._clear_write_error("flush")
        return result

    async def reset(self) -> None:
        """Delete all stored data and forget the held session."""
        async with self._transition_lock:
            if self._running:
                raise RuntimeError("cannot reset while logging is running")
            await asyncio.to_thread(self.store.clear_all)
            dropped = self.buffer.clear()
            self.chunks.clear()
            self.sessions.forget()
            self._last_sample_ms = None
            self._rate_window_start_ms = None
            self._rate_window_samples = 0
            self._clear_write_error()
            self.backpressure_skips = 0
            self._backpressure = False
            LOGGER.info("All stored sessions cleared (%d buffered record(s) dropped)", dropped)

    # -- state ---------------------------------------------------------------

    def achieved_hz(self, now_ms: int | None = None) -> float | None:
        if self._rate_window_start_ms is None or self._rate_window_samples == 0:
            return None
        now = self.clock.now_ms() if now_ms is None else now_ms
        elapsed = now - self._rate_window_start_ms
        if elapsed <= 0:
            return None
        return round(self._rate_window_samples / (elapsed / MS_PER_SECOND), 1)

    def public_state(self) -> dict[str, Any]:
        session = self.sessions.session
        return {
            "running": self._running,
            "session_id": session.session_id if session is not None else None,
            "target_hz": session.target_hz if session is not None else None,
            "chunk_index": session.current_chunk_index if session is not None else None,
            "rows_in_chunk": session.current_sample_index if session is not None else None,
            "achieved_hz": self.achieved_hz() if session is not None else None,
            "wake_lock": self.sensors.wake_lock,
            "buffered": len(self.buffer),
            "backpressure": self._backpressure,
            "write_error": self._last_write_error,
        }

    # -- tasks ---------------------------------------------------------------

    async def _sampler_loop(self, stop: asyncio.Event, interval_s: float) -> None:
        while not stop.is_set():
            try:
                await self._sample_tick(stop)
                self._clear_write_error("sampler")
            except Exception as exc:
                self._set_last_write_error("sampler", f"sampler tick failed: {exc}")
                LOGGER.warning("Sampler tick failed; will retry next interval.", exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except TimeoutError:
                pass

    async def _flush_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.flush_interval_s)
            except TimeoutError:
                pass
            if stop.is_set():
                return
            if not len(self.buffer) and not self.buffer.counters_dirty:
                continue
            try:
                await self.buffer.flush()
                self._clear_write_error("flush")
            except Exception as exc:
                self._set_last_write_error("flush", f"periodic flush failed: {exc}")
                LOGGER.warning("Periodic flush failed; will retry next interval.", exc_info=True)

    async def _sample_tick(self, stop: asyncio.Event) -> None:
        now_ms = self.clock.now_ms()
        try:
            await self.chunks.rollover_if_due(now_ms)
            self._clear_write_error("rollover")
        except Exception as exc:
            self._set_last_write_error("rollover", f"chunk rollover failed: {exc}")
            LOGGER.warning("Chunk rollover failed; will retry next tick.", exc_info=True)
        if stop.is_set():
            return
        session = self.sessions.session
        if session is None:
            return

        if self.buffer.is_full:
            if not self._backpressure:
                LOGGER.warning(
                    "Sample buffer full (%d records); pausing sampling until a flush succeeds",
                    len(self.buffer),
                )
            self._backpressure = True
            self.backpressure_skips += 1
            return
        if self._backpressure:
            LOGGER.info("Sampling resumed (%d tick(s) skipped so far)", self.backpressure_skips)
            self._backpressure = False

        dt_ms = 0 if self._last_sample_ms is None else max(0, now_ms - self._last_sample_ms)
        self._last_sample_ms = now_ms

        if self._rate_window_start_ms is None:
            self._rate_window_start_ms = now_ms
        self._rate_window_samples += 1
        if now_ms - self._rate_window_start_ms > ACHIEVED_RATE_WINDOW_MS:
            self._rate_window_start_ms = now_ms
            self._rate_window_samples = 1

        record = build_record(
            session=session,
            chunk_index=session.current_chunk_index,
            sample_index=self.buffer.next_sample_index(),
            now_ms=now_ms,
            dt_ms=dt_ms,
            snapshot=self.sensors.snapshot(),
        )
        self.buffer.append(record)

        if self.buffer.threshold_reached:
            try:
                await self.buffer.flush()
                self._clear_write_error("flush")
            except Exception as exc:
                self._set_last_write_error("flush", f"threshold flush failed: {exc}")
                LOGGER.warning("Threshold flush failed; buffer kept for retry.", exc_info=True)
