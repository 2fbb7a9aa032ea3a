from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace

from .constants import CHUNK_DURATION_S, MS_PER_SECOND
from .domain_models import Chunk, FlushResult, iso_utc
from .session_lifecycle import SessionLifecycle
from .store import SampleStore

LOGGER = logging.getLogger(__name__)


class ChunkLifecycle:
    """Tracks the open chunk of the held session and rolls it over.

    A rollover is due once the wall-clock time since the chunk start reaches
    ``chunk_duration_s``. Boundaries are best effort: after a long device
    sleep one check produces exactly one rollover, not one per missed period.
    """

    def __init__(
        self,
        store: SampleStore,
        sessions: SessionLifecycle,
        *,
        flush: Callable[[], Awaitable[FlushResult]],
        chunk_duration_s: float = CHUNK_DURATION_S,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._flush = flush
        self.chunk_duration_ms = max(1, int(round(float(chunk_duration_s) * MS_PER_SECOND)))
        self.chunk: Chunk | None = None
        self.chunk_start_ms: int | None = None
        self.rollover_count = 0

    def open(self, chunk: Chunk, start_ms: int) -> None:
        """Adopt *chunk* as the open chunk (new session or recovery)."""
        if chunk.finalized:
            raise ValueError(f"chunk {chunk.chunk_index} of {chunk.session_id} is finalized")
        self.chunk = chunk
        self.chunk_start_ms = int(start_ms)

    def clear(self) -> None:
        self.chunk = None
        self.chunk_start_ms = None

    def is_due(self, now_ms: int) -> bool:
        if self.chunk is None or self.chunk_start_ms is None:
            return False
        return now_ms - self.chunk_start_ms >= self.chunk_duration_ms

    async def persist(self) -> None:
        if self.chunk is not None:
            await asyncio.to_thread(self._store.put_chunk, self.chunk)

    async def rollover_if_due(self, now_ms: int) -> bool:
        """Finalize the open chunk and open the next one when due.

        The session cursor is written before the next chunk row, so the store
        never holds a second open chunk the cursor does not point at. A failed
        step reopens the old chunk and the next call repeats the sequence;
        every write is an idempotent upsert.
        """
        if not self.is_due(now_ms):
            return False
        session = self._sessions.require_session()
        old_chunk = self.chunk
        if old_chunk is None:
            raise RuntimeError("no chunk is open")

        # (a) buffered records belong to the old chunk; commit them first
        await self._flush()
        if not self._sessions.is_current(session) or self.chunk is not old_chunk:
            return False

        # (b) finalize
        finalized = replace(
            old_chunk,
            end_time_utc=iso_utc(now_ms),
            row_count=session.current_sample_index,
            finalized=True,
        )
        await asyncio.to_thread(self._store.put_chunk, finalized)

        # (c) move the session cursor, then (d) write the next chunk
        new_chunk = Chunk.open(session.session_id, old_chunk.chunk_index + 1, now_ms)
        previous = (
            session.current_chunk_index,
            session.current_sample_index,
            session.last_sample_ms,
        )
        session.current_chunk_index = new_chunk.chunk_index
        session.current_sample_index = 0
        session.last_sample_ms = None
        try:
            await self._sessions.persist()
            await asyncio.to_thread(self._store.put_chunk, new_chunk)
        except Exception:
            (
                session.current_chunk_index,
                session.current_sample_index,
                session.last_sample_ms,
            ) = previous
            await self._reopen(old_chunk)
            raise

        self.chunk = new_chunk
        self.chunk_start_ms = int(now_ms)
        self.rollover_count += 1
        LOGGER.info(
            "Chunk rollover for session %s: chunk %d finalized with %d rows, chunk %d opened",
            session.session_id,
            finalized.chunk_index,
            finalized.row_count,
            new_chunk.chunk_index,
        )
        return True

    async def _reopen(self, chunk: Chunk) -> None:
        # Undo a partial rollover; the caller re-raises the original error.
        try:
            await self._sessions.persist()
            await asyncio.to_thread(self._store.put_chunk, chunk)
        except Exception:
            LOGGER.warning(
                "Could not reopen chunk %d of %s after a failed rollover; "
                "the next flush rewrites it",
                chunk.chunk_index,
                chunk.session_id,
                exc_info=True,
            )
