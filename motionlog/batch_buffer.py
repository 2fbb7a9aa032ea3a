"""In-memory record buffer committed to the store as immutable batches.

``append`` is the sampler hot path: no I/O, amortised O(1). ``flush`` turns
everything buffered into one :class:`Batch`, commits it, then advances and
persists the session/chunk counters. Records leave the buffer only once
their batch commit succeeded, so a failed commit is retried with the same
records and nothing is lost.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .chunk_lifecycle import ChunkLifecycle
from .constants import FLUSH_EVERY_SAMPLES, MAX_BUFFERED_SAMPLES
from .domain_models import Batch, FlushResult
from .session_lifecycle import SessionLifecycle
from .store import SampleStore

LOGGER = logging.getLogger(__name__)


class BatchBuffer:
    def __init__(
        self,
        store: SampleStore,
        sessions: SessionLifecycle,
        chunks: ChunkLifecycle,
        *,
        flush_every_samples: int = FLUSH_EVERY_SAMPLES,
        max_buffered_samples: int = MAX_BUFFERED_SAMPLES,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._chunks = chunks
        self.flush_every_samples = max(1, int(flush_every_samples))
        self.max_buffered_samples = max(self.flush_every_samples, int(max_buffered_samples))
        self._records: list[dict[str, Any]] = []
        self._chunk_index: int | None = None
        self._lock = asyncio.Lock()
        self._counters_dirty = False
        self.committed_batches = 0
        self.committed_records = 0

    def __len__(self) -> int:
        return len(self._records)

    @property
    def chunk_index(self) -> int | None:
        """Chunk the buffered records were produced in (``None`` when empty)."""
        return self._chunk_index if self._records else None

    @property
    def is_full(self) -> bool:
        return len(self._records) >= self.max_buffered_samples

    @property
    def threshold_reached(self) -> bool:
        return len(self._records) >= self.flush_every_samples

    @property
    def counters_dirty(self) -> bool:
        return self._counters_dirty

    def next_sample_index(self) -> int:
        """Index the next appended record must carry within the open chunk."""
        session = self._sessions.require_session()
        return session.current_sample_index + len(self._records) + 1

    def append(self, record: dict[str, Any]) -> bool:
        """Buffer *record*; returns ``False`` when the buffer is full."""
        chunk_index = int(record["chunk"])
        if self._records and chunk_index != self._chunk_index:
            raise ValueError(
                f"record for chunk {chunk_index} appended while chunk "
                f"{self._chunk_index} is still buffered"
            )
        if self.is_full:
            return False
        self._records.append(record)
        self._chunk_index = chunk_index
        return True

    def clear(self) -> int:
        dropped = len(self._records)
        self._records = []
        self._chunk_index = None
        self._counters_dirty = False
        return dropped

    async def flush(self) -> FlushResult:
        """Commit buffered records as one batch.

        Calling it again with nothing new buffered writes nothing. Concurrent
        callers are serialised; the second one sees whatever the first left.
        """
        async with self._lock:
            session = self._sessions.session
            if session is None:
                return FlushResult(committed=0)
            if not self._records:
                if self._counters_dirty:
                    await self._persist_counters()
                return FlushResult(committed=0)

            pending = list(self._records)
            count = len(pending)
            chunk_index = self._chunk_index
            if chunk_index != session.current_chunk_index:
                raise RuntimeError(
                    f"buffered records belong to chunk {chunk_index} but session "
                    f"{session.session_id} is on chunk {session.current_chunk_index}"
                )
            batch = Batch(
                session_id=session.session_id,
                chunk_index=chunk_index,
                start_sample_index=session.current_sample_index + 1,
                records=pending,
            )
            await asyncio.to_thread(self._store.add_batch, batch)

            # Batch is durable from here on; never hand these records out again.
            del self._records[:count]
            if not self._records:
                self._chunk_index = None
            self.committed_batches += 1
            self.committed_records += count
            if not self._sessions.is_current(session):
                LOGGER.warning(
                    "Session %s was released during flush; batch %s committed, "
                    "counters not advanced",
                    session.session_id,
                    batch.id,
                )
                return FlushResult(committed=count)

            session.current_sample_index += count
            if batch.last_sample_ms is not None:
                session.last_sample_ms = batch.last_sample_ms
            chunk = self._chunks.chunk
            if chunk is not None and chunk.chunk_index == chunk_index:
                chunk.row_count = session.current_sample_index
            self._counters_dirty = True
            await self._persist_counters()
            LOGGER.debug(
                "Flushed %d record(s) for session %s chunk %d as batch %s (samples %d-%d)",
                count,
                session.session_id,
                chunk_index,
                batch.id,
                batch.start_sample_index,
                batch.start_sample_index + count - 1,
            )
            return FlushResult(committed=count)

    async def _persist_counters(self) -> None:
        # Session first, then chunk; each is its own transaction.
        await self._sessions.persist()
        await self._chunks.persist()
        self._counters_dirty = False
