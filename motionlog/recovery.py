from __future__ import annotations

import asyncio
import logging

from .batch_buffer import BatchBuffer
from .chunk_lifecycle import ChunkLifecycle
from .domain_models import ResumeInfo, parse_iso_ms
from .session_lifecycle import SessionLifecycle
from .store import SampleStore

LOGGER = logging.getLogger(__name__)


class Recovery:
    """Restores the most recent active session after a restart.

    Committed batches are the source of truth: the cached session and chunk
    counters are recomputed from them and repaired when they lag (a crash
    between a batch commit and the counter write).
    """

    def __init__(
        self,
        store: SampleStore,
        sessions: SessionLifecycle,
        chunks: ChunkLifecycle,
        buffer: BatchBuffer,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._chunks = chunks
        self._buffer = buffer

    async def restore_if_needed(self) -> ResumeInfo | None:
        if self._sessions.session is not None:
            return None
        session = await asyncio.to_thread(self._store.most_recent_active_session)
        if session is None:
            return None
        chunk_index = session.current_chunk_index
        chunk = await asyncio.to_thread(self._store.get_chunk, session.session_id, chunk_index)
        if chunk is None:
            LOGGER.warning(
                "Session %s is active but chunk %d is missing; not resuming",
                session.session_id,
                chunk_index,
            )
            return None
        if chunk.finalized:
            LOGGER.warning(
                "Session %s is active but chunk %d is already finalized; not resuming",
                session.session_id,
                chunk_index,
            )
            return None

        summary = await asyncio.to_thread(
            self._store.chunk_commit_summary, session.session_id, chunk_index
        )
        committed = summary.record_count
        last_sample_ms = summary.last_sample_ms
        if last_sample_ms is None:
            last_sample_ms = session.last_sample_ms if committed else None
        repaired = (
            session.current_sample_index != committed
            or chunk.row_count != committed
            or (summary.last_sample_ms is not None and session.last_sample_ms != last_sample_ms)
        )
        if repaired:
            LOGGER.warning(
                "Repairing counters of session %s chunk %d: session=%d chunk=%d batches=%d",
                session.session_id,
                chunk_index,
                session.current_sample_index,
                chunk.row_count,
                committed,
            )
            session.current_sample_index = committed
            session.last_sample_ms = last_sample_ms
            chunk.row_count = committed
            await asyncio.to_thread(self._store.put_session, session)
            await asyncio.to_thread(self._store.put_chunk, chunk)

        chunk_start_ms = chunk.start_ms
        if chunk_start_ms is None:
            chunk_start_ms = parse_iso_ms(session.start_time_utc) or 0
        self._sessions.session = session
        self._chunks.open(chunk, chunk_start_ms)
        self._buffer.clear()
        info = ResumeInfo(
            session_id=session.session_id,
            target_hz=session.target_hz,
            chunk_index=chunk_index,
            row_count=committed,
            next_sample_index=committed + 1,
            chunk_start_ms=chunk_start_ms,
            last_sample_ms=session.last_sample_ms,
        )
        LOGGER.info(
            "Recovered session %s at chunk %d; next sample index %d",
            info.session_id,
            info.chunk_index,
            info.next_sample_index,
        )
        return info
