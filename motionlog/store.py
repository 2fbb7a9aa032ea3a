"""Persistent store contract for sessions, chunks and batches.

A :class:`SampleStore` exposes three collections:

* **sessions**, keyed by ``session_id``;
* **chunks**, keyed by ``(session_id, chunk_index)`` with a lookup by session;
* **batches**, append-only with a generated increasing id and lookups by
  session and by ``(session_id, chunk_index)``.

Every public method is one transaction: it either fully commits or raises
:class:`StorageError` with nothing applied. No method spans two logical
writes; callers sequence them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator

from .domain_models import Batch, Chunk, ChunkCommitSummary, Session

LOGGER = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """A store transaction could not commit (I/O error, disk full, ...)."""


class SampleStore(ABC):
    # -- sessions -------------------------------------------------------------

    @abstractmethod
    def put_session(self, session: Session) -> None: ...

    @abstractmethod
    def get_session(self, session_id: str) -> Session | None: ...

    @abstractmethod
    def list_sessions(self) -> list[Session]: ...

    @abstractmethod
    def enforce_single_active(self, session_id: str) -> int:
        """Set ``active`` only on *session_id*; return how many rows changed."""

    def most_recent_active_session(self) -> Session | None:
        """Return the active session with the newest observed activity.

        Activity is ``last_sample_ms`` when a sample was ever committed,
        otherwise the session start time.
        """
        best: Session | None = None
        best_ts: int | None = None
        for session in self.list_sessions():
            if not session.active:
                continue
            ts = session.activity_ms()
            if ts is None:
                continue
            if best_ts is None or ts > best_ts:
                best, best_ts = session, ts
        return best

    # -- chunks ---------------------------------------------------------------

    @abstractmethod
    def put_chunk(self, chunk: Chunk) -> None: ...

    @abstractmethod
    def get_chunk(self, session_id: str, chunk_index: int) -> Chunk | None: ...

    @abstractmethod
    def list_chunks(self, session_id: str) -> list[Chunk]:
        """Chunks of *session_id* in ascending index order."""

    # -- batches --------------------------------------------------------------

    @abstractmethod
    def add_batch(self, batch: Batch) -> int:
        """Append *batch* and return its generated id."""

    @abstractmethod
    def iter_batches(self, session_id: str, chunk_index: int) -> Iterator[Batch]:
        """Yield the batches of one chunk in commit order."""

    @abstractmethod
    def chunk_commit_summary(self, session_id: str, chunk_index: int) -> ChunkCommitSummary:
        """Totals over committed batches, without decoding their records."""

    # -- maintenance ----------------------------------------------------------

    @abstractmethod
    def clear_all(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...
