"""SQLite-backed persistence for motionlog.

Stores sessions, chunks and append-only sample batches in a single file.
Each batch keeps its records as one compact JSON array next to the
``record_count`` and ``last_sample_ms`` columns, so counters can be
recomputed with a single aggregate query.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any

from .domain_models import Batch, Chunk, ChunkCommitSummary, Session, finite_or_none
from .store import SampleStore, StorageError

LOGGER = logging.getLogger(__name__)

# -- Schema -------------------------------------------------------------------

_SCHEMA_VERSION = 1

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    session_id            TEXT PRIMARY KEY,
    start_time_utc        TEXT NOT NULL,
    target_hz             INTEGER NOT NULL,
    device                TEXT,
    platform              TEXT,
    screen_w              INTEGER,
    screen_h              INTEGER,
    active                INTEGER NOT NULL DEFAULT 0,
    current_chunk_index   INTEGER NOT NULL DEFAULT 1,
    current_sample_index  INTEGER NOT NULL DEFAULT 0,
    last_sample_ms        INTEGER,
    updated_at            TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_active ON sessions(active);

CREATE TABLE IF NOT EXISTS chunks (
    session_id      TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    chunk_index     INTEGER NOT NULL,
    start_time_utc  TEXT NOT NULL,
    end_time_utc    TEXT,
    row_count       INTEGER NOT NULL DEFAULT 0,
    finalized       INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (session_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_chunks_session ON chunks(session_id);

CREATE TABLE IF NOT EXISTS batches (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id          TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    chunk_index         INTEGER NOT NULL,
    start_sample_index  INTEGER NOT NULL,
    record_count        INTEGER NOT NULL,
    last_sample_ms      INTEGER,
    records_json        TEXT NOT NULL,
    created_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_batches_session ON batches(session_id);
CREATE INDEX IF NOT EXISTS idx_batches_session_chunk ON batches(session_id, chunk_index, id);
"""

_SESSION_COLS: tuple[str, ...] = (
    "session_id",
    "start_time_utc",
    "target_hz",
    "device",
    "platform",
    "screen_w",
    "screen_h",
    "active",
    "current_chunk_index",
    "current_sample_index",
    "last_sample_ms",
)
_SESSION_SELECT_SQL = f"SELECT {', '.join(_SESSION_COLS)} FROM sessions"

_CHUNK_COLS: tuple[str, ...] = (
    "session_id",
    "chunk_index",
    "start_time_utc",
    "end_time_utc",
    "row_count",
    "finalized",
)
_CHUNK_SELECT_SQL = f"SELECT {', '.join(_CHUNK_COLS)} FROM chunks"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _json_safe(value: Any) -> Any:
    # SQLite holds the records as JSON text, which has no NaN or Infinity.
    if isinstance(value, float):
        return finite_or_none(value)
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return list(map(_json_safe, value))
    return value


def _records_json(records: list[dict[str, Any]]) -> str:
    return json.dumps(
        _json_safe(records), ensure_ascii=False, allow_nan=False, separators=(",", ":")
    )


class SqliteSampleStore(SampleStore):
    """Thin wrapper around a SQLite database holding the three collections."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = RLock()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._ensure_schema()

    # -- lifecycle ------------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _cursor(self, *, commit: bool = True):
        """Serialise access to the shared connection; one call is one transaction."""
        with self._lock:
            cur = self._conn.cursor()
            try:
                yield cur
                if commit:
                    self._conn.commit()
            except Exception as exc:
                self._conn.rollback()
                if isinstance(exc, sqlite3.Error):
                    raise StorageError(f"sqlite transaction failed: {exc}") from exc
                raise
            finally:
                cur.close()

    def _ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.executescript(_SCHEMA_SQL)
        with self._cursor() as cur:
            cur.execute("SELECT value FROM schema_meta WHERE key = ?", ("version",))
            row = cur.fetchone()
            if row is None:
                cur.execute(
                    "INSERT INTO schema_meta (key, value) VALUES (?, ?)",
                    ("version", str(_SCHEMA_VERSION)),
                )
                return
            version = int(str(row[0]))
            if version != _SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported sample DB schema version {version}; "
                    f"expected {_SCHEMA_VERSION}. Delete the database file to recreate."
                )

    # -- row conversion -------------------------------------------------------

    @staticmethod
    def _session_from_row(row: tuple[Any, ...]) -> Session:
        return Session.from_dict(dict(zip(_SESSION_COLS, row, strict=True)))

    @staticmethod
    def _chunk_from_row(row: tuple[Any, ...]) -> Chunk:
        return Chunk.from_dict(dict(zip(_CHUNK_COLS, row, strict=True)))

    def _batch_from_row(self, row: tuple[Any, ...]) -> Batch:
        batch_id, session_id, chunk_index, start_sample_index, records_json = row
        try:
            records = json.loads(records_json)
        except json.JSONDecodeError as exc:
            raise StorageError(f"batch {batch_id} holds invalid JSON") from exc
        if not isinstance(records, list):
            raise StorageError(f"batch {batch_id} does not hold a record list")
        return Batch(
            id=int(batch_id),
            session_id=str(session_id),
            chunk_index=int(chunk_index),
            start_sample_index=int(start_sample_index),
            records=records,
        )

    # -- sessions -------------------------------------------------------------

    def put_session(self, session: Session) -> None:
        data = session.to_dict()
        values = [data[col] for col in _SESSION_COLS]
        values[_SESSION_COLS.index("active")] = 1 if session.active else 0
        updates = ", ".join(f"{col} = excluded.{col}" for col in _SESSION_COLS[1:])
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO sessions ({', '.join(_SESSION_COLS)}, updated_at) "
                f"VALUES ({', '.join('?' * len(_SESSION_COLS))}, ?) "
                f"ON CONFLICT(session_id) DO UPDATE SET {updates}, "
                "updated_at = excluded.updated_at",
                (*values, _now_iso()),
            )

    def get_session(self, session_id: str) -> Session | None:
        with self._cursor(commit=False) as cur:
            cur.execute(f"{_SESSION_SELECT_SQL} WHERE session_id = ?", (session_id,))
            row = cur.fetchone()
        return self._session_from_row(row) if row is not None else None

    def list_sessions(self) -> list[Session]:
        with self._cursor(commit=False) as cur:
            cur.execute(f"{_SESSION_SELECT_SQL} ORDER BY start_time_utc DESC")
            rows = cur.fetchall()
        return [self._session_from_row(row) for row in rows]

    def enforce_single_active(self, session_id: str) -> int:
        now = _now_iso()
        with self._cursor() as cur:
            cur.execute(
                "UPDATE sessions SET active = 0, updated_at = ? "
                "WHERE active != 0 AND session_id != ?",
                (now, session_id),
            )
            changed = cur.rowcount
            cur.execute(
                "UPDATE sessions SET active = 1, updated_at = ? "
                "WHERE active = 0 AND session_id = ?",
                (now, session_id),
            )
            changed += cur.rowcount
        if changed:
            LOGGER.info("Single-active sweep for %s changed %d session row(s)", session_id, changed)
        return changed

    # -- chunks ---------------------------------------------------------------

    def put_chunk(self, chunk: Chunk) -> None:
        data = chunk.to_dict()
        values = [data[col] for col in _CHUNK_COLS]
        values[_CHUNK_COLS.index("finalized")] = 1 if chunk.finalized else 0
        updates = ", ".join(f"{col} = excluded.{col}" for col in _CHUNK_COLS[2:])
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO chunks ({', '.join(_CHUNK_COLS)}) "
                f"VALUES ({', '.join('?' * len(_CHUNK_COLS))}) "
                f"ON CONFLICT(session_id, chunk_index) DO UPDATE SET {updates}",
                values,
            )

    def get_chunk(self, session_id: str, chunk_index: int) -> Chunk | None:
        with self._cursor(commit=False) as cur:
            cur.execute(
                f"{_CHUNK_SELECT_SQL} WHERE session_id = ? AND chunk_index = ?",
                (session_id, int(chunk_index)),
            )
            row = cur.fetchone()
        return self._chunk_from_row(row) if row is not None else None

    def list_chunks(self, session_id: str) -> list[Chunk]:
        with self._cursor(commit=False) as cur:
            cur.execute(
                f"{_CHUNK_SELECT_SQL} WHERE session_id = ? ORDER BY chunk_index",
                (session_id,),
            )
            rows = cur.fetchall()
        return [self._chunk_from_row(row) for row in rows]

    # -- batches --------------------------------------------------------------

    def add_batch(self, batch: Batch) -> int:
        if not batch.records:
            raise ValueError("refusing to store an empty batch")
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO batches (session_id, chunk_index, start_sample_index, "
                "record_count, last_sample_ms, records_json, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    batch.session_id,
                    int(batch.chunk_index),
                    int(batch.start_sample_index),
                    batch.record_count,
                    batch.last_sample_ms,
                    _records_json(batch.records),
                    _now_iso(),
                ),
            )
            batch_id = int(cur.lastrowid)
        batch.id = batch_id
        return batch_id

    def iter_batches(
        self, session_id: str, chunk_index: int, page_size: int = 16
    ) -> Iterator[Batch]:
        size = max(1, int(page_size))
        last_id = 0
        while True:
            with self._cursor(commit=False) as cur:
                cur.execute(
                    "SELECT id, session_id, chunk_index, start_sample_index, records_json "
                    "FROM batches WHERE session_id = ? AND chunk_index = ? AND id > ? "
                    "ORDER BY id LIMIT ?",
                    (session_id, int(chunk_index), last_id, size),
                )
                rows = cur.fetchall()
            if not rows:
                return
            last_id = int(rows[-1][0])
            for row in rows:
                yield self._batch_from_row(row)

    def chunk_commit_summary(self, session_id: str, chunk_index: int) -> ChunkCommitSummary:
        with self._cursor(commit=False) as cur:
            cur.execute(
                "SELECT COALESCE(SUM(record_count), 0), COUNT(*) FROM batches "
                "WHERE session_id = ? AND chunk_index = ?",
                (session_id, int(chunk_index)),
            )
            total, batch_count = cur.fetchone()
            cur.execute(
                "SELECT last_sample_ms FROM batches "
                "WHERE session_id = ? AND chunk_index = ? ORDER BY id DESC LIMIT 1",
                (session_id, int(chunk_index)),
            )
            row = cur.fetchone()
        return ChunkCommitSummary(
            record_count=int(total),
            last_sample_ms=int(row[0]) if row is not None and row[0] is not None else None,
            batch_count=int(batch_count),
        )

    # -- maintenance ----------------------------------------------------------

    def clear_all(self) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM batches")
            cur.execute("DELETE FROM chunks")
            cur.execute("DELETE FROM sessions")
        LOGGER.info("Cleared all sessions, chunks and batches from %s", self.db_path)
