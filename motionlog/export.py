"""NDJSON export of committed records.

Reads only what the store has committed; records still buffered in memory
are not part of an export until they are flushed.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any

from .domain_models import Chunk, utc_stamp
from .records import RECORD_KEYS
from .store import SampleStore

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def record_line(record: dict[str, Any]) -> str:
    ordered = {key: record.get(key) for key in RECORD_KEYS}
    return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False, allow_nan=False) + "\n"


def iter_chunk_records(
    store: SampleStore, session_id: str, chunk_index: int
) -> Iterator[dict[str, Any]]:
    """Records of one chunk in commit order (batch id, then position)."""
    for batch in store.iter_batches(session_id, chunk_index):
        yield from batch.records


def iter_chunk_ndjson(store: SampleStore, session_id: str, chunk_index: int) -> Iterator[str]:
    for record in iter_chunk_records(store, session_id, chunk_index):
        yield record_line(record)


def iter_session_chunks(store: SampleStore, session_id: str) -> list[Chunk]:
    return sorted(store.list_chunks(session_id), key=lambda chunk: chunk.chunk_index)


def chunk_file_name(session_id: str, chunk_index: int, created_ms: int) -> str:
    return f"session_{session_id}_chunk{int(chunk_index):02d}_{utc_stamp(created_ms)}.ndjson"
