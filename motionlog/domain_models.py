"""Domain model objects for the motionlog backend.

Typed dataclasses for the three persisted collections (sessions, chunks,
batches) plus the small value objects passed between lifecycle components.
Every persisted object round-trips through ``to_dict`` / ``from_dict`` so the
storage layer never has to know about the classes themselves.
"""

from __future__ import annotations

import base64
import math
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def iso_utc(epoch_ms: int) -> str:
    """Format *epoch_ms* like ``2026-02-18T12:34:56.789Z``."""
    dt = datetime.fromtimestamp(epoch_ms / 1000.0, tz=UTC)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso_ms(value: object) -> int | None:
    """Parse an ISO-8601 timestamp into epoch milliseconds, or ``None``."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Assume UTC for naive timestamps
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return int(round(dt.timestamp() * 1000))


def utc_stamp(epoch_ms: int) -> str:
    """Compact ``YYYYMMDD_HHMMSSZ`` stamp used in export file names."""
    dt = datetime.fromtimestamp(epoch_ms / 1000.0, tz=UTC)
    return dt.strftime("%Y%m%d_%H%M%SZ")


def make_session_id() -> str:
    """Return a short, URL-safe session token (``s_`` + 16 chars)."""
    raw = secrets.token_bytes(12)
    return "s_" + base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def finite_or_none(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    out = float(value)
    if math.isnan(out) or math.isinf(out):
        return None
    return out


def _as_int_or_none(value: object) -> int | None:
    out = finite_or_none(value)
    if out is None:
        return None
    return int(round(out))


def _as_str_or_none(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ---------------------------------------------------------------------------
# 1) DeviceInfo
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class DeviceInfo:
    """Opaque device descriptor supplied by the caller at session start."""

    device: str | None = None
    platform: str | None = None
    screen_w: int | None = None
    screen_h: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DeviceInfo:
        data = data or {}
        return cls(
            device=_as_str_or_none(data.get("device")),
            platform=_as_str_or_none(data.get("platform")),
            screen_w=_as_int_or_none(data.get("screen_w")),
            screen_h=_as_int_or_none(data.get("screen_h")),
        )


# ---------------------------------------------------------------------------
# 2) Session
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Session:
    session_id: str
    start_time_utc: str
    target_hz: int
    device: str | None = None
    platform: str | None = None
    screen_w: int | None = None
    screen_h: int | None = None
    active: bool = True
    current_chunk_index: int = 1
    current_sample_index: int = 0
    last_sample_ms: int | None = None

    @classmethod
    def create(
        cls,
        *,
        session_id: str,
        start_ms: int,
        target_hz: int,
        device_info: DeviceInfo,
    ) -> Session:
        return cls(
            session_id=session_id,
            start_time_utc=iso_utc(start_ms),
            target_hz=int(target_hz),
            device=device_info.device,
            platform=device_info.platform,
            screen_w=device_info.screen_w,
            screen_h=device_info.screen_h,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            session_id=str(data["session_id"]),
            start_time_utc=str(data["start_time_utc"]),
            target_hz=int(data["target_hz"]),
            device=_as_str_or_none(data.get("device")),
            platform=_as_str_or_none(data.get("platform")),
            screen_w=_as_int_or_none(data.get("screen_w")),
            screen_h=_as_int_or_none(data.get("screen_h")),
            active=bool(data.get("active")),
            current_chunk_index=max(1, int(data.get("current_chunk_index") or 1)),
            current_sample_index=max(0, int(data.get("current_sample_index") or 0)),
            last_sample_ms=_as_int_or_none(data.get("last_sample_ms")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "start_time_utc": self.start_time_utc,
            "target_hz": self.target_hz,
            "device": self.device,
            "platform": self.platform,
            "screen_w": self.screen_w,
            "screen_h": self.screen_h,
            "active": self.active,
            "current_chunk_index": self.current_chunk_index,
            "current_sample_index": self.current_sample_index,
            "last_sample_ms": self.last_sample_ms,
        }

    @property
    def device_info(self) -> DeviceInfo:
        return DeviceInfo(
            device=self.device,
            platform=self.platform,
            screen_w=self.screen_w,
            screen_h=self.screen_h,
        )

    def activity_ms(self) -> int | None:
        """Most recent observed activity: last sample, else session start."""
        if self.last_sample_ms is not None:
            return self.last_sample_ms
        return parse_iso_ms(self.start_time_utc)


# ---------------------------------------------------------------------------
# 3) Chunk
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Chunk:
    session_id: str
    chunk_index: int
    start_time_utc: str
    end_time_utc: str | None = None
    row_count: int = 0
    finalized: bool = False

    @classmethod
    def open(cls, session_id: str, chunk_index: int, start_ms: int) -> Chunk:
        return cls(
            session_id=session_id,
            chunk_index=int(chunk_index),
            start_time_utc=iso_utc(start_ms),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Chunk:
        return cls(
            session_id=str(data["session_id"]),
            chunk_index=int(data["chunk_index"]),
            start_time_utc=str(data["start_time_utc"]),
            end_time_utc=_as_str_or_none(data.get("end_time_utc")),
            row_count=max(0, int(data.get("row_count") or 0)),
            finalized=bool(data.get("finalized")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "chunk_index": self.chunk_index,
            "start_time_utc": self.start_time_utc,
            "end_time_utc": self.end_time_utc,
            "row_count": self.row_count,
            "finalized": self.finalized,
        }

    @property
    def start_ms(self) -> int | None:
        return parse_iso_ms(self.start_time_utc)


# ---------------------------------------------------------------------------
# 4) Batch
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Batch:
    """Immutable group of records committed in one transaction."""

    session_id: str
    chunk_index: int
    start_sample_index: int
    records: list[dict[str, Any]] = field(default_factory=list)
    id: int | None = None

    @property
    def record_count(self) -> int:
        return len(self.records)

    @property
    def last_sample_ms(self) -> int | None:
        if not self.records:
            return None
        return _as_int_or_none(self.records[-1].get("epoch_ms"))


# ---------------------------------------------------------------------------
# 5) Small result objects
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class FlushResult:
    committed: int


@dataclass(slots=True, frozen=True)
class ChunkCommitSummary:
    """Authoritative totals derived from the batches of one chunk."""

    record_count: int
    last_sample_ms: int | None
    batch_count: int


@dataclass(slots=True, frozen=True)
class ResumeInfo:
    """Cursor needed to continue logging an interrupted session."""

    session_id: str
    target_hz: int
    chunk_index: int
    row_count: int
    next_sample_index: int
    chunk_start_ms: int
    last_sample_ms: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "target_hz": self.target_hz,
            "chunk_index": self.chunk_index,
            "row_count": self.row_count,
            "next_sample_index": self.next_sample_index,
            "chunk_start_ms": self.chunk_start_ms,
            "last_sample_ms": self.last_sample_ms,
        }
