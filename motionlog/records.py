"""Flat sample record schema.

Every record carries the full key set in a fixed order; values that are
unavailable are stored as ``None``, never as a missing key.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .domain_models import Session, finite_or_none, iso_utc

__all__ = [
    "TIME_KEYS",
    "SESSION_KEYS",
    "MOTION_KEYS",
    "LOCATION_KEYS",
    "DEVICE_KEYS",
    "FLAG_KEYS",
    "RECORD_KEYS",
    "empty_record",
    "build_record",
]

TIME_KEYS: tuple[str, ...] = ("utc", "epoch_ms", "dt_ms")
SESSION_KEYS: tuple[str, ...] = ("session_id", "chunk", "sample_index", "target_hz")
MOTION_KEYS: tuple[str, ...] = (
    "ax",
    "ay",
    "az",
    "ax_g",
    "ay_g",
    "az_g",
    "gx",
    "gy",
    "gz",
    "alpha",
    "beta",
    "gamma",
)
LOCATION_KEYS: tuple[str, ...] = (
    "lat",
    "lon",
    "gps_acc_m",
    "speed_mps",
    "heading_deg",
    "alt_m",
)
DEVICE_KEYS: tuple[str, ...] = ("device", "platform", "screen_w", "screen_h")
FLAG_KEYS: tuple[str, ...] = ("motion_ok", "gps_ok", "wake_lock")

RECORD_KEYS: tuple[str, ...] = (
    TIME_KEYS + SESSION_KEYS + MOTION_KEYS + LOCATION_KEYS + DEVICE_KEYS + FLAG_KEYS
)


def empty_record() -> dict[str, Any]:
    return dict.fromkeys(RECORD_KEYS)


def _flag(value: object) -> int:
    return 1 if value else 0


def build_record(
    *,
    session: Session,
    chunk_index: int,
    sample_index: int,
    now_ms: int,
    dt_ms: int,
    snapshot: Mapping[str, Any],
) -> dict[str, Any]:
    """Assemble one record from the session cursor and a sensor snapshot.

    *snapshot* may omit keys or carry non-finite numbers; both end up as
    ``None`` in the record.
    """
    out = empty_record()
    out["utc"] = iso_utc(now_ms)
    out["epoch_ms"] = int(now_ms)
    out["dt_ms"] = int(dt_ms)

    out["session_id"] = session.session_id
    out["chunk"] = int(chunk_index)
    out["sample_index"] = int(sample_index)
    out["target_hz"] = session.target_hz

    for key in MOTION_KEYS + LOCATION_KEYS:
        out[key] = finite_or_none(snapshot.get(key))

    # device info repeated per record so a single exported chunk stands alone
    out["device"] = session.device
    out["platform"] = session.platform
    out["screen_w"] = session.screen_w
    out["screen_h"] = session.screen_h

    for key in FLAG_KEYS:
        out[key] = _flag(snapshot.get(key))
    return out
