"""Pydantic request/response models for the motionlog HTTP API.

Separated from ``api.py`` to keep routing logic distinct from data contracts.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from .constants import TARGET_HZ_OPTIONS

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class StartRequest(BaseModel):
    target_hz: int | None = None
    device: str | None = Field(default=None, max_length=512)
    platform: str | None = Field(default=None, max_length=128)
    screen_w: int | None = Field(default=None, ge=0)
    screen_h: int | None = Field(default=None, ge=0)

    @field_validator("target_hz")
    @classmethod
    def _target_hz_in_menu(cls, value: int | None) -> int | None:
        if value is not None and value not in TARGET_HZ_OPTIONS:
            raise ValueError(f"target_hz must be one of {list(TARGET_HZ_OPTIONS)}")
        return value


class Vector3(BaseModel):
    x: float | None = None
    y: float | None = None
    z: float | None = None


class RotationRate(BaseModel):
    alpha: float | None = None
    beta: float | None = None
    gamma: float | None = None


class MotionUpdate(BaseModel):
    acceleration: Vector3 | None = None
    acceleration_including_gravity: Vector3 | None = None
    rotation_rate: RotationRate | None = None


class OrientationUpdate(BaseModel):
    alpha: float | None = None
    beta: float | None = None
    gamma: float | None = None


class LocationUpdate(BaseModel):
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)
    speed_mps: float | None = None
    heading_deg: float | None = None
    alt_m: float | None = None


class SensorUpdateRequest(BaseModel):
    motion: MotionUpdate | None = None
    orientation: OrientationUpdate | None = None
    location: LocationUpdate | None = None
    location_error: str | None = Field(default=None, max_length=512)
    wake_lock: bool | None = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    running: bool
    write_error: str | None = None


class LoggerStateResponse(BaseModel):
    running: bool
    session_id: str | None = None
    target_hz: int | None = None
    chunk_index: int | None = None
    rows_in_chunk: int | None = None
    achieved_hz: float | None = None
    wake_lock: bool
    buffered: int
    backpressure: bool
    write_error: str | None = None


class FlushResponse(BaseModel):
    committed: int


class SessionsResponse(BaseModel):
    sessions: list[dict[str, Any]]


class ChunksResponse(BaseModel):
    session_id: str
    chunks: list[dict[str, Any]]


class ResetResponse(BaseModel):
    status: str
