from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from .api_models import (
    ChunksResponse,
    FlushResponse,
    HealthResponse,
    LoggerStateResponse,
    ResetResponse,
    SensorUpdateRequest,
    SessionsResponse,
    StartRequest,
    Vector3,
)
from .domain_models import DeviceInfo
from .export import NDJSON_MEDIA_TYPE, chunk_file_name, iter_chunk_ndjson, iter_session_chunks
from .store import StorageError

if TYPE_CHECKING:
    from .app import RuntimeState

LOGGER = logging.getLogger(__name__)


def _xyz(vec: Vector3 | None) -> tuple[object, object, object] | None:
    return (vec.x, vec.y, vec.z) if vec is not None else None


def _storage_unavailable(exc: StorageError) -> HTTPException:
    return HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")


def create_router(state: RuntimeState) -> APIRouter:
    router = APIRouter()
    logger = state.sensor_logger

    @router.get("/api/health", response_model=HealthResponse)
    async def health() -> dict:
        status = logger.public_state()
        return {
            "status": "degraded" if status["write_error"] else "ok",
            "running": status["running"],
            "write_error": status["write_error"],
        }

    # -- logger control ------------------------------------------------------

    @router.get("/api/logger/state", response_model=LoggerStateResponse)
    async def get_logger_state() -> dict:
        return logger.public_state()

    @router.post("/api/logger/start", response_model=LoggerStateResponse)
    async def start_logger(req: StartRequest) -> dict:
        device_info = DeviceInfo(
            device=req.device,
            platform=req.platform,
            screen_w=req.screen_w,
            screen_h=req.screen_h,
        )
        try:
            target_hz = req.target_hz or state.config.logger.default_target_hz
            return await logger.start(target_hz, device_info)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StorageError as exc:
            raise _storage_unavailable(exc) from exc

    @router.post("/api/logger/stop", response_model=LoggerStateResponse)
    async def stop_logger() -> dict:
        try:
            return await logger.stop()
        except StorageError as exc:
            raise _storage_unavailable(exc) from exc

    @router.post("/api/logger/flush", response_model=FlushResponse)
    async def flush_logger() -> dict:
        try:
            result = await logger.flush_now()
        except StorageError as exc:
            raise _storage_unavailable(exc) from exc
        return {"committed": result.committed}

    # -- sensor input --------------------------------------------------------

    @router.post("/api/sensors", response_model=LoggerStateResponse)
    async def update_sensors(req: SensorUpdateRequest) -> dict:
        sensors = state.sensors
        if req.motion is not None:
            motion = req.motion
            rotation = motion.rotation_rate
            sensors.update_motion(
                accel=_xyz(motion.acceleration),
                accel_including_gravity=_xyz(motion.acceleration_including_gravity),
                rotation_rate=(
                    (rotation.alpha, rotation.beta, rotation.gamma)
                    if rotation is not None
                    else None
                ),
            )
        if req.orientation is not None:
            o = req.orientation
            sensors.update_orientation(o.alpha, o.beta, o.gamma)
        if req.location is not None:
            loc = req.location
            sensors.update_location(
                lat=loc.lat,
                lon=loc.lon,
                accuracy_m=loc.accuracy_m,
                speed_mps=loc.speed_mps,
                heading_deg=loc.heading_deg,
                alt_m=loc.alt_m,
            )
        elif req.location_error:
            sensors.set_location_error(req.location_error)
        if req.wake_lock is not None:
            sensors.set_wake_lock(req.wake_lock)
        return logger.public_state()

    # -- stored data ---------------------------------------------------------

    @router.get("/api/sessions", response_model=SessionsResponse)
    async def list_sessions() -> dict:
        try:
            sessions = await asyncio.to_thread(state.store.list_sessions)
        except StorageError as exc:
            raise _storage_unavailable(exc) from exc
        sessions.sort(key=lambda s: s.start_time_utc, reverse=True)
        return {"sessions": [s.to_dict() for s in sessions]}

    @router.get("/api/sessions/{session_id}/chunks", response_model=ChunksResponse)
    async def list_session_chunks(session_id: str) -> dict:
        try:
            session = await asyncio.to_thread(state.store.get_session, session_id)
            if session is None:
                raise HTTPException(status_code=404, detail="Session not found")
            chunks = await asyncio.to_thread(iter_session_chunks, state.store, session_id)
        except StorageError as exc:
            raise _storage_unavailable(exc) from exc
        return {"session_id": session_id, "chunks": [c.to_dict() for c in chunks]}

    @router.get("/api/sessions/{session_id}/chunks/{chunk_index}/ndjson")
    async def export_chunk(session_id: str, chunk_index: int) -> StreamingResponse:
        try:
            chunk = await asyncio.to_thread(state.store.get_chunk, session_id, chunk_index)
        except StorageError as exc:
            raise _storage_unavailable(exc) from exc
        if chunk is None:
            raise HTTPException(status_code=404, detail="Chunk not found")
        name = chunk_file_name(session_id, chunk_index, logger.clock.now_ms())
        # Starlette drains the sync generator in its threadpool, one batch page at a time.
        return StreamingResponse(
            iter_chunk_ndjson(state.store, session_id, chunk_index),
            media_type=NDJSON_MEDIA_TYPE,
            headers={"Content-Disposition": f'attachment; filename="{name}"'},
        )

    @router.delete("/api/data", response_model=ResetResponse)
    async def delete_all_data() -> dict:
        try:
            await logger.reset()
        except StorageError as exc:
            raise _storage_unavailable(exc) from exc
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"status": "cleared"}

    return router
