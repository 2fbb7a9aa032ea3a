"""Runtime wiring: store, sensor state and logger behind the HTTP API.

Keep this module focused on orchestration; logging semantics live in
``sensor_logger.py`` and its lifecycle helpers, schemas in ``api_models.py``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from . import __version__
from .api import create_router
from .clock import Clock
from .config import AppConfig, load_config
from .domain_models import ResumeInfo
from .sensor_logger import SensorLogger
from .sensors import SensorState
from .sqlite_store import SqliteSampleStore
from .store import SampleStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RuntimeState:
    config: AppConfig
    store: SampleStore
    sensors: SensorState
    sensor_logger: SensorLogger
    resume_info: ResumeInfo | None = None


def build_runtime(
    config: AppConfig,
    *,
    store: SampleStore | None = None,
    clock: Clock | None = None,
) -> RuntimeState:
    store = store if store is not None else SqliteSampleStore(config.storage.db_path)
    sensors = SensorState()
    sensor_logger = SensorLogger(
        store,
        sensors,
        clock=clock,
        flush_every_samples=config.logger.flush_every_samples,
        flush_interval_s=config.logger.flush_interval_s,
        chunk_duration_s=config.logger.chunk_duration_s,
        max_buffered_samples=config.logger.max_buffered_samples,
    )
    return RuntimeState(
        config=config,
        store=store,
        sensors=sensors,
        sensor_logger=sensor_logger,
    )


def create_app(
    config_path: Path | None = None,
    *,
    config: AppConfig | None = None,
    store: SampleStore | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    config = config if config is not None else load_config(config_path)
    runtime = build_runtime(config, store=store, clock=clock)

    async def start_runtime() -> None:
        try:
            runtime.resume_info = await runtime.sensor_logger.restore_if_needed()
        except Exception:
            LOGGER.error("Session recovery failed on startup", exc_info=True)
            runtime.resume_info = None
        if runtime.resume_info is not None:
            LOGGER.warning(
                "Interrupted session %s restored at chunk %d (%d committed rows); "
                "start logging to continue it",
                runtime.resume_info.session_id,
                runtime.resume_info.chunk_index,
                runtime.resume_info.row_count,
            )

    async def stop_runtime() -> None:
        try:
            await runtime.sensor_logger.shutdown()
        except Exception:
            LOGGER.warning("Final flush on shutdown failed", exc_info=True)
        try:
            await asyncio.to_thread(runtime.store.close)
        except Exception:
            LOGGER.warning("Error closing sample store", exc_info=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await start_runtime()
        try:
            yield
        finally:
            await stop_runtime()

    app = FastAPI(title="motionlog", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(create_router(runtime))
    return app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the motionlog sensor logging server")
    parser.add_argument("--config", type=Path, default=None, help="Path to config YAML")
    parser.add_argument("--host", default=None, help="Override server.host")
    parser.add_argument("--port", type=int, default=None, help="Override server.port")
    args = parser.parse_args()

    config = load_config(args.config)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    runtime_app = create_app(config=config)
    host = args.host or config.server.host
    port = args.port or config.server.port
    try:
        uvicorn.run(runtime_app, host=host, port=port, log_level=config.log_level.lower())
    except OSError:
        LOGGER.error("Failed to bind to %s:%d", host, port, exc_info=True)
        raise


if __name__ == "__main__":
    main()
