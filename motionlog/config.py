from __future__ import annotations

import logging
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .constants import (
    CHUNK_DURATION_S,
    DEFAULT_TARGET_HZ,
    FLUSH_EVERY_SAMPLES,
    FLUSH_INTERVAL_S,
    MAX_BUFFERED_SAMPLES,
    TARGET_HZ_OPTIONS,
)

ROOT_DIR = Path(__file__).resolve().parents[1]
"""Directory holding the ``motionlog`` package and the default ``config.yaml``."""

LOGGER = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_CONFIG: dict[str, Any] = {
    "server": {"host": "0.0.0.0", "port": 8000},
    "logger": {
        "default_target_hz": DEFAULT_TARGET_HZ,
        "flush_every_samples": FLUSH_EVERY_SAMPLES,
        "flush_interval_s": FLUSH_INTERVAL_S,
        "chunk_duration_s": CHUNK_DURATION_S,
        "max_buffered_samples": MAX_BUFFERED_SAMPLES,
    },
    "storage": {"db_path": "data/motionlog.db"},
    "log_level": "INFO",
}


def default_config() -> dict[str, Any]:
    """Return a copy of the runtime defaults (the shape of config.example.yaml)."""
    return deepcopy(DEFAULT_CONFIG)


def _merged_over_defaults(defaults: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Nested sections merge key by key; anything else in *overrides* wins."""
    merged = deepcopy(defaults)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _merged_over_defaults(current, value)
        else:
            merged[key] = value
    return merged


def _db_path(raw: object, config_dir: Path) -> Path:
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("storage.db_path must be a non-empty path.")
    db_path = Path(raw).expanduser()
    return db_path if db_path.is_absolute() else config_dir / db_path


@dataclass(slots=True)
class ServerConfig:
    host: str
    port: int

    def __post_init__(self) -> None:
        if not isinstance(self.port, int) or not (1 <= self.port <= 65535):
            raise ValueError(f"server.port must be 1-65535, got {self.port!r}")


@dataclass(slots=True)
class LoggerConfig:
    default_target_hz: int
    flush_every_samples: int
    flush_interval_s: float
    chunk_duration_s: float
    max_buffered_samples: int

    def __post_init__(self) -> None:
        if self.default_target_hz not in TARGET_HZ_OPTIONS:
            raise ValueError(
                f"logger.default_target_hz must be one of {TARGET_HZ_OPTIONS}, "
                f"got {self.default_target_hz!r}"
            )
        if self.flush_every_samples < 1:
            LOGGER.warning(
                "logger.flush_every_samples=%s is below 1; using %d",
                self.flush_every_samples,
                FLUSH_EVERY_SAMPLES,
            )
            self.flush_every_samples = FLUSH_EVERY_SAMPLES
        if self.flush_interval_s <= 0:
            LOGGER.warning(
                "logger.flush_interval_s=%s is not positive; using %.1f",
                self.flush_interval_s,
                FLUSH_INTERVAL_S,
            )
            self.flush_interval_s = FLUSH_INTERVAL_S
        if self.chunk_duration_s < 1:
            LOGGER.warning(
                "logger.chunk_duration_s=%s is below 1 s; using %d",
                self.chunk_duration_s,
                int(CHUNK_DURATION_S),
            )
            self.chunk_duration_s = CHUNK_DURATION_S
        if self.max_buffered_samples < self.flush_every_samples:
            LOGGER.warning(
                "logger.max_buffered_samples=%s is below flush_every_samples; clamping to %d",
                self.max_buffered_samples,
                self.flush_every_samples,
            )
            self.max_buffered_samples = self.flush_every_samples


@dataclass(slots=True)
class StorageConfig:
    db_path: Path


@dataclass(slots=True)
class AppConfig:
    server: ServerConfig
    logger: LoggerConfig
    storage: StorageConfig
    log_level: str
    config_path: Path


def _load_overrides(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a YAML object at the top level.")
    return data


def load_config(config_path: Path | None = None) -> AppConfig:
    path = config_path or (ROOT_DIR / "config.yaml")
    path = path.resolve()
    merged = _merged_over_defaults(DEFAULT_CONFIG, _load_overrides(path))
    logger_cfg = merged["logger"]

    log_level = str(merged.get("log_level") or "INFO").upper()
    if log_level not in _LOG_LEVELS:
        LOGGER.warning("log_level=%r is not a logging level; using INFO", merged.get("log_level"))
        log_level = "INFO"

    app_config = AppConfig(
        server=ServerConfig(
            host=str(merged["server"]["host"]),
            port=int(merged["server"]["port"]),
        ),
        logger=LoggerConfig(
            default_target_hz=int(logger_cfg["default_target_hz"]),
            flush_every_samples=int(logger_cfg["flush_every_samples"]),
            flush_interval_s=float(logger_cfg["flush_interval_s"]),
            chunk_duration_s=float(logger_cfg["chunk_duration_s"]),
            max_buffered_samples=int(logger_cfg["max_buffered_samples"]),
        ),
        storage=StorageConfig(db_path=_db_path(merged["storage"].get("db_path"), path.parent)),
        log_level=log_level,
        config_path=path,
    )
    LOGGER.info(
        "Loaded config=%s db_path=%s default_target_hz=%d",
        app_config.config_path,
        app_config.storage.db_path,
        app_config.logger.default_target_hz,
    )
    return app_config
