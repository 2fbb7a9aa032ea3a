from __future__ import annotations

import logging
import time
from threading import RLock
from typing import Any

from .domain_models import finite_or_none
from .records import LOCATION_KEYS, MOTION_KEYS

LOGGER = logging.getLogger(__name__)

_ACCEL_KEYS: tuple[str, ...] = ("ax", "ay", "az")
_ACCEL_G_KEYS: tuple[str, ...] = ("ax_g", "ay_g", "az_g")
_GYRO_KEYS: tuple[str, ...] = ("gx", "gy", "gz")
_ORIENTATION_KEYS: tuple[str, ...] = ("alpha", "beta", "gamma")


class SensorState:
    """Latest known motion/orientation/location values.

    Acquisition lives outside this package; producers push readings in via
    the ``update_*`` methods and the logger reads :meth:`snapshot` once per
    sample tick. Any field may be ``None`` at any time.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._values: dict[str, float | None] = dict.fromkeys(MOTION_KEYS + LOCATION_KEYS)
        self.motion_ok = False
        self.gps_ok = False
        self.wake_lock = False
        self.last_update_ts: float | None = None

    def _store(self, keys: tuple[str, ...], values: tuple[object, ...]) -> None:
        for key, value in zip(keys, values, strict=True):
            self._values[key] = finite_or_none(value)
        self.last_update_ts = time.monotonic()

    def update_motion(
        self,
        *,
        accel: tuple[object, object, object] | None = None,
        accel_including_gravity: tuple[object, object, object] | None = None,
        rotation_rate: tuple[object, object, object] | None = None,
    ) -> None:
        """Record one motion event.

        The primary ``ax/ay/az`` channels prefer gravity-included
        acceleration so a device at rest reads ~9.8 m/s² on one axis, and
        fall back to linear acceleration when that is all the host offers.
        """
        with self._lock:
            primary = accel_including_gravity if accel_including_gravity is not None else accel
            if primary is not None:
                self._store(_ACCEL_KEYS, tuple(primary))
                self._store(_ACCEL_G_KEYS, tuple(primary))
            if rotation_rate is not None:
                self._store(_GYRO_KEYS, tuple(rotation_rate))
            self.motion_ok = True

    def update_orientation(self, alpha: object, beta: object, gamma: object) -> None:
        with self._lock:
            self._store(_ORIENTATION_KEYS, (alpha, beta, gamma))

    def update_location(
        self,
        *,
        lat: object,
        lon: object,
        accuracy_m: object = None,
        speed_mps: object = None,
        heading_deg: object = None,
        alt_m: object = None,
    ) -> None:
        with self._lock:
            self._store(LOCATION_KEYS, (lat, lon, accuracy_m, speed_mps, heading_deg, alt_m))
            self.gps_ok = True

    def set_location_error(self, message: str) -> None:
        with self._lock:
            self.gps_ok = False
        LOGGER.info("Location updates unavailable: %s", message)

    def set_wake_lock(self, held: bool) -> None:
        with self._lock:
            self.wake_lock = bool(held)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            out: dict[str, Any] = dict(self._values)
            out["motion_ok"] = 1 if self.motion_ok else 0
            out["gps_ok"] = 1 if self.gps_ok else 0
            out["wake_lock"] = 1 if self.wake_lock else 0
            return out
