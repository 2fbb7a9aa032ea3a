from __future__ import annotations

import asyncio
import logging

from .clock import Clock
from .domain_models import Chunk, DeviceInfo, Session, make_session_id
from .store import SampleStore

LOGGER = logging.getLogger(__name__)


class SessionLifecycle:
    """Owns the session currently held by this process.

    The held session is the single writer: its row is the only one with
    ``active`` set once :meth:`enforce_single_active` has run. Counters on
    the held :class:`Session` are advanced by the batch buffer and chunk
    lifecycle; this class persists them.
    """

    def __init__(self, store: SampleStore, clock: Clock) -> None:
        self._store = store
        self._clock = clock
        self.session: Session | None = None

    @property
    def session_id(self) -> str | None:
        return self.session.session_id if self.session is not None else None

    def require_session(self) -> Session:
        if self.session is None:
            raise RuntimeError("no session is held")
        return self.session

    def is_current(self, session: Session) -> bool:
        """True while *session* is still the held one (re-check after awaits)."""
        return self.session is session

    async def start_new(self, target_hz: int, device_info: DeviceInfo) -> tuple[Session, Chunk]:
        now_ms = self._clock.now_ms()
        session = Session.create(
            session_id=make_session_id(),
            start_ms=now_ms,
            target_hz=target_hz,
            device_info=device_info,
        )
        chunk = Chunk.open(session.session_id, 1, now_ms)
        await asyncio.to_thread(self._store.put_session, session)
        await asyncio.to_thread(self._store.put_chunk, chunk)
        self.session = session
        LOGGER.info(
            "Started session %s at %d Hz (device=%s platform=%s)",
            session.session_id,
            session.target_hz,
            session.device,
            session.platform,
        )
        return session, chunk

    async def resume(self, session: Session, target_hz: int) -> Session:
        """Continue *session*; only the target rate and active flag change."""
        previous_hz, previous_active = session.target_hz, session.active
        session.target_hz = int(target_hz)
        session.active = True
        try:
            await asyncio.to_thread(self._store.put_session, session)
        except Exception:
            session.target_hz, session.active = previous_hz, previous_active
            raise
        self.session = session
        LOGGER.info(
            "Resumed session %s at chunk %d, sample %d (target %d -> %d Hz)",
            session.session_id,
            session.current_chunk_index,
            session.current_sample_index,
            previous_hz,
            session.target_hz,
        )
        return session

    async def enforce_single_active(self, session_id: str) -> int:
        changed = await asyncio.to_thread(self._store.enforce_single_active, session_id)
        if self.session is not None and self.session.session_id == session_id:
            self.session.active = True
        return changed

    async def persist(self) -> None:
        session = self.require_session()
        await asyncio.to_thread(self._store.put_session, session)

    async def mark_stopped(self) -> None:
        session = self.require_session()
        session.active = False
        try:
            await asyncio.to_thread(self._store.put_session, session)
        except Exception:
            session.active = True
            raise
        LOGGER.info(
            "Stopped session %s (chunk %d, %d committed samples in chunk)",
            session.session_id,
            session.current_chunk_index,
            session.current_sample_index,
        )

    def forget(self) -> None:
        self.session = None
