"""
Session Manager — one bounded-lifetime conversation per (tenant, contact, channel).

A session is reused while its last activity is within the timeout. Older
sessions are left as they are and a fresh one is created next to them;
the engine never deletes sessions.

Lookup-then-create is not atomic against the store. Callers that need at
most one session per contact under concurrent delivery hold the contact's
KeyedLocks entry around the whole message (the orchestrator does this
when `engine.serialize_per_contact` is on).
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Hashable, Optional

import structlog

from database.store_base import BaseSessionStore
from models.schemas import (
    Contact, MessageDirection, Session, SessionData, SessionMessage, SessionStatus, utcnow,
)

logger = structlog.get_logger()

DEFAULT_SESSION_TIMEOUT_MINUTES = 30


class SessionManager:

    def __init__(
        self,
        store: BaseSessionStore,
        clock: Callable[[], datetime] = utcnow,
        default_timeout_minutes: int = DEFAULT_SESSION_TIMEOUT_MINUTES,
    ):
        self.store = store
        self._clock = clock
        self.default_timeout_minutes = default_timeout_minutes

    def now(self) -> datetime:
        return self._clock()

    # ── Lifecycle ─────────────────────────────────────

    async def get_or_create(
        self,
        tenant_id: str,
        contact: Contact,
        channel: str,
        timeout_minutes: Optional[int] = None,
    ) -> tuple[Session, bool]:
        """Return (session, is_new). Touches last_activity_at on reuse."""
        timeout = timeout_minutes or self.default_timeout_minutes
        now = self.now()

        session = await self.store.find_active_session(
            tenant_id, contact.id, channel, active_since=now - timedelta(minutes=timeout),
        )
        if session is not None:
            session.last_activity_at = now
            await self.store.save_session(session)
            return session, False

        session = Session(
            tenant_id=tenant_id,
            contact_id=contact.id,
            channel=channel,
            phone_number=contact.phone_number,
            session_data=SessionData(),
            started_at=now,
            last_activity_at=now,
        )
        await self.store.create_session(session)
        logger.info("session_created",
                    session_id=session.id, tenant_id=tenant_id,
                    contact_id=contact.id, channel=channel)
        return session, True

    async def save(self, session: Session) -> Session:
        return await self.store.save_session(session)

    async def close(self, session: Session) -> Session:
        """Mark the session completed and drop any flow tracking."""
        session.status = SessionStatus.COMPLETED
        session.completed_at = self.now()
        session.current_flow_id = None
        session.current_step = ""
        session.step_retries = 0
        await self.store.save_session(session)
        logger.info("session_closed", session_id=session.id, contact_id=session.contact_id)
        return session

    async def exit_flow(self, session: Session) -> Session:
        """Leave the current flow without completing the session."""
        flow_id = session.current_flow_id
        session.current_flow_id = None
        session.current_step = ""
        session.step_retries = 0
        await self.store.save_session(session)
        logger.info("flow_exited", session_id=session.id, flow_id=flow_id)
        return session

    # ── Audit trail ───────────────────────────────────

    async def log_message(
        self,
        session: Session,
        direction: MessageDirection,
        text: str,
        step_name: str = "",
    ) -> SessionMessage:
        message = SessionMessage(
            session_id=session.id,
            direction=direction,
            message=text,
            step_name=step_name,
            created_at=self.now(),
        )
        return await self.store.add_session_message(message)

    async def history(self, session: Session, limit: int = 10) -> list[SessionMessage]:
        return await self.store.get_session_messages(session.id, limit=limit)


# ──────────────────────────────────────────────────────────────
#  Per-key serialization
# ──────────────────────────────────────────────────────────────

class KeyedLocks:
    """
    asyncio.Lock per key, created on first use and dropped once nobody
    holds or waits for it.

        async with locks.hold(("t1", "c1", "main")):
            ...
    """

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks
