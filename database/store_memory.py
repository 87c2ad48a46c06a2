"""
InMemorySessionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Records kept as JSON-ready dicts, so every read returns a fresh Session
  - Single event loop only
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

import structlog

from database.store_base import BaseSessionStore
from models.schemas import Session, SessionMessage, SessionStatus

logger = structlog.get_logger()


class InMemorySessionStore(BaseSessionStore):

    def __init__(self):
        self._sessions: dict[str, dict[str, Any]] = {}                 # id → session dict
        self._messages: dict[str, list[dict[str, Any]]] = defaultdict(list)  # session_id → [msg dicts]
        logger.info("inmemory_store_initialized")

    # ── Sessions ──────────────────────────────────────────

    async def find_active_session(
        self, tenant_id: str, contact_id: str, channel: str, active_since: datetime,
    ) -> Optional[Session]:
        candidates = []
        for data in self._sessions.values():
            if (
                data["tenant_id"] != tenant_id
                or data["contact_id"] != contact_id
                or data["channel"] != channel
                or data["status"] != SessionStatus.ACTIVE.value
            ):
                continue
            session = Session.model_validate(data)
            if session.last_activity_at > active_since:
                candidates.append(session)

        if not candidates:
            return None
        candidates.sort(key=lambda s: s.last_activity_at, reverse=True)
        return candidates[0]

    async def create_session(self, session: Session) -> Session:
        self._sessions[session.id] = session.model_dump(mode="json")
        logger.debug("session_created", session_id=session.id, contact_id=session.contact_id)
        return session

    async def save_session(self, session: Session) -> Session:
        session.version += 1
        self._sessions[session.id] = session.model_dump(mode="json")
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        data = self._sessions.get(session_id)
        return Session.model_validate(data) if data else None

    async def list_sessions(
        self,
        tenant_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        result = []
        for data in self._sessions.values():
            if tenant_id is not None and data["tenant_id"] != tenant_id:
                continue
            if contact_id is not None and data["contact_id"] != contact_id:
                continue
            if status is not None and data["status"] != status.value:
                continue
            result.append(Session.model_validate(data))
        result.sort(key=lambda s: s.started_at)
        return result

    # ── Session Messages ──────────────────────────────────

    async def add_session_message(self, message: SessionMessage) -> SessionMessage:
        self._messages[message.session_id].append(message.model_dump(mode="json"))
        return message

    async def get_session_messages(self, session_id: str, limit: int = 50) -> list[SessionMessage]:
        records = self._messages.get(session_id, [])
        if limit > 0:
            records = records[-limit:]
        return [SessionMessage.model_validate(r) for r in records]
