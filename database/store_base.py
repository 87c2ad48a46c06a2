"""
Abstract Session Store — Interface for all storage backends.

Implementations:
  - InMemorySessionStore (dict-based, single-process, no persistence)
  - FileSessionStore     (JSON files on disk, single-process, durable)

Stores hand out copies: a Session returned by one call is never mutated
by another caller until it is explicitly saved.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import Session, SessionMessage, SessionStatus


class BaseSessionStore(ABC):
    """Interface that all session store backends must implement."""

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def find_active_session(
        self, tenant_id: str, contact_id: str, channel: str, active_since: datetime,
    ) -> Optional[Session]:
        """Most recent active session for the key with last_activity_at > active_since."""
        ...

    @abstractmethod
    async def create_session(self, session: Session) -> Session:
        ...

    @abstractmethod
    async def save_session(self, session: Session) -> Session:
        """Persist the session, bumping its version."""
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def list_sessions(
        self,
        tenant_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        ...

    # ── Session Messages ──────────────────────────────────────

    @abstractmethod
    async def add_session_message(self, message: SessionMessage) -> SessionMessage:
        ...

    @abstractmethod
    async def get_session_messages(self, session_id: str, limit: int = 50) -> list[SessionMessage]:
        """The last `limit` messages of a session, oldest first."""
        ...
