"""
Human Handoff — hands a conversation to an agent.

The engine only supplies the arguments (contact, optional team, notes,
source). Queueing, assignment and agent notification belong to the
service behind this interface. While a contact has an active handoff the
orchestrator stays silent for them.
"""
from __future__ import annotations

import abc
from typing import Optional

import structlog

from models.schemas import Contact, Handoff, HandoffSource

logger = structlog.get_logger()


class HandoffService(abc.ABC):

    @abc.abstractmethod
    async def create_handoff(
        self,
        tenant_id: str,
        contact: Contact,
        team_id: Optional[str] = None,
        notes: str = "",
        source: HandoffSource = HandoffSource.FLOW,
    ) -> Handoff:
        ...

    @abc.abstractmethod
    async def has_active_handoff(self, tenant_id: str, contact_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def resume(self, tenant_id: str, contact_id: str) -> bool:
        """End the active handoff so automation picks the contact back up."""
        ...


class InMemoryHandoffService(HandoffService):
    """Single-process handoff tracking for development and tests."""

    def __init__(self):
        self._handoffs: list[Handoff] = []

    async def create_handoff(
        self,
        tenant_id: str,
        contact: Contact,
        team_id: Optional[str] = None,
        notes: str = "",
        source: HandoffSource = HandoffSource.FLOW,
    ) -> Handoff:
        existing = self._active(tenant_id, contact.id)
        if existing is not None:
            logger.info("handoff_already_active", handoff_id=existing.id, contact_id=contact.id)
            return existing

        handoff = Handoff(
            tenant_id=tenant_id,
            contact_id=contact.id,
            phone_number=contact.phone_number,
            team_id=team_id or None,
            notes=notes,
            source=source,
        )
        self._handoffs.append(handoff)
        logger.info("handoff_created",
                    handoff_id=handoff.id, tenant_id=tenant_id, contact_id=contact.id,
                    team_id=handoff.team_id, source=source.value)
        return handoff

    async def has_active_handoff(self, tenant_id: str, contact_id: str) -> bool:
        return self._active(tenant_id, contact_id) is not None

    async def resume(self, tenant_id: str, contact_id: str) -> bool:
        handoff = self._active(tenant_id, contact_id)
        if handoff is None:
            return False
        handoff.active = False
        logger.info("handoff_resumed", handoff_id=handoff.id, contact_id=contact_id)
        return True

    def list_handoffs(self, tenant_id: Optional[str] = None) -> list[Handoff]:
        return [h for h in self._handoffs if tenant_id is None or h.tenant_id == tenant_id]

    def _active(self, tenant_id: str, contact_id: str) -> Optional[Handoff]:
        for handoff in self._handoffs:
            if handoff.active and handoff.tenant_id == tenant_id and handoff.contact_id == contact_id:
                return handoff
        return None
