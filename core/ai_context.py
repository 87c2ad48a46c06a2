"""
AI Context — background knowledge appended to the AI system prompt.

Each tenant keeps a list of context entries. An entry is either:
  static   fixed text (opening hours, return policy, ...)
  api      text fetched per message from an external API; the url, body
           and header values are templates over session data plus
           `phone_number` and `user_message`

Entries for the session's channel and tenant-wide entries (channel "")
are combined, highest priority first, under a "## Context Information"
heading with one "### <name>" section per entry.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from backend.connector import ApiFetcher
from models.schemas import Session, new_id
from templates.models import ApiConfig

logger = structlog.get_logger()

CONTEXT_HEADING = "## Context Information"


class ContextType(str, Enum):
    STATIC = "static"
    API = "api"


class AIContext(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    channel: str = ""                             # "" = tenant-wide
    name: str
    context_type: ContextType = ContextType.STATIC
    static_content: str = ""                      # api entries: shown before the fetched data
    api_config: ApiConfig = Field(default_factory=ApiConfig)
    priority: int = 0
    is_enabled: bool = True


class AIContextBuilder:
    """Holds AI context entries per tenant and renders the block for one AI call."""

    def __init__(self, fetcher: Optional[ApiFetcher] = None):
        self.fetcher = fetcher
        self._contexts: dict[str, AIContext] = {}

    def load_contexts(self, contexts_config: list[dict[str, Any]]):
        """Load context entries from YAML config."""
        for raw in contexts_config:
            self.register(AIContext(**raw))
        logger.info("ai_contexts_loaded", count=len(self._contexts))

    def register(self, context: AIContext):
        self._contexts[context.id] = context

    def remove(self, context_id: str):
        self._contexts.pop(context_id, None)

    def list_contexts(self) -> list[AIContext]:
        return list(self._contexts.values())

    def contexts_for(self, tenant_id: str, channel: str) -> list[AIContext]:
        """Enabled entries of the channel plus tenant-wide ones, priority DESC."""
        selected = [
            c for c in self._contexts.values()
            if c.tenant_id == tenant_id and c.is_enabled
            and (not c.channel or not channel or c.channel == channel)
        ]
        return sorted(selected, key=lambda c: -c.priority)

    async def build(self, session: Session, user_message: str) -> str:
        """The context block for the system prompt, or "" when nothing applies."""
        parts: list[str] = []
        for context in self.contexts_for(session.tenant_id, session.channel):
            content = context.static_content
            if context.context_type == ContextType.API:
                fetched = await self._fetch(context, session, user_message)
                if fetched:
                    content = f"{content}\n\nData:\n{fetched}" if content else fetched
            if content:
                parts.append(f"### {context.name}\n{content}")

        if not parts:
            return ""
        return CONTEXT_HEADING + "\n\n" + "\n\n".join(parts)

    async def _fetch(self, context: AIContext, session: Session, user_message: str) -> str:
        if self.fetcher is None:
            logger.warning("ai_context_fetcher_missing", context_name=context.name)
            return ""

        data = {
            **session.session_data.to_dict(),
            "phone_number": session.phone_number,
            "user_message": user_message,
        }
        try:
            response = await self.fetcher.fetch(context.api_config, data)
        except Exception as e:
            logger.error("ai_context_fetch_failed",
                         context_name=context.name, tenant_id=session.tenant_id, error=str(e))
            return ""
        return response.message
