"""
Orchestrator — the single entry point for inbound chatbot messages.

For every text-bearing message, in strict order:
  (a) active human handoff          → stay silent
  (b) chatbot disabled              → hand off to the general queue
  (c) outside business hours        → out-of-hours message (unless automation allowed)
  (d) load / create the session, audit the incoming message
  (e) transfer keyword              → transfer message + handoff
  (f) session mid-flow              → FlowExecutor.process_response
  (g) flow trigger keyword          → FlowExecutor.start_flow
  (h) new session with a greeting   → greeting (nothing else fires)
  (i) text keyword rule             → keyword response
  (j) AI configured                 → AI answer
  (k) existing session              → fallback message

Each call returns a small result dict (`action` + context) so callers and
tests can see which branch fired. Messages for the same
(tenant, contact, channel) are handled one at a time when
`engine.serialize_per_contact` is on.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from config.settings import EngineConfig
from context.session_manager import KeyedLocks, SessionManager
from core.ai_context import AIContextBuilder
from core.engine import AIResponder
from core.handoff import HandoffService
from core.outbound import Outbox
from models.schemas import (
    ChatbotSettings, Contact, HandoffSource, InboundMessage, MessageDirection, Session,
)
from rules.engine import KeywordRouter
from templates.executor import FlowExecutor
from templates.registry import FlowRegistry
from utils.business_hours import is_within_business_hours

logger = structlog.get_logger()


class Orchestrator:
    """
    Sequences keyword routing, flow continuation, flow triggering, greeting,
    AI and static fallback for one inbound message.
    """

    def __init__(
        self,
        sessions: SessionManager,
        executor: FlowExecutor,
        flows: FlowRegistry,
        keywords: KeywordRouter,
        outbox: Outbox,
        handoffs: HandoffService,
        ai: Optional[AIResponder] = None,
        config: Optional[EngineConfig] = None,
        ai_context: Optional[AIContextBuilder] = None,
    ):
        self.sessions = sessions
        self.executor = executor
        self.flows = flows
        self.keywords = keywords
        self.outbox = outbox
        self.handoffs = handoffs
        self.ai = ai
        self.ai_context = ai_context
        self.config = config or EngineConfig()
        self.locks = KeyedLocks()
        self._chatbots: dict[tuple[str, str], ChatbotSettings] = {}

    # ── Chatbot settings ──────────────────────────────

    def set_chatbot_settings(self, settings: ChatbotSettings):
        self._chatbots[(settings.tenant_id, settings.channel)] = settings

    def load_chatbot_settings(self, config: list[dict[str, Any]]):
        for raw in config:
            self.set_chatbot_settings(ChatbotSettings(**raw))
        logger.info("chatbot_settings_loaded", count=len(config))

    def chatbot_settings_for(self, tenant_id: str, channel: str) -> ChatbotSettings:
        """Channel-specific settings first, then tenant-wide, else defaults."""
        settings = self._chatbots.get((tenant_id, channel)) or self._chatbots.get((tenant_id, ""))
        if settings is None:
            return ChatbotSettings(
                tenant_id=tenant_id,
                channel=channel,
                session_timeout_minutes=self.config.default_session_timeout_minutes,
            )
        return settings

    # ══════════════════════════════════════════════════════════
    #  INBOUND — Message received from a contact
    # ══════════════════════════════════════════════════════════

    async def handle_inbound_message(self, message: InboundMessage) -> dict[str, Any]:
        logger.info("inbound_message",
                    tenant_id=message.tenant_id,
                    channel=message.channel,
                    contact_id=message.contact.id,
                    message_type=message.message_type,
                    button_id=message.button_id,
                    text=message.text[:100])

        if not self.config.serialize_per_contact:
            return await self._dispatch(message)

        key = (message.tenant_id, message.contact.id, message.channel)
        async with self.locks.hold(key):
            return await self._dispatch(message)

    async def _dispatch(self, message: InboundMessage) -> dict[str, Any]:
        tenant_id, channel, contact = message.tenant_id, message.channel, message.contact

        # (a) Human agent already owns the conversation
        if await self.handoffs.has_active_handoff(tenant_id, contact.id):
            logger.info("handoff_active_skipping", tenant_id=tenant_id, contact_id=contact.id)
            return {"action": "skipped_handoff", "contact_id": contact.id}

        settings = self.chatbot_settings_for(tenant_id, channel)

        # (b) Chatbot switched off → general queue
        if not settings.is_enabled:
            await self._create_handoff(tenant_id, contact, "", "", HandoffSource.CHATBOT_DISABLED)
            return {"action": "chatbot_disabled", "contact_id": contact.id}

        # (c) Business hours
        if self._outside_hours(settings) and not settings.allow_automated_outside_hours:
            logger.info("outside_business_hours", tenant_id=tenant_id, contact_id=contact.id)
            await self.outbox.send_text(contact, settings.out_of_hours_message)
            return {"action": "out_of_hours", "contact_id": contact.id}

        text = message.text
        if not text:
            logger.debug("message_without_text_ignored", message_type=message.message_type)
            return {"action": "ignored", "contact_id": contact.id}

        # (d) Session
        session, is_new = await self.sessions.get_or_create(
            tenant_id, contact, channel, settings.session_timeout_minutes,
        )
        await self.sessions.log_message(session, MessageDirection.INCOMING, text, "keyword_check")

        # (e) Transfer keyword wins over everything else
        keyword_response, matched = self.keywords.match(tenant_id, channel, text)
        if matched and keyword_response.is_transfer:
            if self._outside_hours(settings):
                logger.info("transfer_outside_business_hours", tenant_id=tenant_id, contact_id=contact.id)
                await self.outbox.reply(session, contact, settings.out_of_hours_message, "out_of_hours")
                return self._result("out_of_hours", session, is_new)

            await self.outbox.reply(session, contact, keyword_response.body, "transfer")
            await self._create_handoff(
                tenant_id, contact, "", "Transfer keyword matched", HandoffSource.KEYWORD,
            )
            return self._result("transfer", session, is_new, rule_id=keyword_response.rule_id)

        # (f) Mid-flow
        if session.in_flow:
            state = await self.executor.process_response(session, contact, text, message.button_id)
            return self._result("flow_response", session, is_new, flow_state=state.value)

        # (g) Flow trigger
        flow = self.flows.match_trigger(tenant_id, text)
        if flow is not None:
            state = await self.executor.start_flow(session, contact, flow)
            return self._result("flow_started", session, is_new, flow_id=flow.id, flow_state=state.value)

        # (h) Greeting suppresses everything else for a new session
        if is_new and settings.default_response:
            await self.outbox.reply(
                session, contact, settings.default_response, "greeting", buttons=settings.greeting_buttons,
            )
            return self._result("greeting", session, is_new)

        # (i) Text keyword rule
        if matched:
            await self.outbox.reply(
                session, contact, keyword_response.body, "keyword_response", buttons=keyword_response.buttons,
            )
            return self._result("keyword_response", session, is_new, rule_id=keyword_response.rule_id)

        # (j) AI
        if self.ai is not None and settings.ai.is_configured:
            answer = await self._ai_answer(settings, session, text)
            if answer:
                await self.outbox.reply(session, contact, answer, "ai_response")
                return self._result("ai_response", session, is_new)

        # (k) Static fallback, existing sessions only
        if not is_new and settings.fallback_message:
            await self.outbox.reply(
                session, contact, settings.fallback_message, "fallback_response",
                buttons=settings.fallback_buttons,
            )
            return self._result("fallback", session, is_new)

        return self._result("no_response", session, is_new)

    # ── Helpers ───────────────────────────────────────

    def _outside_hours(self, settings: ChatbotSettings) -> bool:
        if not settings.business_hours_enabled or not settings.business_hours:
            return False
        return not is_within_business_hours(settings.business_hours, self.sessions.now())

    async def _ai_answer(self, settings: ChatbotSettings, session: Session, text: str) -> str:
        ai = settings.ai
        try:
            history = await self.sessions.history(session, limit=ai.history_limit + 1) if ai.include_history else []
            context = await self.ai_context.build(session, text) if self.ai_context else ""
            return await self.ai.generate_response(ai, history, text, context=context)
        except Exception as e:
            logger.error("ai_response_failed",
                         provider=ai.provider, model=ai.model,
                         tenant_id=session.tenant_id, contact_id=session.contact_id, error=str(e))
            return ""

    async def _create_handoff(
        self,
        tenant_id: str,
        contact: Contact,
        team_id: str,
        notes: str,
        source: HandoffSource,
    ):
        try:
            await self.handoffs.create_handoff(tenant_id, contact, team_id or None, notes, source)
        except Exception as e:
            logger.error("handoff_create_failed",
                         tenant_id=tenant_id, contact_id=contact.id, source=source.value, error=str(e))

    @staticmethod
    def _result(action: str, session: Session, is_new: bool, **extra: Any) -> dict[str, Any]:
        return {
            "action": action,
            "session_id": session.id,
            "contact_id": session.contact_id,
            "new_session": is_new,
            **extra,
        }
