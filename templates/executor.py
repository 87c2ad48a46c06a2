"""
Flow Executor — runs one flow as a state machine over a Session.

States (see FlowState):
  not_in_flow → at_step(name) → completed | exited

Architecture:
  Orchestrator → FlowExecutor.start_flow(session, contact, flow)
    → reset session data, send initial message
    → advance into the first step (skip check, send, auto-advance)
  Orchestrator → FlowExecutor.process_response(session, contact, text, button_id)
    → cancel keywords → validation (regex / buttons) → store answer
    → resolve next step → advance

Advancing is an explicit loop over steps with a visited set: a step seen
twice in one call, a missing step, or running past the last step
completes the flow. Nothing here raises to the caller; collaborator
failures fall back to configured messages and are logged.
"""
from __future__ import annotations

import asyncio
import re
from typing import Any, Awaitable, Optional

import structlog

from backend.connector import ApiFetcher
from backend.webhooks import WebhookDispatcher
from config.settings import EngineConfig
from context.session_manager import SessionManager
from core.handoff import HandoffService
from core.outbound import Outbox
from models.schemas import (
    Button, ButtonType, Contact, FlowState, HandoffSource, Session, SessionStatus, normalize_buttons,
)
from templates.engine import render
from templates.models import ApiConfig, Flow, FlowStep, InputType, MessageType, TransferConfig
from templates.registry import FlowRegistry
from utils.conditions import evaluate_expression

logger = structlog.get_logger()

MAX_CHOICES = 10


class FlowExecutor:
    """
    Executes flows against sessions.

    Collaborators are injected so every side effect (send, fetch, handoff,
    webhook) can be faked in tests.
    """

    def __init__(
        self,
        sessions: SessionManager,
        outbox: Outbox,
        flows: FlowRegistry,
        api_fetcher: ApiFetcher,
        handoffs: HandoffService,
        webhooks: Optional[WebhookDispatcher] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.sessions = sessions
        self.outbox = outbox
        self.flows = flows
        self.api_fetcher = api_fetcher
        self.handoffs = handoffs
        self.webhooks = webhooks
        self.config = config or EngineConfig()
        self._background: set[asyncio.Task] = set()

    # ══════════════════════════════════════════════════════════
    #  ENTRY
    # ══════════════════════════════════════════════════════════

    async def start_flow(self, session: Session, contact: Contact, flow: Flow) -> FlowState:
        session.session_data.clear()
        session.current_flow_id = flow.id
        session.current_step = ""
        session.step_retries = 0
        await self.sessions.save(session)

        logger.info("flow_started",
                    flow_id=flow.id, flow_name=flow.name,
                    tenant_id=session.tenant_id, contact_id=session.contact_id,
                    session_id=session.id)

        if flow.initial_message:
            await self.outbox.reply(session, contact, self._render(flow.initial_message, session), "flow_start")

        first = flow.first_step()
        if first is None:
            return await self.complete_flow(session, contact, flow)
        return await self.send_step_with_skip_check(session, contact, flow, first)

    # ══════════════════════════════════════════════════════════
    #  ADVANCE (skip check + auto-advance)
    # ══════════════════════════════════════════════════════════

    async def send_step_with_skip_check(
        self,
        session: Session,
        contact: Contact,
        flow: Flow,
        step: FlowStep,
    ) -> FlowState:
        """
        Land on `step`: skip it while its skip_condition holds, send it
        otherwise, and keep going without waiting when its input_type is none.
        """
        visited: set[str] = set()

        for _ in range(self.config.max_auto_advance_steps):
            if step.name in visited:
                logger.warning("step_cycle_detected", flow_id=flow.id, step=step.name,
                               session_id=session.id)
                return await self.complete_flow(session, contact, flow)
            visited.add(step.name)

            session.current_step = step.name
            session.step_retries = 0
            await self.sessions.save(session)

            if step.skip_condition and evaluate_expression(step.skip_condition, session.session_data):
                logger.info("step_skipped", flow_id=flow.id, step=step.name, condition=step.skip_condition)
            else:
                state = await self.send_step_message(session, contact, flow, step)
                if state != FlowState.AT_STEP:
                    return state
                if step.input_type != InputType.NONE:
                    return FlowState.AT_STEP

            next_name = self._default_next(flow, step)
            if not next_name:
                return await self.complete_flow(session, contact, flow)

            next_step = flow.get_step(next_name)
            if next_step is None:
                logger.warning("next_step_not_found", flow_id=flow.id, step=step.name, next_step=next_name)
                return await self.complete_flow(session, contact, flow)
            step = next_step

        logger.warning("auto_advance_limit_reached", flow_id=flow.id, step=step.name,
                       limit=self.config.max_auto_advance_steps)
        return await self.complete_flow(session, contact, flow)

    @staticmethod
    def _default_next(flow: Flow, step: FlowStep) -> str:
        if step.next_step:
            return step.next_step
        successor = flow.next_in_sequence(step.name)
        return successor.name if successor else ""

    # ══════════════════════════════════════════════════════════
    #  STEP RENDERING
    # ══════════════════════════════════════════════════════════

    async def send_step_message(
        self,
        session: Session,
        contact: Contact,
        flow: Flow,
        step: FlowStep,
    ) -> FlowState:
        """Send the step per its message_type. Transfer steps end the flow (EXITED)."""
        if step.message_type == MessageType.BUTTONS:
            await self._send_buttons_step(session, contact, step)
        elif step.message_type == MessageType.API_FETCH:
            await self._send_api_fetch_step(session, contact, flow, step)
        elif step.message_type == MessageType.TRANSFER:
            return await self._run_transfer_step(session, contact, flow, step)
        else:
            await self.outbox.reply(session, contact, self._render(step.message, session), step.name)
        return FlowState.AT_STEP

    async def _send_buttons_step(self, session: Session, contact: Contact, step: FlowStep):
        body = self._render(step.message, session)
        await self.outbox.reply(session, contact, body, step.name, buttons=step.buttons)

    async def _send_api_fetch_step(self, session: Session, contact: Contact, flow: Flow, step: FlowStep):
        config = step.api_config or ApiConfig()
        try:
            response = await self.api_fetcher.fetch(config, session.session_data, step.message)
        except Exception as e:
            logger.error("api_fetch_failed",
                         flow_id=flow.id, step=step.name, session_id=session.id,
                         contact_id=session.contact_id, error=str(e))
            message = (
                self._render(config.fallback_message, session)
                or self._render(step.message, session)
                or self.config.api_error_message
            )
            await self.outbox.reply(session, contact, message, step.name)
            return

        if response.mapped_data:
            session.session_data.update(response.mapped_data)
            await self.sessions.save(session)
        await self.outbox.reply(session, contact, response.message, step.name, buttons=response.buttons)

    async def _run_transfer_step(
        self,
        session: Session,
        contact: Contact,
        flow: Flow,
        step: FlowStep,
    ) -> FlowState:
        transfer = step.transfer_config or TransferConfig()
        message = self._render(step.message, session)
        if message:
            await self.outbox.reply(session, contact, message, step.name)

        try:
            await self.handoffs.create_handoff(
                session.tenant_id,
                contact,
                team_id=transfer.team_id or None,
                notes=self._render(transfer.notes, session),
                source=HandoffSource.FLOW,
            )
        except Exception as e:
            logger.error("handoff_create_failed",
                         flow_id=flow.id, step=step.name, contact_id=session.contact_id, error=str(e))

        logger.info("flow_transferred", flow_id=flow.id, step=step.name, team_id=transfer.team_id)
        return await self.exit_flow(session)

    # ══════════════════════════════════════════════════════════
    #  RESPONSE HANDLING
    # ══════════════════════════════════════════════════════════

    async def process_response(
        self,
        session: Session,
        contact: Contact,
        text: str,
        button_id: str = "",
    ) -> FlowState:
        """Handle the contact's answer to the current step."""
        flow = self.flows.get(session.current_flow_id)
        if flow is None:
            logger.error("flow_not_found", flow_id=session.current_flow_id, session_id=session.id)
            return await self.exit_flow(session)

        # 1. Cancel keywords
        lowered = text.lower()
        for keyword in flow.cancel_keywords:
            if keyword and keyword.lower() in lowered:
                logger.info("flow_cancelled", flow_id=flow.id, keyword=keyword, session_id=session.id)
                await self.outbox.reply(session, contact, self.config.cancel_message, "flow_cancel")
                return await self.exit_flow(session)

        # 2. Current step
        step = flow.get_step(session.current_step)
        if step is None:
            logger.error("current_step_not_found", flow_id=flow.id, step=session.current_step)
            return await self.exit_flow(session)

        # 3. Free-text validation
        if step.validation_regex and not button_id and not self._matches_validation(step, text):
            session.step_retries += 1
            max_retries = step.max_retries or self.config.default_max_retries
            if step.retry_on_invalid and session.step_retries < max_retries:
                await self.sessions.save(session)
                await self.outbox.reply(
                    session, contact,
                    step.validation_error or self.config.validation_error_message,
                    f"{step.name}_retry",
                )
                return FlowState.AT_STEP
            logger.warning("max_retries_exceeded_continuing",
                           flow_id=flow.id, step=step.name, retries=session.step_retries)

        # 4. Button / select validation
        selected: Optional[Button] = None
        choices = self._choices(step)
        if choices and (step.expects_choice or button_id):
            selected = self._select(choices, text, button_id)
            if selected is None:
                return await self._invalid_choice(session, contact, flow, step)

        # 5. Store the answer
        if step.store_as:
            data = session.session_data
            if selected is not None:
                data[step.store_as] = selected.title
                data[f"{step.store_as}_title"] = selected.title
                data[f"{step.store_as}_id"] = selected.id
            else:
                data[step.store_as] = text

        # 6. Next step
        next_name = self._resolve_next(flow, step, text, button_id, selected)
        if not next_name:
            return await self.complete_flow(session, contact, flow)

        next_step = flow.get_step(next_name)
        if next_step is None:
            logger.warning("next_step_not_found", flow_id=flow.id, step=step.name, next_step=next_name)
            return await self.complete_flow(session, contact, flow)

        # 7. Transition
        logger.info("step_advanced", flow_id=flow.id, step=step.name, next_step=next_step.name,
                    session_id=session.id)
        return await self.send_step_with_skip_check(session, contact, flow, next_step)

    @staticmethod
    def _matches_validation(step: FlowStep, text: str) -> bool:
        try:
            return re.search(step.validation_regex, text) is not None
        except re.error as e:
            logger.warning("validation_regex_invalid", step=step.name, pattern=step.validation_regex,
                           error=str(e))
            return True

    @staticmethod
    def _choices(step: FlowStep) -> list[Button]:
        """Reply buttons exactly as they were rendered (same ids, same filtering)."""
        buttons = [
            b for b in normalize_buttons(step.buttons)
            if b.type == ButtonType.REPLY and b.title.strip()
        ]
        return buttons[:MAX_CHOICES]

    @staticmethod
    def _select(choices: list[Button], text: str, button_id: str) -> Optional[Button]:
        for key in (button_id, text.strip()):
            if not key:
                continue
            for choice in choices:
                if choice.id == key:
                    return choice
        wanted = text.strip().lower()
        if wanted:
            for choice in choices:
                if choice.title.strip().lower() == wanted:
                    return choice
        return None

    async def _invalid_choice(
        self,
        session: Session,
        contact: Contact,
        flow: Flow,
        step: FlowStep,
    ) -> FlowState:
        session.step_retries += 1
        max_retries = step.max_retries or self.config.default_max_retries

        if session.step_retries >= max_retries:
            logger.warning("invalid_choice_limit_reached",
                           flow_id=flow.id, step=step.name, retries=session.step_retries,
                           tenant_id=session.tenant_id, contact_id=session.contact_id)
            await self.outbox.reply(session, contact, self.config.max_retries_message, f"{step.name}_failed")
            await self.sessions.exit_flow(session)
            await self.sessions.close(session)
            return FlowState.EXITED

        await self.sessions.save(session)
        await self.outbox.reply(
            session, contact,
            step.validation_error or self.config.validation_error_message,
            f"{step.name}_retry",
            buttons=step.buttons,
        )
        return FlowState.AT_STEP

    @staticmethod
    def _resolve_next(
        flow: Flow,
        step: FlowStep,
        text: str,
        button_id: str,
        selected: Optional[Button],
    ) -> str:
        """conditional_next[button id] → [text] → [default] → next_step → sequential successor."""
        cond = step.conditional_next
        if cond:
            keys = [button_id, selected.id if selected else "", text, text.strip(),
                    selected.title if selected else "", "default"]
            for key in keys:
                if key and cond.get(key):
                    return cond[key]
        if step.next_step:
            return step.next_step
        successor = flow.next_in_sequence(step.name)
        return successor.name if successor else ""

    # ══════════════════════════════════════════════════════════
    #  EXIT / COMPLETE
    # ══════════════════════════════════════════════════════════

    async def complete_flow(self, session: Session, contact: Contact, flow: Flow) -> FlowState:
        if flow.completion_message:
            await self.outbox.reply(
                session, contact, self._render(flow.completion_message, session), "flow_complete",
            )

        if flow.fires_webhook and self.webhooks is not None:
            snapshot = session.model_copy(deep=True)
            self._spawn(self.webhooks.dispatch_flow_completion(flow, snapshot, contact), flow_id=flow.id)

        session.current_flow_id = None
        session.current_step = ""
        session.step_retries = 0
        session.status = SessionStatus.COMPLETED
        session.completed_at = self.sessions.now()
        await self.sessions.save(session)

        logger.info("flow_completed", flow_id=flow.id, session_id=session.id,
                    contact_id=session.contact_id)
        return FlowState.COMPLETED

    async def exit_flow(self, session: Session) -> FlowState:
        await self.sessions.exit_flow(session)
        return FlowState.EXITED

    # ══════════════════════════════════════════════════════════
    #  HELPERS
    # ══════════════════════════════════════════════════════════

    def _render(self, template: str, session: Session) -> str:
        return render(template, session.session_data, self.config.max_loop_iterations)

    def _spawn(self, coro: Awaitable[Any], **log_context: Any):
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task):
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("background_task_failed", error=str(t.exception()), **log_context)

        task.add_done_callback(_done)

    async def drain(self):
        """Wait for background side effects (completion webhooks) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
