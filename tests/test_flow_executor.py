"""Tests for the flow state machine: entry, skip / auto-advance, responses, completion."""
import pytest

from backend.connector import ApiFetchError
from config.settings import EngineConfig
from models.schemas import (
    ApiResponse, Button, FlowState, HandoffSource, MessageDirection, SessionStatus,
)
from templates.executor import FlowExecutor
from templates.models import Flow, FlowStep


def make_flow(steps, flow_id="f1", **kwargs) -> Flow:
    return Flow(
        id=flow_id,
        tenant_id="t1",
        name="Test flow",
        steps=[FlowStep(**s) for s in steps],
        **kwargs,
    )


YES_NO = [{"title": "Yes"}, {"title": "No"}]


# ──────────────────────────────────────────────────────────────
#  Entry & linear progress
# ──────────────────────────────────────────────────────────────

class TestStartFlow:
    @pytest.mark.asyncio
    async def test_linear_flow_reaches_third_step(self, executor, flows, session, contact):
        flow = make_flow([
            {"name": "a", "message": "Your name?", "store_as": "name"},
            {"name": "b", "message": "Hi {{name}}, your email?", "store_as": "email"},
            {"name": "c", "message": "Thanks!"},
        ])
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.AT_STEP
        assert session.current_step == "a"
        assert await executor.process_response(session, contact, "Ada") == FlowState.AT_STEP
        assert session.current_step == "b"
        assert await executor.process_response(session, contact, "ada@example.com") == FlowState.AT_STEP
        assert session.current_step == "c"
        assert session.session_data == {"name": "Ada", "email": "ada@example.com"}

    @pytest.mark.asyncio
    async def test_initial_message_and_first_step_sent(self, executor, flows, session, contact, sender, sessions):
        flow = make_flow([{"name": "a", "message": "Your name?"}], initial_message="Welcome to signup")
        flows.register(flow)

        await executor.start_flow(session, contact, flow)

        assert sender.bodies == ["Welcome to signup", "Your name?"]
        history = await sessions.history(session)
        assert [(m.direction, m.step_name) for m in history] == [
            (MessageDirection.OUTGOING, "flow_start"),
            (MessageDirection.OUTGOING, "a"),
        ]

    @pytest.mark.asyncio
    async def test_start_resets_session_data(self, executor, flows, session, contact):
        session.session_data["stale"] = "value"
        flow = make_flow([{"name": "a", "message": "Q"}])
        flows.register(flow)

        await executor.start_flow(session, contact, flow)

        assert session.session_data == {}
        assert session.current_flow_id == "f1"
        assert session.step_retries == 0

    @pytest.mark.asyncio
    async def test_flow_without_steps_completes(self, executor, flows, session, contact):
        flow = make_flow([], completion_message="Done")
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.COMPLETED
        assert session.status == SessionStatus.COMPLETED


# ──────────────────────────────────────────────────────────────
#  Skip conditions & auto-advance
# ──────────────────────────────────────────────────────────────

class TestSkipAndAutoAdvance:
    @pytest.mark.asyncio
    async def test_skipped_step_lands_on_next_in_sequence(self, executor, flows, session, contact, sender):
        flow = make_flow([
            {"name": "a", "message": "Name?", "store_as": "name"},
            {"name": "b", "message": "Nickname?", "skip_condition": "name == Ada"},
            {"name": "c", "message": "Age?"},
        ])
        flows.register(flow)
        await executor.start_flow(session, contact, flow)

        assert await executor.process_response(session, contact, "Ada") == FlowState.AT_STEP
        assert session.current_step == "c"
        assert "Nickname?" not in sender.bodies

    @pytest.mark.asyncio
    async def test_skip_follows_explicit_next_step(self, executor, flows, session, contact):
        flow = make_flow([
            {"name": "a", "message": "A", "skip_condition": "true", "next_step": "c"},
            {"name": "b", "message": "B"},
            {"name": "c", "message": "C"},
        ])
        flows.register(flow)

        await executor.start_flow(session, contact, flow)
        assert session.current_step == "c"

    @pytest.mark.asyncio
    async def test_skip_cycle_completes_flow(self, executor, flows, session, contact):
        flow = make_flow([
            {"name": "a", "message": "A", "skip_condition": "true", "next_step": "b"},
            {"name": "b", "message": "B", "skip_condition": "true", "next_step": "a"},
        ])
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.COMPLETED
        assert session.current_flow_id is None
        assert session.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_skipping_last_step_completes(self, executor, flows, session, contact, sender):
        flow = make_flow(
            [{"name": "a", "message": "A", "skip_condition": "true"}],
            completion_message="All done",
        )
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.COMPLETED
        assert sender.bodies == ["All done"]

    @pytest.mark.asyncio
    async def test_input_none_advances_without_waiting(self, executor, flows, session, contact, sender):
        flow = make_flow([
            {"name": "intro", "message": "Welcome!", "input_type": "none"},
            {"name": "ask", "message": "What do you need?"},
        ])
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.AT_STEP
        assert session.current_step == "ask"
        assert sender.bodies == ["Welcome!", "What do you need?"]

    @pytest.mark.asyncio
    async def test_input_none_chain_completes(self, executor, flows, session, contact, sender):
        flow = make_flow(
            [
                {"name": "one", "message": "1", "input_type": "none"},
                {"name": "two", "message": "2", "input_type": "none"},
            ],
            completion_message="bye",
        )
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.COMPLETED
        assert sender.bodies == ["1", "2", "bye"]

    @pytest.mark.asyncio
    async def test_auto_advance_cycle_completes(self, executor, flows, session, contact):
        flow = make_flow([
            {"name": "one", "message": "1", "input_type": "none", "next_step": "two"},
            {"name": "two", "message": "2", "input_type": "none", "next_step": "one"},
        ])
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.COMPLETED

    @pytest.mark.asyncio
    async def test_auto_advance_limit(self, sessions, outbox, flows, fetcher, handoffs, session, contact, sender):
        executor = FlowExecutor(sessions, outbox, flows, fetcher, handoffs,
                                config=EngineConfig(max_auto_advance_steps=2))
        flow = make_flow([{"name": f"s{i}", "message": str(i), "input_type": "none"} for i in range(5)])
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.COMPLETED
        assert sender.bodies == ["0", "1"]

    @pytest.mark.asyncio
    async def test_missing_next_step_completes(self, executor, flows, session, contact):
        flow = make_flow([{"name": "a", "message": "A", "next_step": "ghost"}])
        flows.register(flow)
        await executor.start_flow(session, contact, flow)

        assert await executor.process_response(session, contact, "x") == FlowState.COMPLETED
        assert session.status == SessionStatus.COMPLETED


# ──────────────────────────────────────────────────────────────
#  Buttons
# ──────────────────────────────────────────────────────────────

class TestButtonSteps:
    @pytest.fixture
    def flow(self, flows):
        flow = make_flow([
            {"name": "confirm", "message": "Confirm?", "message_type": "buttons",
             "buttons": YES_NO, "input_type": "button", "store_as": "answer"},
            {"name": "done", "message": "Noted"},
        ])
        flows.register(flow)
        return flow

    @pytest.mark.asyncio
    async def test_generated_ids_rendered(self, executor, flow, session, contact, sender):
        await executor.start_flow(session, contact, flow)
        assert sender.sent[-1]["kind"] == "buttons"
        assert sender.sent[-1]["buttons"] == [("btn_1", "Yes"), ("btn_2", "No")]

    @pytest.mark.asyncio
    async def test_click_by_generated_id(self, executor, flow, session, contact):
        await executor.start_flow(session, contact, flow)

        state = await executor.process_response(session, contact, "No", button_id="btn_2")

        assert state == FlowState.AT_STEP
        assert session.current_step == "done"
        assert session.session_data["answer"] == "No"
        assert session.session_data["answer_title"] == "No"
        assert session.session_data["answer_id"] == "btn_2"

    @pytest.mark.asyncio
    async def test_typed_title_case_insensitive(self, executor, flow, session, contact):
        await executor.start_flow(session, contact, flow)
        await executor.process_response(session, contact, "  yes ")
        assert session.session_data["answer"] == "Yes"
        assert session.current_step == "done"

    @pytest.mark.asyncio
    async def test_invalid_choice_reprompts(self, executor, flow, session, contact, sender, sessions):
        await executor.start_flow(session, contact, flow)

        state = await executor.process_response(session, contact, "maybe")

        assert state == FlowState.AT_STEP
        assert session.current_step == "confirm"
        assert session.step_retries == 1
        assert sender.sent[-1]["body"] == EngineConfig().validation_error_message
        assert sender.sent[-1]["buttons"] == [("btn_1", "Yes"), ("btn_2", "No")]
        history = await sessions.history(session)
        assert history[-1].step_name == "confirm_retry"

    @pytest.mark.asyncio
    async def test_exceeding_default_retries_exits_and_closes(self, executor, flow, session, contact, sender, store):
        await executor.start_flow(session, contact, flow)

        assert await executor.process_response(session, contact, "x") == FlowState.AT_STEP
        assert await executor.process_response(session, contact, "y") == FlowState.AT_STEP
        assert await executor.process_response(session, contact, "z") == FlowState.EXITED

        assert sender.bodies[-1] == EngineConfig().max_retries_message
        stored = await store.get_session(session.id)
        assert stored.status == SessionStatus.COMPLETED
        assert stored.current_flow_id is None
        assert stored.current_step == ""

    @pytest.mark.asyncio
    async def test_custom_max_retries(self, executor, flows, session, contact):
        flow = make_flow([
            {"name": "pick", "message": "Pick", "message_type": "buttons", "buttons": YES_NO,
             "input_type": "button", "max_retries": 1},
        ])
        flows.register(flow)
        await executor.start_flow(session, contact, flow)

        assert await executor.process_response(session, contact, "nope") == FlowState.EXITED
        assert session.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_button_id_is_invalid(self, executor, flow, session, contact):
        await executor.start_flow(session, contact, flow)
        assert await executor.process_response(session, contact, "Later", button_id="btn_9") == FlowState.AT_STEP
        assert session.step_retries == 1

    @pytest.mark.asyncio
    async def test_reply_and_url_buttons_split(self, executor, flows, session, contact, sender):
        flow = make_flow([
            {"name": "links", "message": "Read first", "message_type": "buttons", "buttons": [
                {"title": "Docs", "type": "url", "url": "https://example.com/docs"},
                {"title": "Agree"},
                {"title": "Terms", "type": "url", "url": "https://example.com/terms"},
            ], "input_type": "button", "store_as": "choice"},
        ])
        flows.register(flow)

        await executor.start_flow(session, contact, flow)

        assert sender.sent[0] == {"kind": "buttons", "to": contact.id, "body": "Read first",
                                  "buttons": [("btn_2", "Agree")]}
        assert sender.sent[1]["kind"] == "cta_url"
        assert sender.sent[1]["url"] == "https://example.com/docs"
        assert sender.sent[1]["body"] == "Docs"
        assert sender.sent[2]["title"] == "Terms"

        await executor.process_response(session, contact, "Agree", button_id="btn_2")
        assert session.session_data["choice_id"] == "btn_2"

    @pytest.mark.asyncio
    async def test_only_url_buttons_sends_body_with_first_cta(self, executor, flows, session, contact, sender):
        flow = make_flow([
            {"name": "link", "message": "See our site", "message_type": "buttons",
             "buttons": [{"title": "Open", "type": "url", "url": "https://example.com"}]},
        ])
        flows.register(flow)

        await executor.start_flow(session, contact, flow)
        assert sender.sent == [{"kind": "cta_url", "to": contact.id, "body": "See our site",
                                "title": "Open", "url": "https://example.com"}]

    @pytest.mark.asyncio
    async def test_buttons_step_without_buttons_sends_text(self, executor, flows, session, contact, sender):
        flow = make_flow([{"name": "b", "message": "Plain", "message_type": "buttons"}])
        flows.register(flow)

        await executor.start_flow(session, contact, flow)
        assert sender.sent == [{"kind": "text", "to": contact.id, "body": "Plain"}]


# ──────────────────────────────────────────────────────────────
#  Free-text validation
# ──────────────────────────────────────────────────────────────

class TestValidation:
    @pytest.fixture
    def flow(self, flows):
        flow = make_flow([
            {"name": "age", "message": "Age?", "validation_regex": r"^\d+$",
             "validation_error": "Numbers only", "retry_on_invalid": True, "max_retries": 2,
             "store_as": "age"},
            {"name": "end", "message": "Ok"},
        ])
        flows.register(flow)
        return flow

    @pytest.mark.asyncio
    async def test_valid_input(self, executor, flow, session, contact):
        await executor.start_flow(session, contact, flow)
        await executor.process_response(session, contact, "42")
        assert session.session_data["age"] == "42"
        assert session.current_step == "end"

    @pytest.mark.asyncio
    async def test_invalid_then_proceeds_after_max_retries(self, executor, flow, session, contact, sender):
        await executor.start_flow(session, contact, flow)

        assert await executor.process_response(session, contact, "abc") == FlowState.AT_STEP
        assert sender.bodies[-1] == "Numbers only"
        assert session.current_step == "age"

        await executor.process_response(session, contact, "still abc")
        assert session.current_step == "end"
        assert session.session_data["age"] == "still abc"
        assert session.step_retries == 0

    @pytest.mark.asyncio
    async def test_no_retry_proceeds_immediately(self, executor, flows, session, contact):
        flow = make_flow([
            {"name": "code", "message": "Code?", "validation_regex": r"^[A-Z]{3}$", "store_as": "code"},
            {"name": "end", "message": "Ok"},
        ])
        flows.register(flow)
        await executor.start_flow(session, contact, flow)

        await executor.process_response(session, contact, "nope")
        assert session.current_step == "end"

    @pytest.mark.asyncio
    async def test_retry_uses_default_max_retries(self, executor, flows, session, contact, sender):
        flow = make_flow([
            {"name": "age", "message": "Age?", "validation_regex": r"^\d+$",
             "validation_error": "Numbers only", "retry_on_invalid": True, "store_as": "age"},
            {"name": "end", "message": "Ok"},
        ])
        flows.register(flow)
        await executor.start_flow(session, contact, flow)

        for attempt in ("abc", "def"):
            assert await executor.process_response(session, contact, attempt) == FlowState.AT_STEP
            assert sender.bodies[-1] == "Numbers only"
            assert session.current_step == "age"

        await executor.process_response(session, contact, "ghi")
        assert session.current_step == "end"
        assert session.session_data["age"] == "ghi"

    @pytest.mark.asyncio
    async def test_regex_not_applied_to_button_clicks(self, executor, flow, session, contact, sender):
        await executor.start_flow(session, contact, flow)
        await executor.process_response(session, contact, "Forty", button_id="btn_x")
        assert session.current_step == "end"
        assert "Numbers only" not in sender.bodies


# ──────────────────────────────────────────────────────────────
#  Routing, cancel, self-healing
# ──────────────────────────────────────────────────────────────

class TestRouting:
    @pytest.mark.asyncio
    async def test_conditional_next_by_text_and_default(self, executor, flows, session, contact):
        flow = make_flow([
            {"name": "food", "message": "Food?", "conditional_next": {"pizza": "pizza", "default": "other"}},
            {"name": "pizza", "message": "Toppings?"},
            {"name": "other", "message": "Tell me more"},
        ])
        flows.register(flow)

        await executor.start_flow(session, contact, flow)
        await executor.process_response(session, contact, "pizza")
        assert session.current_step == "pizza"

        await executor.start_flow(session, contact, flow)
        await executor.process_response(session, contact, "sushi")
        assert session.current_step == "other"

    @pytest.mark.asyncio
    async def test_conditional_next_by_button_id(self, executor, flows, session, contact):
        flow = make_flow([
            {"name": "q", "message": "Continue?", "message_type": "buttons", "buttons": YES_NO,
             "input_type": "button", "conditional_next": {"btn_2": "bye", "default": "more"}},
            {"name": "more", "message": "Great"},
            {"name": "bye", "message": "Bye"},
        ])
        flows.register(flow)

        await executor.start_flow(session, contact, flow)
        await executor.process_response(session, contact, "No", button_id="btn_2")
        assert session.current_step == "bye"

    @pytest.mark.asyncio
    async def test_cancel_keyword_exits(self, executor, flows, session, contact, sender, sessions):
        flow = make_flow([{"name": "a", "message": "Q"}, {"name": "b", "message": "Q2"}], cancel_keywords=["stop"])
        flows.register(flow)
        await executor.start_flow(session, contact, flow)

        state = await executor.process_response(session, contact, "please STOP this")

        assert state == FlowState.EXITED
        assert sender.bodies[-1] == "Flow cancelled."
        assert session.current_flow_id is None
        assert session.status == SessionStatus.ACTIVE
        history = await sessions.history(session)
        assert history[-1].step_name == "flow_cancel"

    @pytest.mark.asyncio
    async def test_missing_current_step_exits(self, executor, flows, session, contact):
        flow = make_flow([{"name": "a", "message": "Q"}])
        flows.register(flow)
        await executor.start_flow(session, contact, flow)
        session.current_step = "ghost"

        assert await executor.process_response(session, contact, "hi") == FlowState.EXITED
        assert session.current_flow_id is None

    @pytest.mark.asyncio
    async def test_unknown_flow_exits(self, executor, session, contact):
        session.current_flow_id = "deleted"
        session.current_step = "a"
        assert await executor.process_response(session, contact, "hi") == FlowState.EXITED
        assert not session.in_flow


# ──────────────────────────────────────────────────────────────
#  api_fetch & transfer steps
# ──────────────────────────────────────────────────────────────

class TestApiFetchStep:
    @pytest.fixture
    def flow(self, flows):
        flow = make_flow([
            {"name": "balance", "message_type": "api_fetch", "input_type": "none",
             "api_config": {"url": "https://api.example.com/balance/{{phone}}",
                            "response_mapping": {"balance": "data.balance"}}},
            {"name": "next", "message": "Your balance is {{balance}}"},
        ])
        flows.register(flow)
        return flow

    @pytest.mark.asyncio
    async def test_mapped_data_merged_and_buttons_forwarded(self, executor, flow, fetcher, session, contact, sender):
        fetcher.response = ApiResponse(
            message="Balance ready",
            buttons=[Button(id="pay", title="Pay now")],
            mapped_data={"balance": 120},
        )

        await executor.start_flow(session, contact, flow)

        assert session.session_data["balance"] == 120
        assert sender.sent[0] == {"kind": "buttons", "to": contact.id, "body": "Balance ready",
                                  "buttons": [("pay", "Pay now")]}
        assert sender.bodies[-1] == "Your balance is 120"
        assert fetcher.calls[0]["url"] == "https://api.example.com/balance/{{phone}}"

    @pytest.mark.asyncio
    async def test_failure_uses_fallback_message(self, executor, flows, fetcher, fetch_error, session, contact, sender):
        fetcher.error = fetch_error
        flow = make_flow([{"name": "s", "message": "Checking", "message_type": "api_fetch",
                           "api_config": {"url": "https://x", "fallback_message": "Service unavailable"}}])
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.AT_STEP
        assert sender.bodies == ["Service unavailable"]

    @pytest.mark.asyncio
    async def test_failure_without_fallback_uses_step_message(self, executor, flows, fetcher, fetch_error,
                                                              session, contact, sender):
        fetcher.error = fetch_error
        flow = make_flow([{"name": "s", "message": "Checking", "message_type": "api_fetch",
                           "api_config": {"url": "https://x"}}])
        flows.register(flow)

        await executor.start_flow(session, contact, flow)
        assert sender.bodies == ["Checking"]

    @pytest.mark.asyncio
    async def test_failure_without_any_message(self, executor, flows, fetcher, session, contact, sender):
        fetcher.error = RuntimeError("boom")
        flow = make_flow([{"name": "s", "message_type": "api_fetch", "api_config": {"url": "https://x"}}])
        flows.register(flow)

        await executor.start_flow(session, contact, flow)
        assert sender.bodies == [EngineConfig().api_error_message]


class TestTransferStep:
    @pytest.mark.asyncio
    async def test_transfer_creates_handoff_and_exits(self, executor, flows, handoffs, session, contact, sender):
        flow = make_flow([
            {"name": "order", "message": "Order number?", "store_as": "order"},
            {"name": "agent", "message": "Connecting you to sales", "message_type": "transfer",
             "transfer_config": {"team_id": "sales", "notes": "Order {{order}}"}},
            {"name": "never", "message": "unreachable"},
        ])
        flows.register(flow)
        await executor.start_flow(session, contact, flow)

        state = await executor.process_response(session, contact, "A-17")

        assert state == FlowState.EXITED
        assert sender.bodies[-1] == "Connecting you to sales"
        handoff = handoffs.list_handoffs("t1")[0]
        assert handoff.team_id == "sales"
        assert handoff.notes == "Order A-17"
        assert handoff.source == HandoffSource.FLOW
        assert session.current_flow_id is None
        assert session.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_transfer_to_general_queue(self, executor, flows, handoffs, session, contact, sender):
        flow = make_flow([{"name": "agent", "message_type": "transfer"}])
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.EXITED
        assert handoffs.list_handoffs()[0].team_id is None
        assert sender.sent == []


# ──────────────────────────────────────────────────────────────
#  Completion
# ──────────────────────────────────────────────────────────────

class TestCompletion:
    @pytest.mark.asyncio
    async def test_completion_message_and_webhook(self, executor, flows, webhooks, session, contact, sender, clock):
        flow = make_flow(
            [{"name": "name", "message": "Name?", "store_as": "name"}],
            completion_message="Thanks {{name}}!",
            on_complete_action="webhook",
            completion_config={"url": "https://hooks.example.com/done"},
        )
        flows.register(flow)
        await executor.start_flow(session, contact, flow)

        state = await executor.process_response(session, contact, "Ada")
        await executor.drain()

        assert state == FlowState.COMPLETED
        assert sender.bodies[-1] == "Thanks Ada!"
        assert session.status == SessionStatus.COMPLETED
        assert session.completed_at == clock.now
        assert session.current_flow_id is None
        assert webhooks.calls == [{"flow_id": "f1", "session_data": {"name": "Ada"}, "contact": contact.id}]

    @pytest.mark.asyncio
    async def test_no_webhook_without_config(self, executor, flows, webhooks, session, contact):
        flow = make_flow([{"name": "a", "message": "Q"}], on_complete_action="webhook")
        flows.register(flow)
        await executor.start_flow(session, contact, flow)

        await executor.process_response(session, contact, "x")
        await executor.drain()
        assert webhooks.calls == []

    @pytest.mark.asyncio
    async def test_send_failures_do_not_stop_the_flow(self, executor, flows, session, contact, sender):
        sender.fail = True
        flow = make_flow([{"name": "a", "message": "Q"}, {"name": "b", "message": "Q2"}])
        flows.register(flow)

        assert await executor.start_flow(session, contact, flow) == FlowState.AT_STEP
        assert await executor.process_response(session, contact, "x") == FlowState.AT_STEP
        assert session.current_step == "b"
