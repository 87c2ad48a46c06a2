"""Shared test fixtures for flowbot."""
import asyncio
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from backend.connector import ApiFetchError, ApiFetcher
from backend.webhooks import WebhookDispatcher
from channels.base import ChannelError, MessageSender
from config.settings import EngineConfig
from context.session_manager import SessionManager
from core.ai_context import AIContextBuilder
from core.engine import AIProvider, AIResponder
from core.handoff import InMemoryHandoffService
from core.orchestrator import Orchestrator
from core.outbound import Outbox
from database.store_memory import InMemorySessionStore
from models.schemas import AISettings, ApiResponse, Button, Contact
from rules.engine import KeywordRouter
from templates.executor import FlowExecutor
from templates.models import ApiConfig
from templates.registry import FlowRegistry


# ──────────────────────────────────────────────────────────────
#  Fakes
# ──────────────────────────────────────────────────────────────

class RecordingSender(MessageSender):
    """Keeps every outbound message instead of delivering it."""

    channel_name = "test"

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    def _record(self, entry: dict[str, Any]) -> str:
        if self.fail:
            raise ChannelError("delivery failed", self.channel_name, retryable=True)
        self.sent.append(entry)
        return f"wamid.{len(self.sent)}"

    async def send_text(self, contact: Contact, text: str) -> str:
        return self._record({"kind": "text", "to": contact.id, "body": text})

    async def send_buttons(self, contact: Contact, body: str, buttons: list[Button]) -> str:
        return self._record({
            "kind": "buttons", "to": contact.id, "body": body,
            "buttons": [(b.id, b.title) for b in buttons],
        })

    async def send_cta_url(self, contact: Contact, body: str, button_title: str, url: str) -> str:
        return self._record({"kind": "cta_url", "to": contact.id, "body": body, "title": button_title, "url": url})

    @property
    def bodies(self) -> list[str]:
        return [m["body"] for m in self.sent]


class FakeFetcher(ApiFetcher):
    def __init__(self, response: Optional[ApiResponse] = None, error: Optional[Exception] = None):
        self.response = response or ApiResponse()
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def fetch(self, config: ApiConfig, session_data: Mapping[str, Any], message_template: str = "") -> ApiResponse:
        self.calls.append({"url": config.url, "session_data": dict(session_data), "template": message_template})
        if self.error is not None:
            raise self.error
        return self.response


class RecordingWebhooks(WebhookDispatcher):
    def __init__(self):
        self.calls: list[dict[str, Any]] = []

    async def dispatch_flow_completion(self, flow, session, contact) -> bool:
        await asyncio.sleep(0)
        self.calls.append({"flow_id": flow.id, "session_data": session.session_data.to_dict(), "contact": contact.id})
        return True


class FakeAIProvider(AIProvider):
    name = "fake"

    def __init__(self, answer: str = "AI says hi", error: Optional[Exception] = None):
        self.answer = answer
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def generate(self, settings: AISettings, history, prompt: str) -> str:
        self.calls.append({"history": list(history), "prompt": prompt, "system_prompt": settings.system_prompt})
        if self.error is not None:
            raise self.error
        return self.answer


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FixedClock:
    # Wednesday
    return FixedClock(datetime(2024, 5, 15, 10, 30, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def sessions(store, clock) -> SessionManager:
    return SessionManager(store, clock=clock)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def outbox(sender, sessions) -> Outbox:
    return Outbox(sender, sessions)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def handoffs() -> InMemoryHandoffService:
    return InMemoryHandoffService()


@pytest.fixture
def webhooks() -> RecordingWebhooks:
    return RecordingWebhooks()


@pytest.fixture
def flows() -> FlowRegistry:
    return FlowRegistry()


@pytest.fixture
def keywords() -> KeywordRouter:
    return KeywordRouter()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def executor(sessions, outbox, flows, fetcher, handoffs, webhooks, engine_config) -> FlowExecutor:
    return FlowExecutor(
        sessions=sessions,
        outbox=outbox,
        flows=flows,
        api_fetcher=fetcher,
        handoffs=handoffs,
        webhooks=webhooks,
        config=engine_config,
    )


@pytest.fixture
def ai_provider() -> FakeAIProvider:
    return FakeAIProvider()


@pytest.fixture
def ai_context(fetcher) -> AIContextBuilder:
    return AIContextBuilder(fetcher)


@pytest.fixture
def orchestrator(sessions, executor, flows, keywords, outbox, handoffs, ai_provider, engine_config, ai_context) -> Orchestrator:
    return Orchestrator(
        sessions=sessions,
        executor=executor,
        flows=flows,
        keywords=keywords,
        outbox=outbox,
        handoffs=handoffs,
        ai=AIResponder(providers=[ai_provider]),
        config=engine_config,
        ai_context=ai_context,
    )


@pytest.fixture
def contact() -> Contact:
    return Contact(id="2348012345678", phone_number="2348012345678", profile_name="Ada")


@pytest.fixture
async def session(sessions, contact):
    created, _ = await sessions.get_or_create("t1", contact, "main")
    return created


@pytest.fixture
def fetch_error() -> ApiFetchError:
    return ApiFetchError("API returned status 500", status_code=500)
