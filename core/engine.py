"""
AI Response Engine — pluggable LLM answers for free-text messages.

Each provider is an adapter behind the same capability:
    generate(settings, history, prompt) -> str

Supported providers:
- openai     (openai SDK, chat completions)
- anthropic  (anthropic SDK, messages API)
- google     (Gemini generateContent over REST)

The AIResponder picks the adapter named by the tenant's AISettings and
turns the session's audit trail into chat history. Tenant context from
core.ai_context is appended to the system prompt, so every provider sees
it. Callers never see a provider's wire format, only AIProviderError on
failure.
"""
from __future__ import annotations

import abc
from typing import Any, Callable, Optional

import httpx
import structlog

from models.schemas import AISettings, MessageDirection, SessionMessage

logger = structlog.get_logger()

ChatTurn = dict[str, str]          # {"role": "user" | "assistant", "content": str}


class AIProviderError(Exception):
    def __init__(self, message: str, provider: str = ""):
        self.provider = provider
        super().__init__(message)


class AIProvider(abc.ABC):
    """One LLM vendor."""

    name: str = ""

    @abc.abstractmethod
    async def generate(self, settings: AISettings, history: list[ChatTurn], prompt: str) -> str:
        ...


# ──────────────────────────────────────────────────────────────
#  SDK providers
# ──────────────────────────────────────────────────────────────

class OpenAIProvider(AIProvider):
    name = "openai"

    def __init__(self, client_factory: Optional[Callable[[str], Any]] = None):
        self._client_factory = client_factory or self._default_client
        self._clients: dict[str, Any] = {}

    @staticmethod
    def _default_client(api_key: str):
        from openai import AsyncOpenAI
        return AsyncOpenAI(api_key=api_key)

    def _get_client(self, api_key: str):
        if api_key not in self._clients:
            self._clients[api_key] = self._client_factory(api_key)
            logger.info("llm_client_initialized", provider=self.name)
        return self._clients[api_key]

    async def generate(self, settings: AISettings, history: list[ChatTurn], prompt: str) -> str:
        client = self._get_client(settings.api_key)
        messages: list[ChatTurn] = []
        if settings.system_prompt:
            messages.append({"role": "system", "content": settings.system_prompt})
        messages.extend(history)
        messages.append({"role": "user", "content": prompt})

        response = await client.chat.completions.create(
            model=settings.model or "gpt-4o-mini",
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            messages=messages,
        )
        if not response.choices:
            raise AIProviderError("no response from OpenAI", self.name)
        return response.choices[0].message.content or ""


class AnthropicProvider(AIProvider):
    name = "anthropic"

    def __init__(self, client_factory: Optional[Callable[[str], Any]] = None):
        self._client_factory = client_factory or self._default_client
        self._clients: dict[str, Any] = {}

    @staticmethod
    def _default_client(api_key: str):
        import anthropic
        return anthropic.AsyncAnthropic(api_key=api_key)

    def _get_client(self, api_key: str):
        if api_key not in self._clients:
            self._clients[api_key] = self._client_factory(api_key)
            logger.info("llm_client_initialized", provider=self.name)
        return self._clients[api_key]

    async def generate(self, settings: AISettings, history: list[ChatTurn], prompt: str) -> str:
        client = self._get_client(settings.api_key)
        kwargs: dict[str, Any] = {
            "model": settings.model or "claude-3-5-haiku-latest",
            "max_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "messages": [*history, {"role": "user", "content": prompt}],
        }
        if settings.system_prompt:
            kwargs["system"] = settings.system_prompt

        response = await client.messages.create(**kwargs)
        for block in response.content:
            if getattr(block, "type", "") == "text":
                return block.text
        raise AIProviderError("no text content from Anthropic", self.name)


# ──────────────────────────────────────────────────────────────
#  REST provider
# ──────────────────────────────────────────────────────────────

class GoogleProvider(AIProvider):
    name = "google"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0):
        self.client = client
        self.timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    async def generate(self, settings: AISettings, history: list[ChatTurn], prompt: str) -> str:
        contents = [
            {
                "role": "model" if turn["role"] == "assistant" else "user",
                "parts": [{"text": turn["content"]}],
            }
            for turn in history
        ]
        contents.append({"role": "user", "parts": [{"text": prompt}]})

        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": settings.max_tokens,
                "temperature": settings.temperature,
            },
        }
        if settings.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": settings.system_prompt}]}

        model = settings.model or "gemini-1.5-flash"
        client = await self._get_client()
        response = await client.post(
            f"{self.BASE_URL}/{model}:generateContent",
            params={"key": settings.api_key},
            json=payload,
        )
        data = response.json()
        if response.status_code != 200:
            message = (data.get("error") or {}).get("message", response.text)
            raise AIProviderError(f"Google API error: {message}", self.name)

        candidates = data.get("candidates") or []
        parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
        if not parts:
            raise AIProviderError("no response from Google", self.name)
        return parts[0].get("text", "")


# ──────────────────────────────────────────────────────────────
#  Responder
# ──────────────────────────────────────────────────────────────

def history_to_turns(history: list[SessionMessage]) -> list[ChatTurn]:
    """incoming → user, outgoing → assistant, oldest first."""
    turns = []
    for msg in history:
        if not msg.message:
            continue
        role = "user" if msg.direction == MessageDirection.INCOMING else "assistant"
        turns.append({"role": role, "content": msg.message})
    return turns


class AIResponder:
    """Routes a generate call to the provider named in the tenant's settings."""

    def __init__(self, providers: Optional[list[AIProvider]] = None):
        providers = providers if providers is not None else [
            OpenAIProvider(), AnthropicProvider(), GoogleProvider(),
        ]
        self._providers = {p.name: p for p in providers}

    def register(self, provider: AIProvider):
        self._providers[provider.name] = provider

    async def generate_response(
        self,
        settings: AISettings,
        history: list[SessionMessage],
        user_message: str,
        context: str = "",
    ) -> str:
        """Answer user_message. `context` is appended to the system prompt."""
        provider = self._providers.get(settings.provider)
        if provider is None:
            raise AIProviderError(f"unsupported AI provider: {settings.provider}", settings.provider)

        turns = history_to_turns(history) if settings.include_history else []
        # The current message is already in the audit trail; it goes in as the prompt.
        if turns and turns[-1]["role"] == "user" and turns[-1]["content"] == user_message:
            turns = turns[:-1]
        if settings.history_limit > 0:
            turns = turns[-settings.history_limit:]

        if context:
            system_prompt = f"{settings.system_prompt}\n\n{context}" if settings.system_prompt else context
            settings = settings.model_copy(update={"system_prompt": system_prompt})

        try:
            answer = await provider.generate(settings, turns, user_message)
        except AIProviderError:
            raise
        except Exception as e:
            raise AIProviderError(str(e), provider.name) from e

        answer = (answer or "").strip()
        if not answer:
            raise AIProviderError("empty response", provider.name)
        return answer
