"""
Core data models for the flowbot conversation engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from collections.abc import Mapping, MutableMapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MessageDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class FlowState(str, Enum):
    """Where a session stands relative to a flow after one engine call."""
    NOT_IN_FLOW = "not_in_flow"
    AT_STEP = "at_step"
    COMPLETED = "completed"
    EXITED = "exited"


class ButtonType(str, Enum):
    REPLY = "reply"
    URL = "url"


class MatchType(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    REGEX = "regex"


class ResponseType(str, Enum):
    TEXT = "text"
    TRANSFER = "transfer"


class HandoffSource(str, Enum):
    FLOW = "flow"
    KEYWORD = "keyword"
    CHATBOT_DISABLED = "chatbot_disabled"


# ──────────────────────────────────────────────────────────────
#  Session Data — the flow's working memory
# ──────────────────────────────────────────────────────────────

def coerce_value(value: Any) -> Any:
    """
    Normalize a value before it enters session data.

    None, str, bool, int and float are kept as-is. Lists and tuples become
    lists, mappings become dicts with string keys (both recursively), and
    anything else is stored as its string form.
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Mapping):
        return {str(k): coerce_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [coerce_value(v) for v in value]
    return str(value)


class SessionData(MutableMapping):
    """Ordered, string-keyed store of the values a flow has collected."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._data: dict[str, Any] = {}
        if initial:
            self.update(initial)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[str(key)] = coerce_value(value)

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"SessionData({self._data!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SessionData):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    def set(self, key: str, value: Any) -> None:
        self[key] = value

    def has(self, key: str) -> bool:
        return key in self._data

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def copy(self) -> "SessionData":
        return SessionData(self._data)


# ──────────────────────────────────────────────────────────────
#  Contact & Inbound Message
# ──────────────────────────────────────────────────────────────

class Contact(BaseModel):
    """The person on the other side of the messaging channel."""
    id: str = Field(default_factory=new_id)
    phone_number: str
    profile_name: str = ""


class InboundMessage(BaseModel):
    """One message received from a contact, already parsed from the provider payload."""
    tenant_id: str
    channel: str                              # messaging account name
    contact: Contact
    message_id: str = ""
    message_type: str = "text"                # text | interactive | image | ...
    text: str = ""
    button_id: str = ""                       # set for button_reply / list_reply
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def is_button_click(self) -> bool:
        return bool(self.button_id)


# ──────────────────────────────────────────────────────────────
#  Buttons
# ──────────────────────────────────────────────────────────────

class Button(BaseModel):
    id: str = ""
    title: str = ""
    type: ButtonType = ButtonType.REPLY
    url: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, v: Any) -> Any:
        return v or ButtonType.REPLY


def normalize_buttons(buttons: list[Button]) -> list[Button]:
    """
    Assign ``btn_<n>`` ids (1-based position in the configured list) to
    buttons whose id was left blank. Rendering and validation both go
    through here so the ids a contact clicks always match.
    """
    normalized = []
    for i, btn in enumerate(buttons):
        if btn.id:
            normalized.append(btn)
        else:
            normalized.append(btn.model_copy(update={"id": f"btn_{i + 1}"}))
    return normalized


# ──────────────────────────────────────────────────────────────
#  Session — one ongoing conversation per (tenant, contact, channel)
# ──────────────────────────────────────────────────────────────

class Session(BaseModel):
    """
    Bounded-lifetime conversation state.

    At most one active session per (tenant, contact, channel) is live
    within the configured timeout; expired sessions are replaced, never
    reused or deleted.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    contact_id: str
    channel: str
    phone_number: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    current_flow_id: Optional[str] = None
    current_step: str = ""
    step_retries: int = 0
    session_data: SessionData = Field(default_factory=SessionData)
    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    version: int = 0

    @field_validator("session_data", mode="before")
    @classmethod
    def _wrap_session_data(cls, v: Any) -> Any:
        if v is None:
            return SessionData()
        if isinstance(v, SessionData):
            return v
        if isinstance(v, Mapping):
            return SessionData(v)
        return v

    @field_serializer("session_data")
    def _dump_session_data(self, v: SessionData) -> dict[str, Any]:
        return v.to_dict()

    @property
    def in_flow(self) -> bool:
        return self.current_flow_id is not None

    @property
    def flow_state(self) -> FlowState:
        return FlowState.AT_STEP if self.in_flow else FlowState.NOT_IN_FLOW

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.tenant_id, self.contact_id, self.channel)


class SessionMessage(BaseModel):
    """Audit-trail entry for one message in a session."""
    id: str = Field(default_factory=new_id)
    session_id: str
    direction: MessageDirection
    message: str
    step_name: str = ""
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Keyword Rules
# ──────────────────────────────────────────────────────────────

class KeywordRule(BaseModel):
    """
    Free-text matcher. The first rule (in priority order) with any matching
    keyword wins; rules without a usable response body are skipped.
    """
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    channel: str = ""                         # "" = tenant-wide
    keywords: list[str] = []
    match_type: str = MatchType.CONTAINS.value
    case_sensitive: bool = False
    response_type: ResponseType = ResponseType.TEXT
    response_content: dict[str, Any] = {}     # {"body": str, "buttons": [...]}
    priority: int = 0
    is_enabled: bool = True


class KeywordResponse(BaseModel):
    body: str = ""
    buttons: list[Button] = []
    response_type: ResponseType = ResponseType.TEXT
    rule_id: str = ""

    @property
    def is_transfer(self) -> bool:
        return self.response_type == ResponseType.TRANSFER


# ──────────────────────────────────────────────────────────────
#  Chatbot Settings — per tenant / channel
# ──────────────────────────────────────────────────────────────

class BusinessHoursEntry(BaseModel):
    day: int                                  # 0 = Sunday … 6 = Saturday
    enabled: bool = True
    start_time: str = "09:00"                 # HH:MM
    end_time: str = "18:00"


class AISettings(BaseModel):
    enabled: bool = False
    provider: str = ""                        # openai | anthropic | google
    api_key: str = ""
    model: str = ""
    max_tokens: int = 500
    temperature: float = 0.0
    system_prompt: str = ""
    include_history: bool = True
    history_limit: int = 10

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.provider) and bool(self.api_key)


class ChatbotSettings(BaseModel):
    tenant_id: str
    channel: str = ""                         # "" = tenant-wide
    is_enabled: bool = True
    default_response: str = ""                # greeting for new sessions
    greeting_buttons: list[Button] = []
    fallback_message: str = ""
    fallback_buttons: list[Button] = []
    business_hours_enabled: bool = False
    business_hours: list[BusinessHoursEntry] = []
    out_of_hours_message: str = ""
    allow_automated_outside_hours: bool = False
    session_timeout_minutes: int = 30
    ai: AISettings = Field(default_factory=AISettings)


# ──────────────────────────────────────────────────────────────
#  Collaborator payloads
# ──────────────────────────────────────────────────────────────

class ApiResponse(BaseModel):
    """What an api_fetch step gets back from the fetch collaborator."""
    message: str = ""
    buttons: list[Button] = []
    mapped_data: dict[str, Any] = {}


class Handoff(BaseModel):
    """A request for a human agent to take over a conversation."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    contact_id: str
    phone_number: str = ""
    team_id: Optional[str] = None             # None = general queue
    notes: str = ""
    source: HandoffSource
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
