"""
Flow Models — scripted multi-step conversations.

A Flow is an ordered list of steps. Each step sends a message (plain text,
buttons, the result of an external API call, or a handoff notice), then
either waits for the contact's answer or advances on its own.

Routing between steps:
  - conditional_next: answer / button id → step name ("default" fallback)
  - next_step: explicit successor
  - otherwise the next step in list order; past the last step the flow completes

Step names are unique within a flow. Flows are read-only while running.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, field_validator

from models.schemas import Button, new_id


# ──────────────────────────────────────────────────────────────
#  Step Variants
# ──────────────────────────────────────────────────────────────

class MessageType(str, Enum):
    """How a step's message is delivered."""
    TEXT = "text"                 # Rendered plain text
    BUTTONS = "buttons"           # Reply buttons + call-to-action url buttons
    API_FETCH = "api_fetch"       # Message built from an external API response
    TRANSFER = "transfer"         # Hand the conversation to a human (terminal)


class InputType(str, Enum):
    """What the step waits for after sending its message."""
    TEXT = "text"
    BUTTON = "button"
    SELECT = "select"
    NONE = "none"                 # Don't wait, advance immediately


# ──────────────────────────────────────────────────────────────
#  Step Configs
# ──────────────────────────────────────────────────────────────

class ApiConfig(BaseModel):
    """
    External call made by an api_fetch step.

    url, body and header values are templates rendered against session data.
    response_mapping copies values out of the JSON response:
    {session_key: "json.path"}.
    """
    url: str = ""
    method: str = "GET"
    headers: dict[str, str] = {}
    body: str = ""
    response_path: str = ""                       # where the message text lives
    response_mapping: dict[str, str] = {}
    fallback_message: str = ""


class TransferConfig(BaseModel):
    team_id: Optional[str] = None                 # None = general queue
    notes: str = ""


class CompletionConfig(BaseModel):
    """Webhook fired when a flow completes."""
    url: str = ""
    method: str = "POST"
    headers: dict[str, str] = {}
    body: str = ""                                # template; empty = default payload


# ──────────────────────────────────────────────────────────────
#  Flow Step
# ──────────────────────────────────────────────────────────────

class FlowStep(BaseModel):
    name: str
    message: str = ""                             # template
    message_type: MessageType = MessageType.TEXT
    buttons: list[Button] = []

    # ── input ─────────────────────────────────────────
    input_type: InputType = InputType.TEXT
    validation_regex: str = ""
    validation_error: str = ""
    retry_on_invalid: bool = False
    max_retries: int = 0                          # 0 = engine default (3)
    store_as: str = ""

    # ── routing ───────────────────────────────────────
    next_step: str = ""
    conditional_next: dict[str, str] = {}
    skip_condition: str = ""

    # ── message_type specific ─────────────────────────
    api_config: Optional[ApiConfig] = None
    transfer_config: Optional[TransferConfig] = None

    @field_validator("message_type", mode="before")
    @classmethod
    def _message_type_alias(cls, v: Any) -> Any:
        if v in (None, "", "default"):
            return MessageType.TEXT
        return v

    @field_validator("input_type", mode="before")
    @classmethod
    def _input_type_default(cls, v: Any) -> Any:
        return v or InputType.TEXT

    @property
    def expects_choice(self) -> bool:
        return self.input_type in (InputType.BUTTON, InputType.SELECT)


# ──────────────────────────────────────────────────────────────
#  Flow
# ──────────────────────────────────────────────────────────────

class Flow(BaseModel):
    id: str = ""
    tenant_id: str = ""
    name: str = ""
    is_enabled: bool = True
    trigger_keywords: list[str] = []
    cancel_keywords: list[str] = []
    initial_message: str = ""
    completion_message: str = ""
    on_complete_action: str = ""                  # "webhook" | ""
    completion_config: Optional[CompletionConfig] = None
    steps: list[FlowStep] = []

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = new_id()

    @property
    def step_index(self) -> dict[str, FlowStep]:
        return {s.name: s for s in self.steps}

    def get_step(self, name: str) -> Optional[FlowStep]:
        if not name:
            return None
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def first_step(self) -> Optional[FlowStep]:
        return self.steps[0] if self.steps else None

    def next_in_sequence(self, name: str) -> Optional[FlowStep]:
        """The step after `name` in list order, or None at the end / when unknown."""
        for i, step in enumerate(self.steps):
            if step.name == name:
                return self.steps[i + 1] if i + 1 < len(self.steps) else None
        return None

    @property
    def fires_webhook(self) -> bool:
        return (
            self.on_complete_action == "webhook"
            and self.completion_config is not None
            and bool(self.completion_config.url)
        )
