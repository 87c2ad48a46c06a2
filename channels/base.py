"""
Channel base — outbound delivery interface and its error hierarchy.

The engine only ever talks to a MessageSender. Concrete senders own the
provider's wire format, authentication and limits.
"""
from __future__ import annotations

import abc

from models.schemas import Button, Contact


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class InvalidMessageError(ChannelError):
    """The message can't be expressed on this channel (too many buttons, missing url, ...)."""

    def __init__(self, message: str, channel: str = ""):
        super().__init__(message, channel, retryable=False)


# ══════════════════════════════════════════════════════════════
#  SENDER INTERFACE
# ══════════════════════════════════════════════════════════════

class MessageSender(abc.ABC):
    """
    Outbound delivery. Every method returns the provider's message id and
    raises ChannelError on failure.
    """

    channel_name: str = ""

    @abc.abstractmethod
    async def send_text(self, contact: Contact, text: str) -> str:
        ...

    @abc.abstractmethod
    async def send_buttons(self, contact: Contact, body: str, buttons: list[Button]) -> str:
        """Reply buttons (already normalized: ids set, blank titles dropped, at most 10)."""
        ...

    @abc.abstractmethod
    async def send_cta_url(self, contact: Contact, body: str, button_title: str, url: str) -> str:
        ...

    async def shutdown(self) -> None:
        """Release network resources."""
