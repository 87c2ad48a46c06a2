"""Outbound delivery and inbound parsing for messaging channels."""
from channels.base import ChannelError, InvalidMessageError, MessageSender
from channels.whatsapp_adapter import (
    WhatsAppCloudSender,
    normalize_phone,
    parse_webhook_payload,
    verify_webhook,
)

__all__ = [
    "ChannelError", "InvalidMessageError", "MessageSender",
    "WhatsAppCloudSender", "normalize_phone", "parse_webhook_payload", "verify_webhook",
]
