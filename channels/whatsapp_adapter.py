"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Outbound: text, reply buttons (≤3 → button message, 4–10 → list message),
  call-to-action url buttons
- Inbound: webhook payload → InboundMessage (text, button_reply, list_reply,
  media captions)
- Webhook verification (hub.verify_token challenge)
- Phone number normalization
"""
from __future__ import annotations

import re
from typing import Any, Optional

import httpx
import structlog

from channels.base import ChannelError, InvalidMessageError, MessageSender
from config.settings import WhatsAppConfig
from models.schemas import Button, Contact, InboundMessage

logger = structlog.get_logger()

MAX_REPLY_BUTTONS = 3
MAX_LIST_ROWS = 10
BUTTON_TITLE_LIMIT = 20
LIST_ROW_TITLE_LIMIT = 24
LIST_BUTTON_LABEL = "Select an option"


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone)


# ══════════════════════════════════════════════════════════════
#  SENDER
# ══════════════════════════════════════════════════════════════

class WhatsAppCloudSender(MessageSender):
    """MessageSender over the WhatsApp Cloud API /messages endpoint."""

    channel_name = "whatsapp"

    def __init__(self, config: WhatsAppConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client

    @property
    def messages_url(self) -> str:
        return f"{self.config.base_url}/{self.config.api_version}/{self.config.phone_number_id}/messages"

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self.client

    async def _post(self, contact: Contact, payload: dict[str, Any]) -> str:
        body = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": normalize_phone(contact.phone_number),
            **payload,
        }
        client = await self._get_client()
        try:
            response = await client.post(
                self.messages_url,
                json=body,
                headers={"Authorization": f"Bearer {self.config.access_token}"},
            )
        except httpx.HTTPError as e:
            raise ChannelError(f"request failed: {e}", self.channel_name, retryable=True) from e

        if response.status_code != 200:
            raise ChannelError(
                f"API returned status {response.status_code}: {self._error_message(response)}",
                self.channel_name,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        data = response.json()
        messages = data.get("messages") or [{}]
        msg_id = messages[0].get("id", "")
        logger.info("whatsapp_message_sent", to=body["to"], type=payload.get("type"), msg_id=msg_id)
        return msg_id

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
            if error.get("message"):
                return f"{error.get('code', '')} {error['message']}".strip()
        except ValueError:
            pass
        return response.text

    # ── Send ──────────────────────────────────────────────────

    async def send_text(self, contact: Contact, text: str) -> str:
        return await self._post(contact, {"type": "text", "text": {"body": text}})

    async def send_buttons(self, contact: Contact, body: str, buttons: list[Button]) -> str:
        if not buttons:
            raise InvalidMessageError("at least one button is required", self.channel_name)
        if len(buttons) > MAX_LIST_ROWS:
            raise InvalidMessageError(f"maximum {MAX_LIST_ROWS} buttons allowed", self.channel_name)

        if len(buttons) <= MAX_REPLY_BUTTONS:
            interactive = {
                "type": "button",
                "body": {"text": body},
                "action": {
                    "buttons": [
                        {"type": "reply", "reply": {"id": b.id, "title": b.title[:BUTTON_TITLE_LIMIT]}}
                        for b in buttons
                    ],
                },
            }
        else:
            interactive = {
                "type": "list",
                "body": {"text": body},
                "action": {
                    "button": LIST_BUTTON_LABEL,
                    "sections": [{
                        "title": "Options",
                        "rows": [{"id": b.id, "title": b.title[:LIST_ROW_TITLE_LIMIT]} for b in buttons],
                    }],
                },
            }
        return await self._post(contact, {"type": "interactive", "interactive": interactive})

    async def send_cta_url(self, contact: Contact, body: str, button_title: str, url: str) -> str:
        if not button_title or not url:
            raise InvalidMessageError("button text and URL are required", self.channel_name)
        interactive = {
            "type": "cta_url",
            "body": {"text": body},
            "action": {
                "name": "cta_url",
                "parameters": {"display_text": button_title[:BUTTON_TITLE_LIMIT], "url": url},
            },
        }
        return await self._post(contact, {"type": "interactive", "interactive": interactive})

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()


# ══════════════════════════════════════════════════════════════
#  INBOUND
# ══════════════════════════════════════════════════════════════

def verify_webhook(params: dict[str, Any], verify_token: str) -> Optional[str]:
    """
    Verify the WhatsApp webhook subscription.
    Returns the challenge string on success, None on failure.
    """
    mode = params.get("hub.mode", "")
    token = params.get("hub.verify_token", "")
    challenge = params.get("hub.challenge", "")

    if mode == "subscribe" and verify_token and token == verify_token:
        return challenge
    return None


def parse_webhook_payload(
    raw_payload: dict[str, Any],
    tenant_id: str,
    channel: str,
) -> list[InboundMessage]:
    """Turn a Cloud API webhook body into InboundMessages. Status updates yield nothing."""
    messages: list[InboundMessage] = []

    for entry in raw_payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}

            names = {
                c.get("wa_id", ""): (c.get("profile") or {}).get("name", "")
                for c in value.get("contacts") or []
            }

            for msg in value.get("messages") or []:
                parsed = _parse_message(msg, names, tenant_id, channel)
                if parsed is not None:
                    messages.append(parsed)

    return messages


def _parse_message(
    msg: dict[str, Any],
    names: dict[str, str],
    tenant_id: str,
    channel: str,
) -> Optional[InboundMessage]:
    sender = msg.get("from", "")
    if not sender:
        return None

    msg_type = msg.get("type", "text")
    text = ""
    button_id = ""

    if msg_type == "text":
        text = (msg.get("text") or {}).get("body", "")

    elif msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        itype = interactive.get("type", "")
        if itype in ("button_reply", "list_reply"):
            reply = interactive.get(itype) or {}
            text = reply.get("title", "")
            button_id = reply.get("id", "")
            msg_type = itype

    elif msg_type == "button":
        # Quick-reply button on a template message
        button = msg.get("button") or {}
        text = button.get("text", "")
        button_id = button.get("payload", "")

    elif msg_type in ("image", "video", "document"):
        text = (msg.get(msg_type) or {}).get("caption", "")

    phone = normalize_phone(sender)
    return InboundMessage(
        tenant_id=tenant_id,
        channel=channel,
        contact=Contact(id=phone, phone_number=phone, profile_name=names.get(sender, "")),
        message_id=msg.get("id", ""),
        message_type=msg_type,
        text=text,
        button_id=button_id,
    )
