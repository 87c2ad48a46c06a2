"""
Outbox — the engine's only path to the MessageSender.

Delivery failures never reach the conversation logic: they are logged
with the contact and dropped. Retrying is the sender's business.

Reply buttons and url buttons can't share one WhatsApp message, so a
mixed list goes out as one reply-button message carrying the body plus
one call-to-action message per url button.
"""
from __future__ import annotations

from typing import Optional

import structlog

from channels.base import MessageSender
from context.session_manager import SessionManager
from models.schemas import Button, ButtonType, Contact, MessageDirection, Session, normalize_buttons

logger = structlog.get_logger()

MAX_BUTTONS = 10


def prepare_buttons(buttons: list[Button]) -> list[Button]:
    """Assign btn_<n> ids, drop buttons without a title, keep at most 10."""
    usable = [b for b in normalize_buttons(buttons) if b.title.strip()]
    return usable[:MAX_BUTTONS]


class Outbox:

    def __init__(self, sender: MessageSender, sessions: SessionManager):
        self.sender = sender
        self.sessions = sessions

    # ── Raw sends ─────────────────────────────────────

    async def send_text(self, contact: Contact, text: str) -> Optional[str]:
        if not text:
            return None
        try:
            return await self.sender.send_text(contact, text)
        except Exception as e:
            logger.error("send_text_failed", contact_id=contact.id, error=str(e))
            return None

    async def send_buttons(self, contact: Contact, body: str, buttons: list[Button]) -> Optional[str]:
        prepared = prepare_buttons(buttons)
        if not prepared:
            return await self.send_text(contact, body)
        try:
            return await self.sender.send_buttons(contact, body, prepared)
        except Exception as e:
            logger.error("send_buttons_failed", contact_id=contact.id, buttons=len(prepared), error=str(e))
            return None

    async def send_cta_url(self, contact: Contact, body: str, title: str, url: str) -> Optional[str]:
        try:
            return await self.sender.send_cta_url(contact, body, title, url)
        except Exception as e:
            logger.error("send_cta_url_failed", contact_id=contact.id, url=url, error=str(e))
            return None

    async def send_message(self, contact: Contact, body: str, buttons: Optional[list[Button]] = None) -> None:
        """Body plus any mix of reply / url buttons."""
        # ids follow the position in the full list, as validation sees it
        buttons = normalize_buttons(buttons or [])
        reply = [b for b in buttons if b.type == ButtonType.REPLY]
        links = [b for b in buttons if b.type == ButtonType.URL]

        body_sent = False
        if reply:
            await self.send_buttons(contact, body, reply)
            body_sent = True

        for link in links:
            if not link.url or not link.title:
                logger.warning("url_button_incomplete", contact_id=contact.id, title=link.title)
                continue
            await self.send_cta_url(contact, link.title if body_sent else body, link.title, link.url)
            body_sent = True

        if not body_sent:
            await self.send_text(contact, body)

    # ── Send + audit ──────────────────────────────────

    async def reply(
        self,
        session: Session,
        contact: Contact,
        body: str,
        step_name: str,
        buttons: Optional[list[Button]] = None,
    ) -> None:
        """Send to the contact and record the outgoing message on the session."""
        if not body and not buttons:
            return
        await self.send_message(contact, body, buttons)
        await self.sessions.log_message(session, MessageDirection.OUTGOING, body, step_name)
