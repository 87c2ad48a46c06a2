"""
Flow Completion Webhooks — side effect fired once when a flow completes.

Default payload:
    {flow_id, flow_name, session_id, phone_number, contact_id,
     contact_name, session_data, completed_at}

A flow can override the body with a template (rendered against session
data) and add templated headers. Delivery is retried here, never by the
engine.
"""
from __future__ import annotations

import abc
import json
from datetime import datetime
from typing import Any, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import Contact, Session, utcnow
from templates.engine import render
from templates.models import Flow

logger = structlog.get_logger()


class WebhookDeliveryError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class WebhookDispatcher(abc.ABC):

    @abc.abstractmethod
    async def dispatch_flow_completion(self, flow: Flow, session: Session, contact: Contact) -> bool:
        """Deliver the completion webhook. Returns True when the receiver accepted it."""
        ...


def build_completion_payload(
    flow: Flow,
    session: Session,
    contact: Contact,
    completed_at: Optional[datetime] = None,
) -> dict[str, Any]:
    completed_at = completed_at or utcnow()
    return {
        "flow_id": flow.id,
        "flow_name": flow.name,
        "session_id": session.id,
        "phone_number": session.phone_number,
        "contact_id": contact.id,
        "contact_name": contact.profile_name,
        "session_data": session.session_data.to_dict(),
        "completed_at": completed_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


class HttpWebhookDispatcher(WebhookDispatcher):
    """Posts the completion payload with httpx; transport errors and 5xx are retried with tenacity."""

    USER_AGENT = "flowbot-webhook/1.0"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        wait=None,
    ):
        self.client = client
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.wait = wait if wait is not None else wait_exponential(multiplier=1, max=10)

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    async def dispatch_flow_completion(self, flow: Flow, session: Session, contact: Contact) -> bool:
        config = flow.completion_config
        if config is None or not config.url:
            logger.error("webhook_url_not_configured", flow_id=flow.id)
            return False

        data = session.session_data
        url = render(config.url, data)
        method = (config.method or "POST").upper()

        if config.body:
            content = render(config.body, data)
        else:
            content = json.dumps(build_completion_payload(flow, session, contact), default=str)

        headers = {"Content-Type": "application/json", "User-Agent": self.USER_AGENT}
        for key, value in config.headers.items():
            headers[key] = render(str(value), data)

        try:
            status = await self._send(method, url, content, headers)
        except (httpx.HTTPError, WebhookDeliveryError) as e:
            logger.error("webhook_delivery_failed",
                         flow_id=flow.id, session_id=session.id, url=url, error=str(e))
            return False

        if 200 <= status < 300:
            logger.info("webhook_sent", flow_id=flow.id, session_id=session.id, status=status)
            return True

        logger.error("webhook_rejected", flow_id=flow.id, session_id=session.id, status=status)
        return False

    async def _send(self, method: str, url: str, content: str, headers: dict[str, str]) -> int:
        client = await self._get_client()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception_type((httpx.TransportError, WebhookDeliveryError)),
            reraise=True,
        ):
            with attempt:
                response = await client.request(method, url, content=content, headers=headers)
                if response.status_code >= 500:
                    raise WebhookDeliveryError(
                        f"webhook returned status {response.status_code}",
                        status_code=response.status_code,
                    )
                return response.status_code
        return 0

    async def close(self):
        if self.client:
            await self.client.aclose()
