"""
Backend Connector — external API calls made by api_fetch flow steps.

The connector renders the step's ApiConfig (url, body, header values are
templates over session data), calls the API, and turns the response into
an ApiResponse: the message to send, optional buttons, and values mapped
into session data through `response_mapping`.
"""
from __future__ import annotations

import abc
import json
from collections.abc import Mapping
from typing import Any, Optional

import httpx
import structlog

from models.schemas import ApiResponse, Button
from templates.engine import extract_json_path, extract_response_mapping, render
from templates.models import ApiConfig

logger = structlog.get_logger()


class ApiFetchError(Exception):
    """The external API could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ApiFetcher(abc.ABC):
    """Abstract base for api_fetch collaborators."""

    @abc.abstractmethod
    async def fetch(
        self,
        config: ApiConfig,
        session_data: Mapping[str, Any],
        message_template: str = "",
    ) -> ApiResponse:
        """
        Call the configured API. Raises ApiFetchError on failure.

        When message_template is non-empty it is rendered against the
        session data merged with the mapped response values and becomes
        the message; otherwise the API's own message is used.
        """
        ...


def normalize_api_buttons(raw: Any) -> list[Button]:
    """API buttons arrive as [{"id": ..., "value"|"title": ...}]; entries missing either are dropped."""
    buttons: list[Button] = []
    if not isinstance(raw, list):
        return buttons
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        btn_id = item.get("id")
        title = item.get("value") if isinstance(item.get("value"), str) else item.get("title")
        if isinstance(btn_id, str) and isinstance(title, str):
            buttons.append(Button(id=btn_id, title=title))
    return buttons


class HttpApiFetcher(ApiFetcher):
    """
    REST fetcher over httpx.
    GET by default, JSON in and out; a non-JSON body becomes the message verbatim.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.client = client
        self.timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    async def fetch(
        self,
        config: ApiConfig,
        session_data: Mapping[str, Any],
        message_template: str = "",
    ) -> ApiResponse:
        if not config.url:
            raise ApiFetchError("API URL is required")

        url = render(config.url, session_data)
        method = (config.method or "GET").upper()
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        for key, value in config.headers.items():
            headers[key] = render(str(value), session_data)
        content = render(config.body, session_data) if config.body else None

        client = await self._get_client()
        try:
            response = await client.request(method, url, content=content, headers=headers)
        except httpx.HTTPError as e:
            raise ApiFetchError(f"API request failed: {e}") from e

        if not response.is_success:
            raise ApiFetchError(
                f"API returned status {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError):
            return ApiResponse(message=response.text)

        if not isinstance(payload, Mapping):
            return ApiResponse(message=response.text)

        mapped = extract_response_mapping(payload, config.response_mapping)

        if message_template:
            message = render(message_template, {**dict(session_data), **mapped})
        elif isinstance(payload.get("message"), str):
            message = payload["message"]
        elif config.response_path:
            message = extract_json_path(payload, config.response_path)
        else:
            message = response.text

        logger.info("api_fetch_completed", url=url, method=method,
                    mapped_keys=list(mapped), has_buttons="buttons" in payload)
        return ApiResponse(
            message=message,
            buttons=normalize_api_buttons(payload.get("buttons")),
            mapped_data=mapped,
        )

    async def close(self):
        if self.client:
            await self.client.aclose()
