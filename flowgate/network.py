"""Outbound HTTP used by action, search and output steps."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from .constants import DEFAULT_HTTP_TIMEOUT_SECONDS
from .errors import TransportError

logger = logging.getLogger(__name__)


class ActionResponse(BaseModel):
    status_code: int
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class NetworkActionExecutor(Protocol):
    """Performs one outbound request on behalf of a step."""

    async def invoke(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
    ) -> ActionResponse:
        """Send the request; raise :class:`TransportError` if it never completes."""


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


class HttpxActionExecutor(NetworkActionExecutor):
    """Default network executor backed by :class:`httpx.AsyncClient`."""

    def __init__(
        self,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def invoke(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
    ) -> ActionResponse:
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        content: Optional[str] = None
        if body is not None:
            content = body if isinstance(body, str) else json.dumps(body, default=str)

        logger.debug(f"HTTP {method} {url}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method.upper(), url, headers=request_headers, content=content
                )
        except httpx.TimeoutException as exc:
            raise TransportError(f"{method} {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc

        return ActionResponse(
            status_code=response.status_code,
            body=_decode(response),
            headers=dict(response.headers),
        )
