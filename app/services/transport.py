"""Outbound chat delivery."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from ..utils import mask_address

logger = logging.getLogger(__name__)


class ChatTransport(Protocol):
    """Anything able to deliver a text message to a chat address."""

    async def send(self, destination: str, text: str) -> bool: ...

    def is_connected(self) -> bool: ...


class GatewayChatTransport:
    """Deliver messages by POSTing them to an HTTP chat gateway.

    The gateway owns the messaging network session; this class only forwards
    ``{"to": ..., "text": ...}`` payloads and reports whether they were
    accepted. Failures are logged and reported as ``False``.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        gateway_url: str | None,
        token: str | None = None,
    ) -> None:
        self._client = http_client
        self._url = gateway_url.rstrip("/") if gateway_url else None
        self._token = token

    def is_connected(self) -> bool:
        return self._url is not None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def send(self, destination: str, text: str) -> bool:
        if self._url is None:
            logger.warning(
                "No chat gateway configured, dropping message to %s", mask_address(destination)
            )
            return False
        try:
            response = await self._client.post(
                f"{self._url}/messages",
                json={"to": destination, "text": text},
                headers=self._headers(),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Chat gateway rejected message to %s with status %s",
                mask_address(destination),
                exc.response.status_code,
            )
            return False
        except httpx.HTTPError as exc:
            logger.warning(
                "Failed to deliver message to %s: %s", mask_address(destination), exc
            )
            return False
        logger.debug("Delivered message to %s", mask_address(destination))
        return True
