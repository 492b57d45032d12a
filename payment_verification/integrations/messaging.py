"""Outbound customer messages over the messaging HTTP API."""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog

from payment_verification.config import Settings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    content: Any
    message_type: str = "text"
    retry_count: int = 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "OutboundMessage":
        return cls(
            to=payload["to"],
            content=payload["content"],
            message_type=payload.get("message_type", "text"),
            retry_count=int(payload.get("retry_count", 0)),
        )


class MessageSender:
    """
    Sends messages to customers.

    Without an API URL configured, messages are only logged.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url
        self.api_token = api_token
        self._client = client
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "MessageSender":
        return cls(api_url=settings.messaging_api_url, api_token=settings.messaging_api_token)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._client

    async def send(self, message: OutboundMessage) -> None:
        """
        Deliver a message.

        Raises:
            httpx.HTTPError: If the API call fails; the message-retry queue retries it
        """
        if not self.api_url:
            logger.info(
                "message_send_skipped_no_api",
                to=message.to,
                message_type=message.message_type,
            )
            return

        headers = {"Authorization": f"Bearer {self.api_token}"} if self.api_token else {}
        response = await self._get_client().post(
            self.api_url,
            headers=headers,
            json={
                "to": message.to,
                "type": message.message_type,
                "content": message.content,
            },
        )
        response.raise_for_status()
        logger.info("message_sent", to=message.to, message_type=message.message_type)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
