"""
Messaging provider collaborator.

The provider (connection, QR pairing, authentication, the actual send
primitive) runs outside this service behind an HTTP bridge. This module
holds the narrow interface the core relies on, the connection state the
bridge reports, and an httpx client for the bridge.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from chatsync.schemas import ProviderEvent, ProviderStatus
from chatsync.utils import utc_now


logger = logging.getLogger("chatsync.provider")


class ProviderError(Exception):
    """The provider bridge failed or returned an unusable response."""


class SendReceipt(BaseModel):
    provider_message_id: Optional[str] = Field(None, alias="id")

    model_config = {"populate_by_name": True}


class ContactInfo(BaseModel):
    registered: bool = False
    name: Optional[str] = None


class MessagingProvider(ABC):
    """What the core needs from the provider."""

    @abstractmethod
    async def send_message(self, chat_id: str, body: str) -> SendReceipt:
        """Send a text message and return the provider-assigned id if any."""

    @abstractmethod
    async def get_contact(self, chat_id: str) -> ContactInfo:
        """Registration status and display name of a chat partner."""

    async def aclose(self) -> None:
        pass


class ProviderState:
    """
    Last connection state reported by the provider.

    Only 'ready' opens the send gate; every other state closes it.
    """

    def __init__(self):
        self.state = "initializing"
        self.qr_code: Optional[str] = None
        self.reason: Optional[str] = None
        self.updated_at = utc_now()

    @property
    def ready(self) -> bool:
        return self.state == "ready"

    def apply(self, event: ProviderEvent) -> bool:
        """
        Update from a non-message event.

        Returns:
            True if the reported state changed
        """
        previous = (self.state, self.qr_code, self.reason)

        self.state = event.type
        if event.type == "qr":
            self.qr_code = _payload_text(event.payload)
            self.reason = None
        elif event.type in ("disconnected", "auth-failure"):
            self.qr_code = None
            self.reason = _payload_text(event.payload)
        else:
            self.qr_code = None
            self.reason = None
        self.updated_at = utc_now()

        changed = previous != (self.state, self.qr_code, self.reason)
        if changed:
            logger.info(f"Provider state: {self.state}", extra={"reason": self.reason})
        return changed

    def status(self) -> ProviderStatus:
        return ProviderStatus(
            state=self.state,
            ready=self.ready,
            qr_code=self.qr_code,
            reason=self.reason,
            updated_at=self.updated_at,
        )

    def to_wire(self) -> Dict[str, Any]:
        return {"type": "provider-status", **self.status().model_dump(by_alias=True, mode="json")}


def _payload_text(payload: Any) -> Optional[str]:
    if payload is None:
        return None
    if isinstance(payload, dict):
        for key in ("qr", "reason", "message"):
            if payload.get(key) is not None:
                return str(payload[key])
        return None
    return str(payload)


class BridgeProvider(MessagingProvider):
    """
    httpx client for the provider bridge.

    Endpoints:
        POST /send-message   {"chatId", "body"} -> {"id"}
        GET  /contacts/{id}  -> {"registered", "name"}
    """

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client: Optional[httpx.AsyncClient] = None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"User-Agent": "chatsync/1.0"},
            )
        return self._http_client

    async def send_message(self, chat_id: str, body: str) -> SendReceipt:
        try:
            response = await self._get_http_client().post(
                "/send-message", json={"chatId": chat_id, "body": body}
            )
            response.raise_for_status()
            return SendReceipt.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"send failed: {e}") from e

    async def get_contact(self, chat_id: str) -> ContactInfo:
        try:
            response = await self._get_http_client().get(f"/contacts/{chat_id}")
            response.raise_for_status()
            return ContactInfo.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"contact lookup failed: {e}") from e

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
