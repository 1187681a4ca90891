"""
Send gateway.

Validates outbound commands, calls the provider outside the store lock,
and feeds confirmed sends back through the ingestion pipeline. The store
is only touched after the provider reports success.
"""

import asyncio
import logging
import uuid

from chatsync.broadcast import BroadcastCoordinator
from chatsync.ingestion import MESSAGE_SENT, IngestionPipeline
from chatsync.metrics import record_persistence_failure, record_send_outcome
from chatsync.provider import ContactInfo, MessagingProvider, ProviderError, ProviderState
from chatsync.schemas import Chat, Message
from chatsync.storage import PersistenceError
from chatsync.utils import normalize_chat_id, utc_now


logger = logging.getLogger("chatsync.gateway")

CHAT_CREATED = "chat-created"


class SendError(Exception):
    """Base class for send-path failures reported to the caller."""

    retryable = False
    result = "failed"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidSendRequest(SendError):
    result = "invalid_request"


class ProviderNotReady(SendError):
    retryable = True
    result = "not_ready"


class RecipientNotRegistered(SendError):
    result = "not_registered"


class SendFailed(SendError):
    result = "failed"


class SendGateway:
    def __init__(
        self,
        provider: MessagingProvider,
        pipeline: IngestionPipeline,
        provider_state: ProviderState,
        timeout: float = 30.0,
    ):
        self.provider = provider
        self.pipeline = pipeline
        self.provider_state = provider_state
        self.timeout = timeout

    @property
    def store(self):
        return self.pipeline.store

    @property
    def coordinator(self) -> BroadcastCoordinator:
        return self.pipeline.coordinator

    def _require_ready(self) -> None:
        if not self.provider_state.ready:
            raise ProviderNotReady("not ready")

    def _chat_id(self, raw: str) -> str:
        try:
            return normalize_chat_id(raw)
        except ValueError as e:
            raise InvalidSendRequest("invalid request") from e

    async def _lookup_contact(self, chat_id: str) -> ContactInfo:
        try:
            contact = await asyncio.wait_for(self.provider.get_contact(chat_id), self.timeout)
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.error(f"Registration check failed: chat_id={chat_id}, error={e!r}")
            raise SendFailed("registration check failed") from e
        except Exception as e:
            logger.exception(f"Unexpected provider error during registration check: chat_id={chat_id}")
            raise SendFailed("registration check failed") from e
        if not contact.registered:
            raise RecipientNotRegistered("recipient is not registered")
        return contact

    async def send(self, chat_id: str, body: str) -> Chat:
        """
        Send a text message and record it in the chat.

        Raises:
            InvalidSendRequest: empty body or unusable chat id
            ProviderNotReady: provider connection is not ready; retry later
            RecipientNotRegistered: provider does not know the recipient
            SendFailed: the provider call failed or timed out
        """
        try:
            chat = await self._send(chat_id, body)
        except SendError as e:
            record_send_outcome(e.result)
            logger.warning(f"Send rejected: chat_id={chat_id}, result={e.result}, detail={e.detail}")
            raise
        record_send_outcome("sent")
        return chat

    async def _send(self, chat_id: str, body: str) -> Chat:
        if not body:
            raise InvalidSendRequest("invalid request")
        chat_id = self._chat_id(chat_id)
        self._require_ready()

        await self._lookup_contact(chat_id)

        try:
            receipt = await asyncio.wait_for(self.provider.send_message(chat_id, body), self.timeout)
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.error(f"Provider send failed: chat_id={chat_id}, error={e!r}")
            raise SendFailed("send failed") from e
        except Exception as e:
            logger.exception(f"Unexpected provider error during send: chat_id={chat_id}")
            raise SendFailed("send failed") from e

        message = Message(
            id=receipt.provider_message_id or uuid.uuid4().hex,
            from_id="me",
            to_id=chat_id,
            body=body,
            timestamp=utc_now(),
            from_me=True,
        )
        logger.info(f"Message sent: chat_id={chat_id}, id={message.id}")

        chat = await self.pipeline.accept(message, event=MESSAGE_SENT)
        if chat is None:
            # The provider's echo of this send was ingested first
            chat = self.store.get(chat_id)
        return chat

    async def start_chat(self, phone_number: str) -> Chat:
        """
        Open an empty chat with a registered contact.

        An existing chat is returned as is without a broadcast.
        """
        chat_id = self._chat_id(phone_number)
        self._require_ready()

        existing = self.store.get(chat_id)
        if existing is not None:
            return existing

        contact = await self._lookup_contact(chat_id)

        async with self.store.lock:
            created = chat_id not in self.store
            try:
                chat = self.store.create_chat(chat_id, display_name=contact.name)
            except PersistenceError as e:
                logger.error(f"Persisting chat store failed, keeping in-memory state: {e}")
                record_persistence_failure()
                chat = e.chat
            if created:
                self.coordinator.publish_chat(chat, CHAT_CREATED)
        return chat
