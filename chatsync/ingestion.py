"""
Message ingestion pipeline.

Provider events arrive on one inbound queue and are applied by a single
consumer loop. Outbound sends confirmed by the gateway enter through
``accept`` directly. Either way every accepted message goes through the
same serialized step: dedup check, store upsert, write-through, broadcast.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Optional, Sequence

from pydantic import ValidationError

from chatsync.broadcast import BroadcastCoordinator
from chatsync.metrics import record_ingestion_outcome, record_persistence_failure, record_provider_event
from chatsync.provider import ProviderState
from chatsync.schemas import Chat, Message, ProviderEvent, RawMessagePayload
from chatsync.storage import PersistenceError
from chatsync.store import ChatStore
from chatsync.utils import resolve_chat_id, utc_now


logger = logging.getLogger("chatsync.ingestion")

MESSAGE_RECEIVED = "message-received"
MESSAGE_SENT = "message-sent"


class MalformedEventError(ValueError):
    """A provider event is missing fields required to place it in a chat."""


def normalize_message(payload: Any) -> Message:
    """
    Build a canonical Message from a raw 'message' event payload.

    A missing timestamp falls back to the time of receipt.

    Raises:
        MalformedEventError: payload is not an object, body is missing, or
            the identifier the message resolves to (``to`` for own
            messages, ``from`` otherwise) is missing
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("message payload must be an object")
    try:
        raw = RawMessagePayload.model_validate(payload)
    except ValidationError as e:
        raise MalformedEventError(f"invalid message payload: {e.error_count()} errors") from e

    if raw.body is None:
        raise MalformedEventError("message body is missing")
    if not resolve_chat_id(raw.from_me, raw.from_id, raw.to_id):
        missing = "to" if raw.from_me else "from"
        raise MalformedEventError(f"message '{missing}' is missing")

    return Message(
        id=raw.id,
        from_id=raw.from_id or "me",
        to_id=raw.to_id,
        body=raw.body,
        timestamp=raw.timestamp or utc_now(),
        from_me=raw.from_me,
        is_group=raw.is_group,
        sender=raw.sender if raw.is_group else None,
    )


def find_duplicate(
    messages: Sequence[Message],
    candidate: Message,
    window_ms: int = 1000,
    scan_limit: int = 0,
) -> Optional[Message]:
    """
    Return an existing message the candidate is a redelivery of.

    Same body, same direction, timestamps less than ``window_ms`` apart.
    With ``scan_limit`` set only the trailing messages are checked.
    """
    window = timedelta(milliseconds=window_ms)
    recent = messages[-scan_limit:] if scan_limit > 0 else messages
    for existing in reversed(recent):
        if (
            existing.body == candidate.body
            and existing.from_me == candidate.from_me
            and abs(existing.timestamp - candidate.timestamp) < window
        ):
            return existing
    return None


class IngestionPipeline:
    """Applies provider events and sent messages to the chat store exactly once."""

    def __init__(
        self,
        store: ChatStore,
        coordinator: BroadcastCoordinator,
        provider_state: Optional[ProviderState] = None,
        dedup_window_ms: int = 1000,
        dedup_scan_limit: int = 0,
        queue_size: int = 1000,
    ):
        self.store = store
        self.coordinator = coordinator
        self.provider_state = provider_state or ProviderState()
        self.dedup_window_ms = dedup_window_ms
        self.dedup_scan_limit = dedup_scan_limit
        self.events: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    # -------------------------------------------------------------------------
    # Inbound event channel
    # -------------------------------------------------------------------------

    def submit(self, event: ProviderEvent) -> bool:
        """Queue a provider event. False if the queue is full."""
        try:
            self.events.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.error(f"Provider event queue full, dropping {event.type} event")
            return False

    async def run(self) -> None:
        """Consume provider events one at a time until cancelled."""
        logger.info("Ingestion loop started")
        while True:
            event = await self.events.get()
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception(f"Unexpected error handling {event.type} event")
            finally:
                self.events.task_done()

    async def handle_event(self, event: ProviderEvent) -> Optional[Chat]:
        record_provider_event(event.type)
        if event.type == "message":
            return await self.ingest(event.payload)

        if self.provider_state.apply(event):
            self.coordinator.publish(self.provider_state.to_wire(), kind="status")
        return None

    async def ingest(self, payload: Any) -> Optional[Chat]:
        """Normalize and accept a raw message payload. Bad payloads are logged and dropped."""
        try:
            message = normalize_message(payload)
        except MalformedEventError as e:
            logger.warning(f"Dropping malformed message event: {e}")
            record_ingestion_outcome("malformed")
            return None
        return await self.accept(message)

    # -------------------------------------------------------------------------
    # Serialized accept path
    # -------------------------------------------------------------------------

    async def accept(self, message: Message, event: Optional[str] = None) -> Optional[Chat]:
        """
        Apply one canonical message.

        Returns:
            The updated chat, or None if the message was rejected or a duplicate
        """
        chat_id = resolve_chat_id(message.from_me, message.from_id, message.to_id)
        if not chat_id:
            logger.warning(f"Dropping message without a chat to resolve to: id={message.id}")
            record_ingestion_outcome("malformed")
            return None

        if event is None:
            event = MESSAGE_SENT if message.from_me else MESSAGE_RECEIVED

        async with self.store.lock:
            duplicate = find_duplicate(
                self.store.messages(chat_id),
                message,
                window_ms=self.dedup_window_ms,
                scan_limit=self.dedup_scan_limit,
            )
            if duplicate is not None:
                logger.debug(
                    f"Duplicate message dropped: chat_id={chat_id}, id={message.id}, existing_id={duplicate.id}"
                )
                record_ingestion_outcome("duplicate")
                return None

            try:
                chat = self.store.upsert_message(message, chat_id)
            except PersistenceError as e:
                logger.error(f"Persisting chat store failed, keeping in-memory state: {e}")
                record_persistence_failure()
                chat = e.chat

            self.coordinator.publish_chat(chat, event)

        record_ingestion_outcome("accepted")
        logger.info(
            f"Message accepted: chat_id={chat_id}, id={message.id}, "
            f"from_me={message.from_me}, unread={chat.unread_count}"
        )
        return chat
