"""Unread bookkeeping driven by clients viewing a chat."""

import logging
from typing import Optional

from chatsync.broadcast import BroadcastCoordinator
from chatsync.metrics import record_persistence_failure
from chatsync.schemas import Chat
from chatsync.storage import PersistenceError
from chatsync.store import ChatStore


logger = logging.getLogger("chatsync.unread")

CHAT_VIEWED = "chat-viewed"


class UnreadTracker:
    """
    Resets a chat's unread count when a client focuses it.

    Increments happen in ChatStore.upsert_message for inbound messages.
    """

    def __init__(self, store: ChatStore, coordinator: BroadcastCoordinator):
        self.store = store
        self.coordinator = coordinator

    async def mark_viewed(self, chat_id: str) -> Optional[Chat]:
        """
        Returns:
            The chat with unread_count 0, or None for an unknown chat
        """
        async with self.store.lock:
            try:
                chat = self.store.reset_unread(chat_id)
            except PersistenceError as e:
                logger.error(f"Persisting chat store failed, keeping in-memory state: {e}")
                record_persistence_failure()
                chat = e.chat

            if chat is None:
                logger.debug(f"markViewed for unknown chat ignored: chat_id={chat_id}")
                return None

            self.coordinator.publish_chat(chat, CHAT_VIEWED)

        logger.info(f"Chat viewed: chat_id={chat_id}")
        return chat
