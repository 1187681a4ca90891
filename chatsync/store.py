"""In-memory chat store with write-through persistence."""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from chatsync.schemas import Chat, Message
from chatsync.storage import ChatRepository, PersistenceError
from chatsync.utils import display_name_for, utc_now


logger = logging.getLogger("chatsync.store")


class ChatStore:
    """
    Keyed collection of chats owned by the server process.

    In-memory state is the source of truth. Every mutating call writes the
    whole store through to the repository; when that write fails the
    mutation is kept and PersistenceError is raised with the updated chat
    attached, and the next mutation retries a full write.

    Callers serialize mutations by holding ``lock`` around
    check-then-mutate sequences. Readers get copies and never see a chat
    change underneath them.
    """

    def __init__(self, repository: Optional[ChatRepository] = None, chats: Optional[Dict[str, Chat]] = None):
        self._repository = repository
        self._chats: Dict[str, Chat] = dict(chats or {})
        self.lock = asyncio.Lock()

    @classmethod
    def load(cls, repository: ChatRepository) -> "ChatStore":
        return cls(repository=repository, chats=repository.load_all())

    def __len__(self) -> int:
        return len(self._chats)

    def __contains__(self, chat_id: str) -> bool:
        return chat_id in self._chats

    def get(self, chat_id: str) -> Optional[Chat]:
        chat = self._chats.get(chat_id)
        return chat.snapshot() if chat is not None else None

    def list(self) -> List[Chat]:
        return [chat.snapshot() for chat in self._chats.values()]

    def messages(self, chat_id: str) -> Sequence[Message]:
        """Read-only view of a chat's messages, empty for an unknown chat."""
        chat = self._chats.get(chat_id)
        return tuple(chat.messages) if chat is not None else ()

    def _new_chat(self, chat_id: str, display_name: Optional[str] = None) -> Chat:
        now = utc_now()
        return Chat(
            chat_id=chat_id,
            display_name=display_name or display_name_for(chat_id),
            created_at=now,
            updated_at=now,
        )

    def upsert_message(self, message: Message, chat_id: str) -> Chat:
        """
        Append a message to its chat, creating the chat on first reference.

        Inbound messages (from_me False) bump the unread count.

        Returns:
            The post-mutation chat.

        Raises:
            PersistenceError: write-through failed; ``exc.chat`` holds the updated chat
        """
        chat = self._chats.get(chat_id)
        if chat is None:
            chat = self._new_chat(chat_id)
            self._chats[chat_id] = chat
            logger.info(f"Chat created: chat_id={chat_id}")

        chat.messages.append(message)
        chat.last_message = message
        chat.updated_at = utc_now()
        if not message.from_me:
            chat.unread_count += 1

        return self._flush(chat)

    def create_chat(self, chat_id: str, display_name: Optional[str] = None) -> Chat:
        """
        Create an empty chat. An existing chat is returned untouched.

        Raises:
            PersistenceError: write-through failed; ``exc.chat`` holds the new chat
        """
        chat = self._chats.get(chat_id)
        if chat is not None:
            return chat.snapshot()

        chat = self._new_chat(chat_id, display_name)
        self._chats[chat_id] = chat
        logger.info(f"Chat created: chat_id={chat_id}")
        return self._flush(chat)

    def reset_unread(self, chat_id: str) -> Optional[Chat]:
        """
        Set the unread count of a chat to zero.

        Unknown chats are ignored and None is returned. A chat already at
        zero is returned without a write.

        Raises:
            PersistenceError: write-through failed; ``exc.chat`` holds the updated chat
        """
        chat = self._chats.get(chat_id)
        if chat is None:
            return None
        if chat.unread_count == 0:
            return chat.snapshot()

        chat.unread_count = 0
        return self._flush(chat)

    def _flush(self, chat: Chat) -> Chat:
        result = chat.snapshot()
        if self._repository is None:
            return result
        try:
            self._repository.save_all(self._chats)
        except PersistenceError as e:
            e.chat = result
            raise
        return result
