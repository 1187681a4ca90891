"""
SQLAlchemy ORM models for the durable mirror of the chat store.

This module contains database table definitions using SQLAlchemy.
For the in-memory domain records, see schemas.py.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Text

from chatsync.storage import Base


class ChatRecord(Base):
    """
    Table: chats
    Primary Key: chat_id (raw provider identifier)
    """
    __tablename__ = "chats"

    chat_id = Column(String, primary_key=True)
    display_name = Column(String, nullable=False)
    unread_count = Column(Integer, nullable=False, default=0)
    created_at = Column(String, nullable=False)  # ISO-8601 UTC
    updated_at = Column(String, nullable=False)  # ISO-8601 UTC


class MessageRecord(Base):
    """
    Table: messages
    One row per message; position preserves append order within a chat.
    """
    __tablename__ = "messages"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String, ForeignKey("chats.chat_id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    message_id = Column(String, nullable=True)
    from_id = Column(String, nullable=False)
    to_id = Column(String, nullable=True)
    body = Column(Text, nullable=False)
    ts = Column(String, nullable=False)  # ISO-8601 UTC
    from_me = Column(Boolean, nullable=False, default=False)
    is_group = Column(Boolean, nullable=False, default=False)
    sender = Column(String, nullable=True)
