import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Mapping

from sqlalchemy import create_engine, delete, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base

from chatsync.schemas import Chat, Message

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


class PersistenceError(Exception):
    """A write-through save of the chat store failed."""

    def __init__(self, message: str, chat: Chat = None):
        super().__init__(message)
        # Post-mutation chat, set by the store when the in-memory change stands
        self.chat = chat


def create_db_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine for the durable mirror.

    For SQLite files the parent directory is created if missing.
    check_same_thread=False is required for SQLite to work with FastAPI's async.
    """
    url = make_url(database_url)
    connect_args = {}
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(database_url, connect_args=connect_args, echo=False)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url}")
    try:
        # Import models to register them with Base.metadata
        from chatsync import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(engine: Engine) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            result = conn.execute(text(
                "SELECT COUNT(*) FROM sqlite_master "
                "WHERE type='table' AND name IN ('chats', 'messages')"
            )).scalar()
            if result != 2:
                logger.error("Database schema not applied: chat tables not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def _format_ts(value: datetime) -> str:
    return value.isoformat()


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


# =============================================================================
# Chat Repository
# =============================================================================

class ChatRepository:
    """
    Durable mirror of the chat store.

    The store is written as a whole snapshot on every mutation, so save_all
    replaces both tables inside one transaction. A failed save leaves the
    previous snapshot in place.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def load_all(self) -> Dict[str, Chat]:
        """Rebuild every chat, messages in append order, last_message derived."""
        from chatsync.models import ChatRecord, MessageRecord

        chats: Dict[str, Chat] = {}
        with self.SessionLocal() as db:
            chat_rows = db.execute(select(ChatRecord)).scalars().all()
            message_rows = db.execute(
                select(MessageRecord).order_by(MessageRecord.chat_id, MessageRecord.position)
            ).scalars().all()

            messages: Dict[str, list] = {}
            for row in message_rows:
                messages.setdefault(row.chat_id, []).append(Message(
                    id=row.message_id,
                    from_id=row.from_id,
                    to_id=row.to_id,
                    body=row.body,
                    timestamp=_parse_ts(row.ts),
                    from_me=row.from_me,
                    is_group=row.is_group,
                    sender=row.sender,
                ))

            for row in chat_rows:
                chat_messages = messages.get(row.chat_id, [])
                chats[row.chat_id] = Chat(
                    chat_id=row.chat_id,
                    display_name=row.display_name,
                    messages=chat_messages,
                    last_message=chat_messages[-1] if chat_messages else None,
                    unread_count=row.unread_count,
                    created_at=_parse_ts(row.created_at),
                    updated_at=_parse_ts(row.updated_at),
                )

        logger.info(f"Loaded {len(chats)} chats from durable storage")
        return chats

    def save_all(self, chats: Mapping[str, Chat]) -> None:
        """
        Replace the stored snapshot with the given chats.

        Raises:
            PersistenceError: if the write fails; the transaction is rolled back
        """
        from chatsync.models import ChatRecord, MessageRecord

        db = self.SessionLocal()
        try:
            db.execute(delete(MessageRecord))
            db.execute(delete(ChatRecord))
            for chat in chats.values():
                db.add(ChatRecord(
                    chat_id=chat.chat_id,
                    display_name=chat.display_name,
                    unread_count=chat.unread_count,
                    created_at=_format_ts(chat.created_at),
                    updated_at=_format_ts(chat.updated_at),
                ))
                db.add_all([
                    MessageRecord(
                        chat_id=chat.chat_id,
                        position=position,
                        message_id=message.id,
                        from_id=message.from_id,
                        to_id=message.to_id,
                        body=message.body,
                        ts=_format_ts(message.timestamp),
                        from_me=message.from_me,
                        is_group=message.is_group,
                        sender=message.sender,
                    )
                    for position, message in enumerate(chat.messages)
                ])
            db.commit()
            logger.debug(f"Saved snapshot of {len(chats)} chats")
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to save chats: {e}") from e
        finally:
            db.close()
