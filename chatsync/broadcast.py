"""Fan-out of chat store changes to connected client sessions."""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from chatsync.metrics import (
    record_broadcast,
    record_session_resync,
    set_connected_sessions,
)
from chatsync.schemas import Chat
from chatsync.store import ChatStore


logger = logging.getLogger("chatsync.broadcast")


def snapshot_payload(chats: List[Chat]) -> Dict[str, Any]:
    return {"type": "chats", "chats": [chat.to_wire() for chat in chats]}


def chat_payload(chat: Chat, event: str) -> Dict[str, Any]:
    return {"type": "chat-updated", "event": event, "chat": chat.to_wire()}


class ClientSession:
    """
    One connected client with its own bounded outbound queue.

    ``send`` is the transport coroutine (WebSocket.send_json in the app).
    A writer task drains the queue so a slow client only ever delays itself.
    """

    def __init__(self, send: Callable[[Dict[str, Any]], Awaitable[None]], queue_size: int = 100):
        self.session_id = uuid.uuid4().hex
        self._send = send
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.resyncs = 0
        self._writer: Optional[asyncio.Task] = None

    def offer(self, payload: Dict[str, Any]) -> bool:
        """Queue a payload without waiting. False means the queue is full."""
        try:
            self.queue.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            return False

    def reset(self, payload: Dict[str, Any]) -> None:
        """Discard everything pending and queue a single payload in its place."""
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self.queue.put_nowait(payload)
        self.resyncs += 1

    async def run(self) -> None:
        while True:
            payload = await self.queue.get()
            await self._send(payload)

    def start(self, on_done: Callable[["ClientSession"], None]) -> None:
        self._writer = asyncio.create_task(self.run())
        self._writer.add_done_callback(lambda task: self._writer_finished(task, on_done))

    def _writer_finished(self, task: asyncio.Task, on_done: Callable[["ClientSession"], None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Session writer stopped: session_id={self.session_id}, error={task.exception()}")
        on_done(self)

    def stop(self) -> None:
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()


class BroadcastCoordinator:
    """
    Keeps the set of connected sessions and pushes store changes to them.

    New sessions get one full snapshot; afterwards they get one push per
    changed chat. Registration takes the store lock, so a snapshot can
    never be older than a push already queued for the same session.
    """

    def __init__(
        self,
        store: ChatStore,
        queue_size: int = 100,
        status_source: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.store = store
        self.queue_size = queue_size
        self.status_source = status_source
        self.sessions: Dict[str, ClientSession] = {}

    async def register(self, send: Callable[[Dict[str, Any]], Awaitable[None]]) -> ClientSession:
        """Add a session and queue its initial snapshot (plus provider status)."""
        session = ClientSession(send, queue_size=self.queue_size)
        async with self.store.lock:
            session.offer(snapshot_payload(self.store.list()))
            self.sessions[session.session_id] = session
        record_broadcast("snapshot")

        if self.status_source is not None:
            session.offer(self.status_source())
            record_broadcast("status")

        session.start(self.unregister)
        set_connected_sessions(len(self.sessions))
        logger.info(f"Session connected: session_id={session.session_id}, total_sessions={len(self.sessions)}")
        return session

    def unregister(self, session: ClientSession) -> None:
        """Drop a session. Sessions own no store state, so nothing else to undo."""
        if self.sessions.pop(session.session_id, None) is None:
            return
        session.stop()
        set_connected_sessions(len(self.sessions))
        logger.info(f"Session disconnected: session_id={session.session_id}, total_sessions={len(self.sessions)}")

    def publish_chat(self, chat: Chat, event: str) -> int:
        """
        Queue a chat update for every session. Call while holding the store lock.

        A session whose queue is full loses its backlog and is given a
        fresh snapshot instead, which already includes this change.

        Returns:
            Number of sessions the update was queued for
        """
        payload = chat_payload(chat, event)
        resync: Optional[Dict[str, Any]] = None
        queued = 0

        for session in list(self.sessions.values()):
            if session.offer(payload):
                queued += 1
                continue
            if resync is None:
                resync = snapshot_payload(self.store.list())
            session.reset(resync)
            record_session_resync()
            record_broadcast("snapshot")
            logger.warning(f"Session queue full, resyncing with snapshot: session_id={session.session_id}")

        record_broadcast("chat", queued)
        return queued

    def publish(self, payload: Dict[str, Any], kind: str = "status") -> int:
        """Best-effort push of a payload that carries no store state."""
        queued = 0
        for session in list(self.sessions.values()):
            if session.offer(payload):
                queued += 1
            else:
                logger.warning(f"Dropped {kind} push for session_id={session.session_id}")
        record_broadcast(kind, queued)
        return queued

    def close(self) -> None:
        for session in list(self.sessions.values()):
            self.unregister(session)
