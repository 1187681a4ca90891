"""
Pytest configuration and shared fixtures.

Required settings get test defaults before any app import so that the
module-level app in chatsync.main can be built. Every fixture-built
component uses its own SQLite file under tmp_path.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.gettempdir()}/chatsync-test.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-secret")

# Clear settings cache before any app imports to ensure test env vars are used
from chatsync.config import get_settings
get_settings.cache_clear()

from chatsync.broadcast import BroadcastCoordinator
from chatsync.gateway import SendGateway
from chatsync.ingestion import IngestionPipeline
from chatsync.provider import ContactInfo, MessagingProvider, ProviderError, ProviderState, SendReceipt
from chatsync.schemas import Message, ProviderEvent
from chatsync.storage import ChatRepository, create_db_engine, init_db
from chatsync.store import ChatStore
from chatsync.unread import UnreadTracker


PEER = "79990001122@c.us"
BASE_TS = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def make_message(body="hello", from_me=False, offset_ms=0, peer=PEER, message_id=None) -> Message:
    """Canonical message to or from PEER, offset_ms after BASE_TS."""
    return Message(
        id=message_id,
        from_id="me" if from_me else peer,
        to_id=peer if from_me else "me",
        body=body,
        timestamp=BASE_TS + timedelta(milliseconds=offset_ms),
        from_me=from_me,
    )


def message_event(body="hello", offset_ms=0, from_me=False, peer=PEER, **overrides) -> ProviderEvent:
    payload = {
        "id": overrides.pop("id", None),
        "from": "me" if from_me else peer,
        "to": peer if from_me else "me",
        "body": body,
        "timestamp": (BASE_TS + timedelta(milliseconds=offset_ms)).isoformat(),
        "fromMe": from_me,
    }
    payload.update(overrides)
    return ProviderEvent(type="message", payload={k: v for k, v in payload.items() if v is not None})


async def settle(rounds: int = 20) -> None:
    """Let writer tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeSocket:
    """Stands in for WebSocket.send_json and records what it was sent."""

    def __init__(self, fail: bool = False, gate: asyncio.Event = None):
        self.received = []
        self.fail = fail
        self.gate = gate

    async def send_json(self, payload):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("socket closed")
        self.received.append(payload)

    def of_type(self, payload_type):
        return [p for p in self.received if p["type"] == payload_type]


class FakeProvider(MessagingProvider):
    def __init__(self):
        self.sent = []
        self.registered = True
        self.contact_name = None
        self.message_id = "prov-1"
        self.fail_send = False
        self.fail_lookup = False
        self.delay = 0.0

    async def send_message(self, chat_id, body):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_send:
            raise ProviderError("provider exploded")
        self.sent.append((chat_id, body))
        return SendReceipt(id=self.message_id)

    async def get_contact(self, chat_id):
        if self.fail_lookup:
            raise ProviderError("lookup exploded")
        return ContactInfo(registered=self.registered, name=self.contact_name)


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path}/chats.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(engine):
    return ChatRepository(engine)


@pytest.fixture
def store(repository):
    return ChatStore.load(repository)


@pytest.fixture
def provider_state():
    state = ProviderState()
    state.apply(ProviderEvent(type="ready"))
    return state


@pytest.fixture
async def coordinator(store):
    coordinator = BroadcastCoordinator(store, queue_size=10)
    yield coordinator
    coordinator.close()
    await settle()


@pytest.fixture
def pipeline(store, coordinator, provider_state):
    return IngestionPipeline(store, coordinator, provider_state=provider_state)


@pytest.fixture
def tracker(store, coordinator):
    return UnreadTracker(store, coordinator)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def gateway(provider, pipeline, provider_state):
    return SendGateway(provider, pipeline, provider_state, timeout=0.5)
