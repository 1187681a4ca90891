"""
Tests for the message ingestion pipeline.

Tests cover:
- Normalization of raw provider payloads and malformed payloads
- Deduplication inside the 1000ms window
- Unread bookkeeping across inbound/outbound sequences
- Exactly one broadcast per accepted message
- The inbound event loop surviving bad events
- Provider state events
"""

import asyncio

import pytest

from chatsync.ingestion import MalformedEventError, find_duplicate, normalize_message
from chatsync.schemas import ProviderEvent

from conftest import BASE_TS, PEER, FakeSocket, make_message, message_event, settle


class TestNormalizeMessage:

    def test_inbound_payload(self):
        message = normalize_message({
            "id": "ABC",
            "from": PEER,
            "to": "me@c.us",
            "body": "ping",
            "timestamp": 1736935200,
            "fromMe": False,
        })
        assert message.id == "ABC"
        assert message.from_id == PEER
        assert message.timestamp == BASE_TS
        assert message.from_me is False

    def test_group_sender_kept_only_for_groups(self):
        group = normalize_message({"from": "123-456@g.us", "body": "x", "isGroup": True, "sender": "Anna"})
        direct = normalize_message({"from": PEER, "body": "x", "sender": "Anna"})
        assert group.sender == "Anna"
        assert direct.sender is None

    def test_naive_timestamp_is_utc(self):
        message = normalize_message({"from": PEER, "body": "x", "timestamp": "2025-01-15T10:00:00"})
        assert message.timestamp == BASE_TS

    def test_missing_timestamp_uses_receipt_time(self):
        message = normalize_message({"from": PEER, "body": "x"})
        assert message.timestamp.tzinfo is not None

    @pytest.mark.parametrize("payload", [
        {"to": "me", "body": "no sender"},
        {"from": PEER},
        {"from": "me", "body": "own message without recipient", "fromMe": True},
        {"from": PEER, "body": "x", "timestamp": "not a time"},
        "just a string",
        None,
    ])
    def test_malformed_payloads(self, payload):
        with pytest.raises(MalformedEventError):
            normalize_message(payload)


class TestFindDuplicate:

    def test_match_inside_window(self):
        existing = [make_message("ping")]
        assert find_duplicate(existing, make_message("ping", offset_ms=999)) is existing[0]

    def test_window_is_exclusive(self):
        existing = [make_message("ping")]
        assert find_duplicate(existing, make_message("ping", offset_ms=1000)) is None

    def test_direction_must_match(self):
        existing = [make_message("ping", from_me=True)]
        assert find_duplicate(existing, make_message("ping")) is None

    def test_body_must_match(self):
        existing = [make_message("ping")]
        assert find_duplicate(existing, make_message("pong")) is None

    def test_scan_limit_only_checks_tail(self):
        existing = [make_message("ping")] + [make_message(f"m{i}", offset_ms=i) for i in range(5)]
        candidate = make_message("ping", offset_ms=10)
        assert find_duplicate(existing, candidate, scan_limit=3) is None
        assert find_duplicate(existing, candidate) is existing[0]


class TestAccept:

    async def test_duplicate_inbound_stored_and_broadcast_once(self, store, coordinator, pipeline):
        socket = FakeSocket()
        await coordinator.register(socket.send_json)

        await pipeline.ingest(message_event("ping").payload)
        await pipeline.ingest(message_event("ping", offset_ms=300).payload)
        await settle()

        chat = store.get(PEER)
        assert len(chat.messages) == 1
        assert chat.unread_count == 1
        assert len(socket.of_type("chat-updated")) == 1

    async def test_same_body_outside_window_is_new_message(self, store, pipeline):
        await pipeline.accept(make_message("ok"))
        await pipeline.accept(make_message("ok", offset_ms=1500))
        assert len(store.get(PEER).messages) == 2

    async def test_unread_counts_every_distinct_inbound(self, store, pipeline):
        for i in range(7):
            await pipeline.accept(make_message(f"m{i}", offset_ms=i))
        assert store.get(PEER).unread_count == 7

    async def test_unread_after_mark_viewed(self, store, pipeline, tracker):
        for i in range(4):
            await pipeline.accept(make_message(f"before{i}", offset_ms=i))
        await tracker.mark_viewed(PEER)
        for i in range(2):
            await pipeline.accept(make_message(f"after{i}", offset_ms=100 + i))
        assert store.get(PEER).unread_count == 2

    async def test_outbound_only_leaves_unread_zero(self, store, pipeline):
        for i in range(5):
            await pipeline.accept(make_message(f"out{i}", from_me=True, offset_ms=i))
        chat = store.get(PEER)
        assert chat.unread_count == 0
        assert len(chat.messages) == 5

    async def test_last_message_tracks_every_accept(self, pipeline):
        for i, from_me in enumerate([False, True, False, True]):
            chat = await pipeline.accept(make_message(f"m{i}", from_me=from_me, offset_ms=i))
            assert chat.last_message == chat.messages[-1]

    async def test_outbound_resolves_to_recipient(self, store, pipeline):
        await pipeline.ingest(message_event("sent elsewhere", from_me=True).payload)
        assert store.get(PEER).messages[0].from_me is True

    async def test_missing_from_changes_nothing(self, store, coordinator, pipeline):
        socket = FakeSocket()
        await coordinator.register(socket.send_json)

        result = await pipeline.ingest({"to": "me", "body": "orphan"})
        await settle()

        assert result is None
        assert len(store) == 0
        assert socket.of_type("chat-updated") == []

    async def test_event_names(self, coordinator, pipeline):
        socket = FakeSocket()
        await coordinator.register(socket.send_json)

        await pipeline.accept(make_message("in"))
        await pipeline.accept(make_message("out", from_me=True, offset_ms=10))
        await settle()

        events = [p["event"] for p in socket.of_type("chat-updated")]
        assert events == ["message-received", "message-sent"]

    async def test_concurrent_duplicates_admit_one(self, store, pipeline):
        await asyncio.gather(*[
            pipeline.accept(make_message("burst", offset_ms=i * 10)) for i in range(10)
        ])
        assert len(store.get(PEER).messages) == 1


class TestEventLoop:

    async def test_bad_event_does_not_block_following_events(self, store, pipeline):
        task = asyncio.create_task(pipeline.run())
        try:
            pipeline.submit(ProviderEvent(type="message", payload={"body": "no sender"}))
            pipeline.submit(ProviderEvent(type="message", payload="garbage"))
            pipeline.submit(message_event("good"))
            await asyncio.wait_for(pipeline.events.join(), timeout=1)
        finally:
            task.cancel()

        assert [m.body for m in store.get(PEER).messages] == ["good"]

    async def test_events_applied_in_submission_order(self, store, pipeline):
        task = asyncio.create_task(pipeline.run())
        try:
            for i in range(5):
                pipeline.submit(message_event(f"m{i}", offset_ms=i * 2000))
            await asyncio.wait_for(pipeline.events.join(), timeout=1)
        finally:
            task.cancel()

        assert [m.body for m in store.get(PEER).messages] == [f"m{i}" for i in range(5)]

    async def test_submit_reports_full_queue(self, store, coordinator):
        from chatsync.ingestion import IngestionPipeline

        small = IngestionPipeline(store, coordinator, queue_size=1)
        assert small.submit(message_event("a")) is True
        assert small.submit(message_event("b")) is False

    async def test_ready_and_disconnected_drive_provider_state(self, coordinator, pipeline):
        socket = FakeSocket()
        await coordinator.register(socket.send_json)

        await pipeline.handle_event(ProviderEvent(type="disconnected", payload={"reason": "LOGOUT"}))
        assert pipeline.provider_state.ready is False
        assert pipeline.provider_state.reason == "LOGOUT"

        await pipeline.handle_event(ProviderEvent(type="ready"))
        assert pipeline.provider_state.ready is True
        await settle()

        states = [p["state"] for p in socket.of_type("provider-status")]
        assert states == ["disconnected", "ready"]

    async def test_qr_event_keeps_code(self, pipeline):
        await pipeline.handle_event(ProviderEvent(type="qr", payload="2@abc"))
        status = pipeline.provider_state.status()
        assert status.state == "qr"
        assert status.qr_code == "2@abc"
        assert status.ready is False

    def test_auth_failure_with_underscore(self):
        event = ProviderEvent.model_validate({"type": "auth_failure", "payload": "bad session"})
        assert event.type == "auth-failure"


class TestPersistenceFailure:

    async def test_in_memory_state_stands_and_is_broadcast(self, store, coordinator, pipeline, monkeypatch):
        from chatsync.storage import PersistenceError

        def broken(chats):
            raise PersistenceError("disk full")

        monkeypatch.setattr(store._repository, "save_all", broken)
        socket = FakeSocket()
        await coordinator.register(socket.send_json)

        chat = await pipeline.accept(make_message("kept"))
        await settle()

        assert chat.unread_count == 1
        assert store.get(PEER).messages[-1].body == "kept"
        assert len(socket.of_type("chat-updated")) == 1
