"""
Nalid24 - Message synchronization tests.

Covers sending, live delivery, monotonic receipts, retention and bulk
clearing against the in-process realtime store.
"""

import asyncio

import pytest

from nalid24.chat import chat_id
from nalid24.constants import UNDECRYPTABLE_PLACEHOLDER
from nalid24.errors import NotFoundError, RemoteWriteError
from nalid24.message import MessageStatus
from nalid24.realtime import SERVER_TIMESTAMP
from nalid24.sync import ExpiryScheduler, MessageSyncEngine, message_path, messages_path

from conftest import ALICE_ID, BOB_ID, CAROL_ID, HOUR_MS

CHAT = chat_id(ALICE_ID, BOB_ID)


@pytest.fixture
def alice_engine(server, clock):
    return MessageSyncEngine(server.connect_client("alice"), clock=clock)


@pytest.fixture
def bob_engine(server, clock):
    return MessageSyncEngine(server.connect_client("bob"), clock=clock)


def remote_status(server, message_id):
    return server.snapshot(message_path(CHAT, message_id)).child("status").val()


@pytest.mark.asyncio
class TestSend:
    """Publishing messages."""

    async def test_send_writes_ciphertext_only(self, server, alice_engine, clock):
        message = await alice_engine.send(ALICE_ID, BOB_ID, "hello bob")

        record = server.snapshot(message_path(CHAT, message.uid)).val()
        assert record["senderId"] == ALICE_ID
        assert record["status"] == "sent"
        assert record["createdAt"] == clock.now
        assert "hello bob" not in str(record)
        assert message.plaintext == "hello bob"
        assert message.status == MessageStatus.SENT

    async def test_send_offline_raises(self, alice_engine):
        alice_engine.store.drop_connection()

        with pytest.raises(RemoteWriteError):
            await alice_engine.send(ALICE_ID, BOB_ID, "lost")


@pytest.mark.asyncio
class TestSubscribe:
    """Live message stream."""

    async def test_receives_and_acknowledges_delivery(self, server, alice_engine, bob_engine):
        received = []
        bob_engine.subscribe(BOB_ID, ALICE_ID, received.append)

        message = await alice_engine.send(ALICE_ID, BOB_ID, "hi")
        await server.drain()

        assert [m.text for m in received] == ["hi"]
        assert received[0].status == MessageStatus.DELIVERED
        assert remote_status(server, message.uid) == "delivered"
        assert server.snapshot(message_path(CHAT, message.uid)).child("deliveredAt").exists()

    async def test_replays_existing_messages(self, server, alice_engine, bob_engine, clock):
        await alice_engine.send(ALICE_ID, BOB_ID, "first")
        clock.advance(1000)
        await alice_engine.send(ALICE_ID, BOB_ID, "second")

        received = []
        bob_engine.subscribe(BOB_ID, ALICE_ID, received.append)
        await server.drain()

        assert [m.text for m in received] == ["first", "second"]

    async def test_sender_does_not_acknowledge_own_message(self, server, alice_engine):
        received = []
        alice_engine.subscribe(ALICE_ID, BOB_ID, received.append)

        message = await alice_engine.send(ALICE_ID, BOB_ID, "mine")
        await server.drain()

        assert received[0].sender_id == ALICE_ID
        assert remote_status(server, message.uid) == "sent"

    async def test_undecryptable_record_does_not_break_stream(self, server, alice_engine, bob_engine):
        received = []
        bob_engine.subscribe(BOB_ID, ALICE_ID, received.append)

        await alice_engine.store.set(
            message_path(CHAT, "msg_0000000000001_bad"),
            {"ciphertext": "garbage!!", "senderId": ALICE_ID, "createdAt": SERVER_TIMESTAMP, "status": "sent"},
        )
        await alice_engine.send(ALICE_ID, BOB_ID, "readable")
        await server.drain()

        assert len(received) == 2
        assert received[0].undecryptable is True
        assert received[0].text == UNDECRYPTABLE_PLACEHOLDER
        assert received[1].text == "readable"

    async def test_expired_records_are_skipped(self, server, alice_engine, bob_engine, clock):
        await alice_engine.send(ALICE_ID, BOB_ID, "old")
        clock.advance(25 * HOUR_MS)

        received = []
        bob_engine.subscribe(BOB_ID, ALICE_ID, received.append)
        await server.drain()

        assert received == []

    async def test_callback_errors_are_isolated(self, server, alice_engine, bob_engine):
        received = []

        async def on_message(message):
            if message.text == "explode":
                raise RuntimeError("callback failure")
            received.append(message.text)

        bob_engine.subscribe(BOB_ID, ALICE_ID, on_message)
        await alice_engine.send(ALICE_ID, BOB_ID, "explode")
        await alice_engine.send(ALICE_ID, BOB_ID, "still here")
        await server.drain()

        assert received == ["still here"]

    async def test_unsubscribe_is_idempotent(self, server, alice_engine, bob_engine):
        received = []
        unsubscribe = bob_engine.subscribe(BOB_ID, ALICE_ID, received.append)

        unsubscribe()
        unsubscribe()
        await alice_engine.send(ALICE_ID, BOB_ID, "after")
        await server.drain()

        assert received == []


@pytest.mark.asyncio
class TestStatus:
    """Monotonic delivery and read receipts."""

    async def test_read_then_delivered_stays_read(self, server, alice_engine, bob_engine):
        message = await alice_engine.send(ALICE_ID, BOB_ID, "x")

        assert await bob_engine.mark_read(BOB_ID, ALICE_ID, message.uid) is True
        assert await bob_engine.mark_delivered(BOB_ID, ALICE_ID, message.uid) is False

        assert remote_status(server, message.uid) == "read"

    async def test_delivered_then_read(self, server, alice_engine, bob_engine):
        message = await alice_engine.send(ALICE_ID, BOB_ID, "x")

        assert await bob_engine.mark_delivered(BOB_ID, ALICE_ID, message.uid) is True
        assert await bob_engine.mark_read(BOB_ID, ALICE_ID, message.uid) is True

        record = server.snapshot(message_path(CHAT, message.uid)).val()
        assert record["status"] == "read"
        assert "readAt" in record and "deliveredAt" in record
        assert BOB_ID in record["readBy"]

    async def test_concurrent_receipts_converge_on_read(self, server, alice_engine, bob_engine):
        message = await alice_engine.send(ALICE_ID, BOB_ID, "x")

        await asyncio.gather(
            bob_engine.mark_read(BOB_ID, ALICE_ID, message.uid),
            bob_engine.mark_delivered(BOB_ID, ALICE_ID, message.uid),
        )

        assert remote_status(server, message.uid) == "read"

    async def test_read_sets_delivered_timestamp(self, server, alice_engine, bob_engine):
        message = await alice_engine.send(ALICE_ID, BOB_ID, "x")
        await bob_engine.mark_read(BOB_ID, ALICE_ID, message.uid)

        assert server.snapshot(message_path(CHAT, message.uid)).child("deliveredAt").exists()

    async def test_sender_cannot_advance_own_message(self, server, alice_engine):
        message = await alice_engine.send(ALICE_ID, BOB_ID, "x")

        assert await alice_engine.mark_read(ALICE_ID, BOB_ID, message.uid) is False
        assert remote_status(server, message.uid) == "sent"
        assert not server.snapshot(message_path(CHAT, message.uid)).child("readBy").exists()

    async def test_read_receipt_always_stamped(self, server, alice_engine, bob_engine, clock):
        message = await alice_engine.send(ALICE_ID, BOB_ID, "x")
        await bob_engine.mark_read(BOB_ID, ALICE_ID, message.uid)
        clock.advance(5000)

        assert await bob_engine.mark_read(BOB_ID, ALICE_ID, message.uid) is False
        assert server.snapshot(message_path(CHAT, message.uid)).child(f"readBy/{BOB_ID}").val() == clock.now

    async def test_missing_message_raises(self, bob_engine):
        with pytest.raises(NotFoundError):
            await bob_engine.mark_delivered(BOB_ID, ALICE_ID, "msg_missing")

        with pytest.raises(NotFoundError):
            await bob_engine.mark_read(BOB_ID, ALICE_ID, "msg_missing")

    async def test_mark_all_read(self, server, alice_engine, bob_engine, clock):
        first = await alice_engine.send(ALICE_ID, BOB_ID, "one")
        clock.advance(10)
        second = await alice_engine.send(ALICE_ID, BOB_ID, "two")
        own = await bob_engine.send(BOB_ID, ALICE_ID, "mine")
        await bob_engine.mark_read(BOB_ID, ALICE_ID, first.uid)

        assert await bob_engine.mark_all_read(BOB_ID, ALICE_ID) == 1

        assert remote_status(server, first.uid) == "read"
        assert remote_status(server, second.uid) == "read"
        assert remote_status(server, own.uid) == "sent"
        assert await bob_engine.mark_all_read(BOB_ID, ALICE_ID) == 0

    async def test_listen_to_status(self, server, alice_engine, bob_engine):
        message = await alice_engine.send(ALICE_ID, BOB_ID, "x")
        updates = []
        alice_engine.listen_to_status(ALICE_ID, BOB_ID, message.uid, lambda s, ts: updates.append((s, ts)))
        await server.drain()

        await bob_engine.mark_delivered(BOB_ID, ALICE_ID, message.uid)
        await bob_engine.mark_read(BOB_ID, ALICE_ID, message.uid)
        await server.drain()

        statuses = [status for status, _ in updates]
        assert statuses[0] == MessageStatus.SENT
        assert statuses[-1] == MessageStatus.READ
        assert MessageStatus.DELIVERED in statuses
        assert [s.rank for s in statuses] == sorted(s.rank for s in statuses)
        assert updates[-1][1] is not None


@pytest.mark.asyncio
class TestHistoryAndExpiry:
    """One-shot reads and the 24h retention window."""

    async def test_history_ordered_by_creation_time(self, alice_engine, bob_engine, clock):
        await alice_engine.send(ALICE_ID, BOB_ID, "one")
        clock.advance(1000)
        await bob_engine.send(BOB_ID, ALICE_ID, "two")
        clock.advance(1000)
        await alice_engine.send(ALICE_ID, BOB_ID, "three")

        history = await bob_engine.fetch_history(BOB_ID, ALICE_ID)
        assert [m.text for m in history] == ["one", "two", "three"]

        newest_first = await bob_engine.fetch_history(BOB_ID, ALICE_ID, descending=True)
        assert [m.text for m in newest_first] == ["three", "two", "one"]

    async def test_expire_removes_only_old_messages(self, server, alice_engine, clock):
        old = await alice_engine.send(ALICE_ID, BOB_ID, "25h old")
        clock.advance(24 * HOUR_MS)
        recent = await alice_engine.send(ALICE_ID, BOB_ID, "1h old")
        clock.advance(HOUR_MS)

        assert await alice_engine.expire(CHAT) == 1

        assert not server.snapshot(message_path(CHAT, old.uid)).exists()
        assert server.snapshot(message_path(CHAT, recent.uid)).exists()

    async def test_expire_boundary_is_inclusive(self, alice_engine, clock):
        await alice_engine.send(ALICE_ID, BOB_ID, "exactly 24h")
        clock.advance(24 * HOUR_MS)

        assert await alice_engine.expire(CHAT) == 1

    async def test_unscoped_expire_covers_all_chats(self, server, clock):
        alice = MessageSyncEngine(server.connect_client("alice"), clock=clock)
        await alice.send(ALICE_ID, BOB_ID, "to bob")
        await alice.send(ALICE_ID, CAROL_ID, "to carol")
        clock.advance(25 * HOUR_MS)

        assert await alice.expire() == 2
        assert not server.snapshot("chats").exists()

    async def test_expire_removes_status_only_stubs(self, server, alice_engine):
        await alice_engine.store.set(message_path(CHAT, "msg_ghost") + "/status", "delivered")

        assert await alice_engine.expire(CHAT) == 1
        assert not server.snapshot(messages_path(CHAT)).exists()

    async def test_history_deletes_expired_lazily(self, server, alice_engine, bob_engine, clock):
        old = await alice_engine.send(ALICE_ID, BOB_ID, "old")
        clock.advance(25 * HOUR_MS)
        await alice_engine.send(ALICE_ID, BOB_ID, "new")

        history = await bob_engine.fetch_history(BOB_ID, ALICE_ID)

        assert [m.text for m in history] == ["new"]
        assert not server.snapshot(message_path(CHAT, old.uid)).exists()

    async def test_history_survives_failed_lazy_delete(self, server, alice_engine, bob_engine, clock):
        old = await alice_engine.send(ALICE_ID, BOB_ID, "old")
        clock.advance(25 * HOUR_MS)
        server.fail_writes(message_path(CHAT, old.uid), times=1)

        assert await bob_engine.fetch_history(BOB_ID, ALICE_ID) == []
        assert server.snapshot(message_path(CHAT, old.uid)).exists()

    async def test_scheduler_run_once(self, server, alice_engine, clock):
        await alice_engine.send(ALICE_ID, BOB_ID, "old")
        clock.advance(25 * HOUR_MS)
        scheduler = ExpiryScheduler(alice_engine, chat_ids_provider=lambda: [CHAT])

        assert await scheduler.run_once() == 1

    async def test_scheduler_start_stop(self, server, alice_engine, clock):
        await alice_engine.send(ALICE_ID, BOB_ID, "old")
        clock.advance(25 * HOUR_MS)
        scheduler = ExpiryScheduler(alice_engine, interval=3600)

        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await scheduler.stop()

        assert not scheduler.running
        assert not server.snapshot("chats").exists()

    async def test_scheduler_survives_unexpected_errors(self, server, alice_engine, clock):
        await alice_engine.send(ALICE_ID, BOB_ID, "old")
        clock.advance(25 * HOUR_MS)
        calls = []

        def chat_ids():
            calls.append(len(calls))
            if len(calls) == 1:
                raise RuntimeError("contact list unreadable")
            return [CHAT]

        scheduler = ExpiryScheduler(alice_engine, interval=0, chat_ids_provider=chat_ids)
        scheduler.start()
        for _ in range(10):
            await asyncio.sleep(0)

        assert len(calls) >= 2
        assert scheduler.running
        await scheduler.stop()
        assert not server.snapshot("chats").exists()


@pytest.mark.asyncio
class TestClear:
    """Chat deletion."""

    async def test_clear_chat_is_idempotent(self, server, alice_engine):
        await alice_engine.send(ALICE_ID, BOB_ID, "x")

        await alice_engine.clear_chat(CHAT)
        await alice_engine.clear_chat(CHAT)

        assert not server.snapshot(f"chats/{CHAT}").exists()

    async def test_clear_all_chats_retries_failures(self, server, alice_engine, bob_engine):
        await alice_engine.send(ALICE_ID, BOB_ID, "to bob")
        await alice_engine.send(ALICE_ID, CAROL_ID, "to carol")
        server.fail_writes(f"chats/{CHAT}", times=1)

        report = await alice_engine.clear_all_chats(ALICE_ID, [BOB_ID, CAROL_ID])

        assert report.ok
        assert sorted(report.cleared) == sorted([CHAT, chat_id(ALICE_ID, CAROL_ID)])
        assert await bob_engine.fetch_history(BOB_ID, ALICE_ID) == []

    async def test_clear_all_chats_reports_persistent_failure(self, server, alice_engine):
        await alice_engine.send(ALICE_ID, BOB_ID, "to bob")
        await alice_engine.send(ALICE_ID, CAROL_ID, "to carol")
        server.fail_writes(f"chats/{CHAT}", times=10)

        report = await alice_engine.clear_all_chats(ALICE_ID, [BOB_ID, CAROL_ID])

        assert not report.ok
        assert list(report.failed) == [CHAT]
        assert report.cleared == [chat_id(ALICE_ID, CAROL_ID)]
        assert not server.snapshot(f"chats/{chat_id(ALICE_ID, CAROL_ID)}").exists()
