"""
Nalid24 - Push notification relay tests.
"""

import pytest

from nalid24 import NotificationRelay, PushChannel
from nalid24.chat import chat_id
from nalid24.notification import PUSH_BODY, PUSH_FALLBACK_TITLE
from nalid24.sync import MessageSyncEngine, message_path

from conftest import ALICE_ID, BOB_ID

CHAT = chat_id(ALICE_ID, BOB_ID)


class RejectingChannel(PushChannel):
    async def send_push(self, handle, title, body, data):
        return False


@pytest.fixture
def engine(server, clock):
    return MessageSyncEngine(server.connect_client("alice"), clock=clock)


@pytest.fixture
def relay(server, clock):
    return NotificationRelay(server.connect_client("relay"), clock=clock)


async def publish_users(server, bob_handle="bob-device"):
    writer = server.connect_client("directory")
    await writer.set(f"users/{ALICE_ID}", {"id": ALICE_ID, "username": "alice"})
    if bob_handle:
        await writer.set(f"users/{BOB_ID}", {"id": BOB_ID, "username": "bob", "notificationHandle": bob_handle})


@pytest.mark.asyncio
class TestNotificationRelay:
    """New message to push."""

    async def test_push_reveals_no_content(self, server, engine, relay):
        await publish_users(server)
        message = await engine.send(ALICE_ID, BOB_ID, "top secret")

        assert await relay.handle_message_created(CHAT, message.uid) is True

        handle, title, body, data = relay.channel.sent[0]
        assert handle == "bob-device"
        assert title == "alice"
        assert body == PUSH_BODY
        assert data == {"chatId": CHAT, "messageId": message.uid, "senderId": ALICE_ID, "type": "message"}
        assert "top secret" not in str(relay.channel.sent)

        record = server.snapshot(message_path(CHAT, message.uid)).val()
        assert record["status"] == "delivered"
        assert "deliveredAt" in record

    async def test_unknown_sender_uses_fallback_title(self, server, engine, relay):
        writer = server.connect_client("directory")
        await writer.set(f"users/{BOB_ID}", {"id": BOB_ID, "username": "bob", "notificationHandle": "bob-device"})
        message = await engine.send(ALICE_ID, BOB_ID, "hi")

        assert await relay.handle_message_created(CHAT, message.uid) is True
        assert relay.channel.sent[0][1] == PUSH_FALLBACK_TITLE

    async def test_no_handle_skips_push(self, server, engine, relay):
        await publish_users(server, bob_handle=None)
        message = await engine.send(ALICE_ID, BOB_ID, "hi")

        assert await relay.handle_message_created(CHAT, message.uid) is False
        assert relay.channel.sent == []
        assert server.snapshot(message_path(CHAT, message.uid)).child("status").val() == "sent"

    async def test_rejected_push_leaves_status(self, server, engine, clock):
        await publish_users(server)
        relay = NotificationRelay(server.connect_client("relay"), RejectingChannel(), clock=clock)
        message = await engine.send(ALICE_ID, BOB_ID, "hi")

        assert await relay.handle_message_created(CHAT, message.uid) is False
        assert server.snapshot(message_path(CHAT, message.uid)).child("status").val() == "sent"

    async def test_missing_message_and_read_errors(self, server, relay):
        assert await relay.handle_message_created(CHAT, "msg_missing") is False

        server.fail_reads("chats", times=1)
        assert await relay.handle_message_created(CHAT, "msg_missing") is False

    async def test_push_never_regresses_read(self, server, engine, relay):
        await publish_users(server)
        message = await engine.send(ALICE_ID, BOB_ID, "hi")
        bob = MessageSyncEngine(server.connect_client("bob"), clock=engine.clock)
        await bob.mark_read(BOB_ID, ALICE_ID, message.uid)

        assert await relay.handle_message_created(CHAT, message.uid) is True
        assert server.snapshot(message_path(CHAT, message.uid)).child("status").val() == "read"

    async def test_watch_chat_notifies_new_messages_only(self, server, engine, relay, clock):
        await publish_users(server)
        await engine.send(ALICE_ID, BOB_ID, "before the watch")
        clock.advance(1000)

        relay.watch_chat(CHAT)
        await server.drain()
        assert relay.channel.sent == []

        message = await engine.send(ALICE_ID, BOB_ID, "after the watch")
        await server.drain()

        assert [data["messageId"] for _, _, _, data in relay.channel.sent] == [message.uid]

    async def test_watch_chat_is_reused_and_stoppable(self, server, engine, relay):
        await publish_users(server)
        first = relay.watch_chat(CHAT)
        assert relay.watch_chat(CHAT) is first
        assert relay.watched_chats() == [CHAT]

        relay.stop()
        await engine.send(ALICE_ID, BOB_ID, "unwatched")
        await server.drain()

        assert relay.watched_chats() == []
        assert relay.channel.sent == []
