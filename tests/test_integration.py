"""
Nalid24 - End-to-end tests.

Two MessengerClient instances (two devices) share one in-process realtime
store: onboarding, QR contact exchange, messaging with receipts, clearing
and account deletion.
"""

import pytest
import pytest_asyncio

from nalid24.chat import chat_id
from nalid24.client import MessengerClient
from nalid24.config import Config
from nalid24.errors import IdentityError, NotFoundError
from nalid24.message import MessageStatus
from nalid24.sync import messages_path


def make_client(server, temp_dir, clock, name):
    config = Config(temp_dir / f"{name}.toml")
    return MessengerClient(
        server.connect_client(name),
        config=config,
        data_dir=temp_dir / name,
        clock=clock,
    )


@pytest_asyncio.fixture
async def pair(server, temp_dir, clock):
    alice = make_client(server, temp_dir, clock, "alice")
    bob = make_client(server, temp_dir, clock, "bob")
    await alice.register("alice")
    await bob.register("bob")
    await alice.start()
    await bob.start()
    await server.drain()

    await alice.scan_qr(bob.invite_payload("bob-device"))
    await server.drain()

    yield alice, bob

    await alice.logout()
    await bob.logout()


@pytest.mark.asyncio
class TestMessenger:
    """Two devices talking through the shared store."""

    async def test_qr_exchange_is_bidirectional(self, server, pair):
        alice, bob = pair

        assert [c.uid for c in await alice.contacts.list_contacts()] == [bob.user.uid]
        assert [c.uid for c in await bob.contacts.list_contacts()] == [alice.user.uid]
        assert (await alice.contacts.get_contact(bob.user.uid)).notification_handle == "bob-device"
        assert server.snapshot(f"presence/{alice.user.uid}/status").val() == "online"

    async def test_read_receipt_reaches_sender(self, server, pair):
        alice, bob = pair
        alice_updates = []
        session = await alice.open_chat(bob.user.uid, alice_updates.append)

        sent = await session.send("hello bob")
        await server.drain()
        assert session.messages[0].status == MessageStatus.SENT

        bob_session = await bob.open_chat(alice.user.uid)
        await server.drain()

        assert [m.text for m in bob_session.messages] == ["hello bob"]
        assert session.messages[0].uid == sent.uid
        assert session.messages[0].status == MessageStatus.READ
        assert session.messages[0].read_at is not None
        assert alice_updates[-1][0].status == MessageStatus.READ

        record = server.snapshot(f"{messages_path(session.chat_id)}/{sent.uid}").val()
        assert record["status"] == "read"
        assert bob.user.uid in record["readBy"]

    async def test_live_messages_are_read_while_chat_open(self, server, pair, clock):
        alice, bob = pair
        bob_session = await bob.open_chat(alice.user.uid)
        alice_session = await alice.open_chat(bob.user.uid)

        await alice_session.send("one")
        clock.advance(1)
        await alice_session.send("two")
        await server.drain()

        assert [m.text for m in bob_session.messages] == ["one", "two"]
        assert all(m.status == MessageStatus.READ for m in alice_session.messages)

        cached = await bob.message_cache.get_messages(alice.user.uid)
        assert [m.plaintext for m in cached] == ["one", "two"]

    async def test_send_without_open_chat(self, server, pair):
        alice, bob = pair

        message = await alice.send(bob.user.uid, "direct")
        await server.drain()

        assert [m.uid for m in await alice.message_cache.get_messages(bob.user.uid)] == [message.uid]
        history = await bob.engine.fetch_history(bob.user.uid, alice.user.uid)
        assert [m.text for m in history] == ["direct"]

    async def test_open_chat_requires_contact(self, pair):
        alice, _ = pair
        with pytest.raises(NotFoundError):
            await alice.open_chat("99999999-dddd-4ddd-8ddd-dddddddddddd")

    async def test_open_chat_returns_open_session(self, pair):
        alice, bob = pair
        first = await alice.open_chat(bob.user.uid)
        assert await alice.open_chat(bob.user.uid) is first

        alice.close_chat(bob.user.uid)
        assert first.closed
        assert await alice.open_chat(bob.user.uid) is not first

    async def test_remove_contact_is_one_sided(self, server, pair):
        alice, bob = pair
        await alice.send(bob.user.uid, "bye")

        assert await alice.remove_contact(bob.user.uid) is True
        assert await alice.contacts.get_contact(bob.user.uid) is None
        assert await alice.message_cache.get_messages(bob.user.uid) == []
        assert await bob.contacts.get_contact(alice.user.uid) is not None

    async def test_clear_all_data(self, server, pair):
        alice, bob = pair
        await alice.send(bob.user.uid, "to be cleared")

        report = await alice.clear_all_data()

        assert report.ok
        assert not server.snapshot("chats").exists()
        assert await alice.contacts.list_contacts() == []
        assert await alice.identity.get_user() is not None

    async def test_delete_account(self, server, pair, temp_dir, clock):
        alice, bob = pair
        await bob.send(alice.user.uid, "last words")
        bob_id = bob.user.uid

        report = await bob.delete_account()

        assert report.ok
        assert not server.snapshot(f"users/{bob_id}").exists()
        assert not server.snapshot(f"presence/{bob_id}").exists()
        assert not server.snapshot(f"chats/{chat_id(bob_id, alice.user.uid)}").exists()
        assert await bob.identity.get_user() is None

        fresh = make_client(server, temp_dir, clock, "bob")
        with pytest.raises(IdentityError):
            await fresh.start()

    async def test_start_requires_registration(self, server, temp_dir, clock):
        client = make_client(server, temp_dir, clock, "nobody")

        with pytest.raises(IdentityError):
            await client.start()
        with pytest.raises(IdentityError):
            client.invite_payload()
