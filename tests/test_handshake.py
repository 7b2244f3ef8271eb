"""
Nalid24 - Contact handshake tests.
"""

import pytest

from nalid24.contact import ContactManager
from nalid24.errors import ContactError, ErrorCode, RemoteWriteError
from nalid24.handshake import ContactHandshake, GlobalContactListener, request_path
from nalid24.identity import User
from nalid24.qr_code import QRPayload, build_qr_payload
from nalid24.storage import LocalStore

from conftest import ALICE_ID, BOB_ID, CAROL_ID


@pytest.fixture
def alice(server, temp_dir):
    return ContactHandshake(server.connect_client("alice"), ContactManager(LocalStore(temp_dir / "alice.json")))


@pytest.fixture
def bob(server, temp_dir):
    return ContactHandshake(server.connect_client("bob"), ContactManager(LocalStore(temp_dir / "bob.json")))


ALICE = User(ALICE_ID, "alice")


@pytest.mark.asyncio
class TestContactHandshake:
    """Bidirectional contact exchange."""

    async def test_scan_adds_contact_on_both_sides(self, server, alice, bob):
        accepted = []
        bob.listen_for_requests(BOB_ID, accepted.append)

        contact = await alice.add_contact_from_qr(ALICE, build_qr_payload(BOB_ID, "bob", "bob-token"), "alice-token")
        await server.drain()

        assert contact.uid == BOB_ID
        assert contact.notification_handle == "bob-token"
        assert (await alice.contacts.get_contact(BOB_ID)).username == "bob"

        back = await bob.contacts.get_contact(ALICE_ID)
        assert back is not None
        assert back.username == "alice"
        assert back.notification_handle == "alice-token"
        assert [c.uid for c in accepted] == [ALICE_ID]

        assert not server.snapshot(request_path(BOB_ID, ALICE_ID)).exists()
        assert server.snapshot(f"users/{ALICE_ID}/notificationHandle").val() == "alice-token"

    async def test_scan_is_idempotent(self, server, alice, bob):
        bob.listen_for_requests(BOB_ID)
        await alice.add_contact_from_qr(ALICE, build_qr_payload(BOB_ID, "bob", "token-1"))
        await server.drain()
        await alice.add_contact_from_qr(ALICE, build_qr_payload(BOB_ID, "bob", "token-2"))
        await server.drain()

        assert [c.uid for c in await alice.contacts.list_contacts()] == [BOB_ID]
        assert (await alice.contacts.get_contact(BOB_ID)).notification_handle == "token-2"
        assert [c.uid for c in await bob.contacts.list_contacts()] == [ALICE_ID]

    async def test_scanning_own_code_is_rejected(self, alice):
        with pytest.raises(ContactError) as exc_info:
            await alice.add_contact_from_qr(ALICE, build_qr_payload(ALICE_ID, "alice"))

        assert exc_info.value.code == ErrorCode.E406_SELF_CONTACT
        assert await alice.contacts.list_contacts() == []

    async def test_invalid_payload_is_rejected(self, alice):
        with pytest.raises(ContactError) as exc_info:
            await alice.add_contact_from_qr(ALICE, '{"username": "nobody"}')

        assert exc_info.value.code == ErrorCode.E407_INVALID_QR_PAYLOAD

    async def test_contact_kept_when_request_fails(self, server, alice):
        server.fail_writes(f"contactRequests/{BOB_ID}", times=1)

        with pytest.raises(RemoteWriteError):
            await alice.add_contact_from_qr(ALICE, QRPayload(BOB_ID, "bob"))

        assert await alice.contacts.get_contact(BOB_ID) is not None

    async def test_pending_requests_are_replayed(self, server, alice, bob):
        await alice.request_contact(ALICE_ID, "alice", None, BOB_ID)

        bob.listen_for_requests(BOB_ID)
        await server.drain()

        assert await bob.contacts.get_contact(ALICE_ID) is not None
        assert not server.snapshot("contactRequests").exists()

    async def test_invalid_requests_are_discarded(self, server, bob):
        writer = server.connect_client("writer")
        await writer.set(request_path(BOB_ID, "not_valid"), {"requesterUsername": "x"})
        await writer.set(request_path(BOB_ID, BOB_ID), {"requesterUsername": "me"})

        accepted = []
        bob.listen_for_requests(BOB_ID, accepted.append)
        await server.drain()

        assert accepted == []
        assert await bob.contacts.list_contacts() == []
        assert not server.snapshot("contactRequests").exists()

    async def test_request_without_username_gets_fallback(self, server, bob):
        writer = server.connect_client("writer")
        await writer.set(request_path(BOB_ID, CAROL_ID), {"sentAt": 1})

        bob.listen_for_requests(BOB_ID)
        await server.drain()

        assert (await bob.contacts.get_contact(CAROL_ID)).username == f"User_{CAROL_ID[:8]}"

    async def test_request_with_wrong_field_types(self, server, bob):
        writer = server.connect_client("writer")
        await writer.set(
            request_path(BOB_ID, ALICE_ID),
            {"requesterUsername": 12345, "requesterNotificationHandle": ["not", "a", "token"]},
        )
        await writer.set(request_path(BOB_ID, CAROL_ID), {"requesterUsername": "carol"})

        bob.listen_for_requests(BOB_ID)
        await server.drain()

        contacts = await bob.contacts.list_contacts()
        assert [c.username for c in contacts] == ["carol", f"User_{ALICE_ID[:8]}"]
        assert contacts[1].notification_handle is None
        assert not server.snapshot("contactRequests").exists()

    async def test_publish_keeps_existing_handle(self, alice):
        await alice.publish_user(ALICE_ID, "alice", "token-1")
        await alice.publish_user(ALICE_ID, "alice renamed")

        record = await alice.lookup_user(ALICE_ID)
        assert record["username"] == "alice renamed"
        assert record["notificationHandle"] == "token-1"
        assert await alice.lookup_user(CAROL_ID) is None


@pytest.mark.asyncio
class TestGlobalContactListener:
    """Process-lifetime request listener."""

    async def test_start_stop(self, server, alice, bob):
        listener = GlobalContactListener(bob)
        listener.start(BOB_ID)
        assert listener.active

        listener.stop()
        listener.stop()
        assert not listener.active

        await alice.request_contact(ALICE_ID, "alice", None, BOB_ID)
        await server.drain()
        assert await bob.contacts.get_contact(ALICE_ID) is None
        assert server.snapshot(request_path(BOB_ID, ALICE_ID)).exists()

    async def test_restart_replaces_listener(self, server, alice, bob):
        first, second = [], []
        listener = GlobalContactListener(bob)
        listener.start(BOB_ID, first.append)
        listener.start(BOB_ID, second.append)

        await alice.request_contact(ALICE_ID, "alice", None, BOB_ID)
        await server.drain()

        assert first == []
        assert [c.uid for c in second] == [ALICE_ID]
