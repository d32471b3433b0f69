from __future__ import annotations

import pytest

from chirp.realtime import (
    ChannelHub,
    ConnectionSession,
    PresenceRegistry,
    TypingManager,
    active_conversation_channel,
    conversation_channel,
    user_channel,
)

from app.models import DeliveryStatus, User
from app.services import AccessDeniedError, conversations, delivery
from app.services.presence import PresenceService
from tests.helpers import DummyWebSocket


@pytest.fixture()
def hub() -> ChannelHub:
    return ChannelHub()


@pytest.fixture()
def presence(hub) -> PresenceService:
    return PresenceService(hub, PresenceRegistry(), TypingManager(hub, ttl_seconds=5))


def _session(user: User) -> ConnectionSession:
    return ConnectionSession(user_id=user.id, websocket=DummyWebSocket())


def _send(db, conversation, sender, content="hello"):
    message, _ = conversations.send_message(
        db, conversation_id=conversation.id, sender_id=sender.id, content=content
    )
    return message


@pytest.mark.anyio("asyncio")
async def test_connect_marks_online_and_reports_delivery(db_session, presence, hub, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    first = _send(db_session, conversation, alice, "one")
    second = _send(db_session, conversation, alice, "two")
    alice_session = _session(alice)
    await presence.connect(db_session, alice_session)

    bob_session = _session(bob)
    changes = await presence.connect(db_session, bob_session)

    assert [change.message_id for change in changes] == [first.id, second.id]
    db_session.refresh(bob)
    assert bob.is_online is True
    assert bob.last_seen is not None
    assert user_channel(bob.id) in bob_session.channels
    assert conversation_channel(conversation.id) in bob_session.channels
    assert alice_session.websocket.frames("message:status_update") == [
        {
            "conversation_id": conversation.id,
            "message_ids": [first.id, second.id],
            "user_id": bob.id,
            "status": "DELIVERED",
        }
    ]
    statuses = alice_session.websocket.frames("chat:user_status")
    assert statuses[-1]["user_id"] == bob.id
    assert statuses[-1]["is_online"] is True
    assert bob_session.websocket.frames("chat:user_status") == []


@pytest.mark.anyio("asyncio")
async def test_offline_only_after_last_session(db_session, presence, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    make_conversation(alice, bob)
    phone = _session(bob)
    laptop = _session(bob)
    await presence.connect(db_session, phone)
    await presence.connect(db_session, laptop)

    assert await presence.disconnect(db_session, phone) is False
    db_session.refresh(bob)
    assert bob.is_online is True

    assert await presence.disconnect(db_session, laptop) is True
    db_session.refresh(bob)
    assert bob.is_online is False
    assert phone.channels == set()
    assert laptop.channels == set()


@pytest.mark.anyio("asyncio")
async def test_second_session_does_not_rebroadcast_online(db_session, presence, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    make_conversation(alice, bob)
    watcher = _session(alice)
    await presence.connect(db_session, watcher)

    await presence.connect(db_session, _session(bob))
    await presence.connect(db_session, _session(bob))

    assert len([s for s in watcher.websocket.frames("chat:user_status") if s["user_id"] == bob.id]) == 1


@pytest.mark.anyio("asyncio")
async def test_enter_conversation_requires_membership(db_session, presence, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    mallory = make_user("mallory")
    conversation = make_conversation(alice, bob)
    session = _session(mallory)

    with pytest.raises(AccessDeniedError):
        await presence.enter_conversation(db_session, session, conversation.id)
    assert session.active_conversation_id is None


@pytest.mark.anyio("asyncio")
async def test_enter_conversation_reads_and_replies(db_session, presence, hub, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    message = _send(db_session, conversation, alice)
    alice_session = _session(alice)
    await presence.connect(db_session, alice_session)
    bob_session = _session(bob)
    await presence.connect(db_session, bob_session)

    result = await presence.enter_conversation(db_session, bob_session, conversation.id)

    assert result.message_ids == [message.id]
    assert result.unread_count == 0
    assert bob_session.active_conversation_id == conversation.id
    assert presence.active_user_ids(conversation.id) == {bob.id}
    assert delivery.message_status(db_session, message.id, bob.id) == DeliveryStatus.READ
    joined = bob_session.websocket.frames("chat:conversation_joined")
    assert joined == [
        {"conversation_id": conversation.id, "typing": [], "message_ids": [message.id], "unread_count": 0}
    ]
    assert bob_session.websocket.frames("chat:unread_count_update") == [
        {"conversation_id": conversation.id, "delta": -1, "unread_count": 0}
    ]
    assert alice_session.websocket.frames("message:status_update")[-1]["status"] == "READ"


@pytest.mark.anyio("asyncio")
async def test_entering_another_conversation_leaves_the_previous_one(db_session, presence, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    carol = make_user("carol")
    first = make_conversation(alice, bob)
    second = make_conversation(alice, carol)
    session = _session(alice)
    await presence.connect(db_session, session)

    await presence.enter_conversation(db_session, session, first.id)
    await presence.enter_conversation(db_session, session, second.id)

    assert active_conversation_channel(first.id) not in session.channels
    assert conversation_channel(first.id) in session.channels
    assert presence.active_user_ids(first.id) == set()
    assert presence.active_user_ids(second.id) == {alice.id}


@pytest.mark.anyio("asyncio")
async def test_leave_keeps_conversation_subscription(db_session, presence, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    session = _session(bob)
    await presence.connect(db_session, session)
    await presence.enter_conversation(db_session, session, conversation.id)

    await presence.leave_conversation(session, conversation.id)

    assert session.active_conversation_id is None
    assert conversation_channel(conversation.id) in session.channels
    assert presence.active_user_ids(conversation.id) == set()


@pytest.mark.anyio("asyncio")
async def test_mark_seen_is_quiet_when_nothing_changes(db_session, presence, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    session = _session(bob)
    await presence.connect(db_session, session)

    result = await presence.mark_seen(db_session, session, conversation.id)

    assert result.message_ids == []
    assert session.websocket.frames("chat:unread_count_update") == []


@pytest.mark.anyio("asyncio")
async def test_snapshot_combines_online_flags_and_active_viewers(db_session, presence, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    carol = make_user("carol")
    conversation = make_conversation(alice, bob, carol)
    bob_session = _session(bob)
    await presence.connect(db_session, bob_session)
    await presence.connect(db_session, _session(carol))
    await presence.enter_conversation(db_session, bob_session, conversation.id)

    snapshot = presence.snapshot(db_session, conversation.id)

    assert snapshot.online_user_ids == frozenset({bob.id, carol.id})
    assert snapshot.active_user_ids == frozenset({bob.id})


@pytest.mark.anyio("asyncio")
async def test_last_disconnect_clears_typing(db_session, presence, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    alice_session = _session(alice)
    bob_session = _session(bob)
    await presence.connect(db_session, alice_session)
    await presence.connect(db_session, bob_session)
    await presence.typing.set_status(conversation.id, bob_session, bob.display_name, True)

    await presence.disconnect(db_session, bob_session)

    typing_frames = alice_session.websocket.frames("chat:user_typing")
    assert typing_frames[-1]["is_typing"] is False
    assert typing_frames[-1]["users"] == []
    assert await presence.typing.snapshot(conversation.id) == []
