from __future__ import annotations

import pytest

from chirp.realtime import ChannelHub, ConnectionSession, conversation_channel

from app.models import ConversationMessageType, Message
from app.services import AccessDeniedError, NotFoundError, ValidationError, conversations
from app.schemas.messages import MessageRead
from tests.helpers import DummyWebSocket


@pytest.fixture()
def pair(make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    return alice, bob, make_conversation(alice, bob)


def _send(db, conversation, sender, content="hello", **kwargs):
    message, _ = conversations.send_message(
        db, conversation_id=conversation.id, sender_id=sender.id, content=content, **kwargs
    )
    return message


def test_send_rejects_non_members(db_session, pair, make_user):
    _, _, conversation = pair
    mallory = make_user("mallory")

    with pytest.raises(AccessDeniedError):
        _send(db_session, conversation, mallory)
    with pytest.raises(NotFoundError):
        conversations.send_message(db_session, conversation_id=999, sender_id=mallory.id, content="hi")
    assert db_session.query(Message).count() == 0


@pytest.mark.parametrize(
    ("content", "kwargs", "detail"),
    [
        ("   ", {}, "Message content is required"),
        ("boom", {"message_type": ConversationMessageType.SYSTEM}, "System messages cannot be sent by users"),
        (None, {"message_type": ConversationMessageType.IMAGE}, "Media messages require a media_url"),
        ("x" * 2001, {}, "Message exceeds 2000 characters"),
    ],
)
def test_send_validates_payload(db_session, pair, content, kwargs, detail):
    alice, _, conversation = pair

    with pytest.raises(ValidationError) as excinfo:
        _send(db_session, conversation, alice, content, **kwargs)
    assert excinfo.value.detail == detail


def test_reply_must_target_same_conversation(db_session, pair, make_user, make_conversation):
    alice, bob, conversation = pair
    carol = make_user("carol")
    other = make_conversation(alice, carol)
    foreign = _send(db_session, other, alice, "elsewhere")

    with pytest.raises(ValidationError):
        _send(db_session, conversation, bob, "reply", reply_to_id=foreign.id)

    local = _send(db_session, conversation, alice, "question")
    reply = _send(db_session, conversation, bob, "answer", reply_to_id=local.id)
    assert reply.reply_to_id == local.id


def test_send_stamps_conversation_activity(db_session, pair):
    alice, _, conversation = pair

    message = _send(db_session, conversation, alice)

    db_session.refresh(conversation)
    assert conversation.last_message_at == message.created_at


def test_edit_keeps_history_and_is_sender_only(db_session, pair):
    alice, bob, conversation = pair
    message = _send(db_session, conversation, alice, "draft")

    with pytest.raises(AccessDeniedError):
        conversations.edit_message(db_session, message_id=message.id, user_id=bob.id, content="hijack")
    with pytest.raises(ValidationError):
        conversations.edit_message(db_session, message_id=message.id, user_id=alice.id, content="draft")

    edited = conversations.edit_message(db_session, message_id=message.id, user_id=alice.id, content="final")

    assert edited.content == "final"
    assert [(entry.old_content, entry.new_content) for entry in edited.edit_history] == [("draft", "final")]
    assert MessageRead.from_message(edited).edited is True


def test_recall_hides_content_and_blocks_further_changes(db_session, pair):
    alice, bob, conversation = pair
    message = _send(db_session, conversation, alice, "secret")

    recalled = conversations.recall_message(db_session, message_id=message.id, user_id=alice.id)

    serialized = MessageRead.from_message(recalled)
    assert serialized.is_recalled is True
    assert serialized.content is None
    assert serialized.recalled_at is not None
    with pytest.raises(ValidationError):
        conversations.recall_message(db_session, message_id=message.id, user_id=alice.id)
    with pytest.raises(ValidationError):
        conversations.edit_message(db_session, message_id=message.id, user_id=alice.id, content="again")
    with pytest.raises(ValidationError):
        conversations.toggle_reaction(db_session, message_id=message.id, user_id=bob.id, emoji="👍")


def test_delete_is_soft_and_drops_pins(db_session, pair):
    alice, bob, conversation = pair
    message = _send(db_session, conversation, alice)
    conversations.toggle_pin(db_session, message_id=message.id, user_id=bob.id)

    conversations.delete_message(db_session, message_id=message.id, user_id=alice.id)

    assert db_session.get(Message, message.id).deleted_at is not None
    assert conversations.list_pins(db_session, conversation.id, alice.id) == []
    with pytest.raises(NotFoundError):
        conversations.get_message(db_session, message.id)
    assert conversations.fetch_history(db_session, conversation.id, alice.id).items == []


def test_reaction_cycle(db_session, pair):
    alice, bob, conversation = pair
    message = _send(db_session, conversation, alice)

    _, action = conversations.toggle_reaction(db_session, message_id=message.id, user_id=bob.id, emoji="👍")
    assert action == "added"
    updated, action = conversations.toggle_reaction(db_session, message_id=message.id, user_id=bob.id, emoji="❤️")
    assert action == "changed"
    assert [(item.emoji, item.user_ids) for item in MessageRead.from_message(updated).reactions] == [("❤️", [bob.id])]
    updated, action = conversations.toggle_reaction(db_session, message_id=message.id, user_id=bob.id, emoji="❤️")
    assert action == "removed"
    assert updated.reactions == []


def test_history_pages_backwards(db_session, pair):
    alice, bob, conversation = pair
    sent = [_send(db_session, conversation, alice if index % 2 else bob, f"m{index}") for index in range(5)]

    newest = conversations.fetch_history(db_session, conversation.id, alice.id, limit=2)
    assert [item.content for item in newest.items] == ["m3", "m4"]
    assert newest.has_more is True
    assert newest.next_before_id == sent[3].id

    older = conversations.fetch_history(
        db_session, conversation.id, alice.id, limit=2, before_id=newest.next_before_id
    )
    assert [item.content for item in older.items] == ["m1", "m2"]

    oldest = conversations.fetch_history(db_session, conversation.id, alice.id, limit=2, before_id=older.next_before_id)
    assert [item.content for item in oldest.items] == ["m0"]
    assert oldest.has_more is False
    assert oldest.next_before_id is None


def test_pin_toggles(db_session, pair):
    alice, bob, conversation = pair
    message = _send(db_session, conversation, alice)

    action, pin, _ = conversations.toggle_pin(db_session, message_id=message.id, user_id=bob.id)
    assert action == conversations.PIN_ACTION_PINNED
    assert pin.pinned_by_id == bob.id
    assert [item.message_id for item in conversations.list_pins(db_session, conversation.id, alice.id)] == [message.id]

    action, pin, _ = conversations.toggle_pin(db_session, message_id=message.id, user_id=alice.id)
    assert action == conversations.PIN_ACTION_UNPINNED
    assert pin is None
    assert conversations.list_pins(db_session, conversation.id, alice.id) == []


def test_concurrent_pin_reports_pinned(db_session, pair, monkeypatch):
    alice, bob, conversation = pair
    message = _send(db_session, conversation, alice)
    conversations.toggle_pin(db_session, message_id=message.id, user_id=alice.id)

    real_get_pin = conversations._get_pin
    calls = {"count": 0}

    def stale_get_pin(*args):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return real_get_pin(*args)

    monkeypatch.setattr(conversations, "_get_pin", stale_get_pin)
    action, pin, _ = conversations.toggle_pin(db_session, message_id=message.id, user_id=bob.id)

    assert action == conversations.PIN_ACTION_PINNED
    assert pin.pinned_by_id == alice.id
    assert len(conversations.list_pins(db_session, conversation.id, alice.id)) == 1


def test_peer_ids_span_all_conversations(db_session, pair, make_user, make_conversation):
    alice, bob, _ = pair
    carol = make_user("carol")
    make_conversation(alice, carol)

    assert conversations.conversation_peer_ids(db_session, alice.id) == {bob.id, carol.id}
    assert conversations.conversation_peer_ids(db_session, bob.id) == {alice.id}


@pytest.mark.anyio("asyncio")
async def test_update_broadcasts_reach_conversation_channel(db_session, pair):
    alice, bob, conversation = pair
    hub = ChannelHub()
    watcher = ConnectionSession(user_id=bob.id, websocket=DummyWebSocket())
    await hub.subscribe(watcher, conversation_channel(conversation.id))
    message = _send(db_session, conversation, alice)

    updated, action = conversations.toggle_reaction(db_session, message_id=message.id, user_id=bob.id, emoji="👍")
    await conversations.publish_reaction_update(hub, updated, bob.id, action)
    await conversations.publish_message_deleted(hub, conversation.id, message.id)

    (reaction,) = watcher.websocket.frames("chat:message_reaction_updated")
    assert reaction["action"] == "added"
    assert reaction["reactions"] == [{"emoji": "👍", "count": 1, "user_ids": [bob.id]}]
    assert watcher.websocket.frames("chat:message_deleted") == [
        {"conversation_id": conversation.id, "message_id": message.id}
    ]
