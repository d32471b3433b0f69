from __future__ import annotations

import pytest
from sqlalchemy import select

from chirp.realtime import (
    ChannelHub,
    ConnectionSession,
    PresenceRegistry,
    TypingManager,
    conversation_channel,
)

from app.models import ConversationMember, ConversationMessageType, MemberRole, Message, MessageState
from app.services import AccessDeniedError, NotFoundError, ValidationError, conversations
from app.services.presence import PresenceService
from tests.helpers import DummyWebSocket


@pytest.fixture()
def group(make_user, make_conversation):
    alice = make_user("alice", full_name="Alice Pham")
    bob = make_user("bob")
    carol = make_user("carol")
    return alice, bob, carol, make_conversation(alice, bob, carol, title="Team")


@pytest.fixture()
def presence() -> PresenceService:
    hub = ChannelHub()
    return PresenceService(hub, PresenceRegistry(), TypingManager(hub, ttl_seconds=5))


def _states_for(db, message_id: int) -> set[int]:
    stmt = select(MessageState.user_id).where(MessageState.message_id == message_id)
    return set(db.execute(stmt).scalars())


def test_removed_member_gets_no_state_for_later_messages(db_session, group):
    alice, bob, carol, conversation = group

    change = conversations.remove_member(
        db_session, conversation_id=conversation.id, user_id=alice.id, member_id=bob.id
    )
    message, plan = conversations.send_message(
        db_session, conversation_id=conversation.id, sender_id=alice.id, content="after"
    )

    assert change.removed_ids == [bob.id]
    assert set(plan.member_ids) == {alice.id, carol.id}
    assert _states_for(db_session, message.id) == {carol.id}
    assert conversations.current_member_ids(db_session, conversation.id) == [alice.id, carol.id]
    with pytest.raises(AccessDeniedError):
        conversations.send_message(db_session, conversation_id=conversation.id, sender_id=bob.id, content="hi")


def test_membership_changes_post_sender_less_system_messages(db_session, group):
    alice, bob, _, conversation = group

    change = conversations.remove_member(
        db_session, conversation_id=conversation.id, user_id=alice.id, member_id=bob.id
    )

    (system_message,) = change.system_messages
    assert system_message.sender_id is None
    assert system_message.type == ConversationMessageType.SYSTEM
    assert system_message.content == "bob đã bị Alice Pham xóa khỏi nhóm"
    assert _states_for(db_session, system_message.id) == set()
    db_session.refresh(conversation)
    assert conversation.last_message_at is not None


def test_only_admins_manage_members(db_session, group, make_user):
    alice, bob, carol, conversation = group
    dave = make_user("dave")

    with pytest.raises(AccessDeniedError):
        conversations.remove_member(db_session, conversation_id=conversation.id, user_id=bob.id, member_id=carol.id)
    with pytest.raises(AccessDeniedError):
        conversations.add_members(db_session, conversation_id=conversation.id, user_id=bob.id, member_ids=[dave.id])
    with pytest.raises(ValidationError):
        conversations.remove_member(
            db_session, conversation_id=conversation.id, user_id=alice.id, member_id=alice.id
        )
    with pytest.raises(NotFoundError):
        conversations.remove_member(db_session, conversation_id=conversation.id, user_id=alice.id, member_id=dave.id)
    assert db_session.query(Message).count() == 0


def test_add_members_rejoins_and_skips_current_members(db_session, group, make_user):
    alice, bob, carol, conversation = group
    dave = make_user("dave")
    conversations.leave_group(db_session, conversation_id=conversation.id, user_id=carol.id)

    change = conversations.add_members(
        db_session, conversation_id=conversation.id, user_id=alice.id, member_ids=[bob.id, carol.id, dave.id]
    )

    assert change.added_ids == [carol.id, dave.id]
    assert change.skipped_ids == [bob.id]
    assert [message.content for message in change.system_messages] == [
        "Alice Pham đã thêm carol vào nhóm",
        "Alice Pham đã thêm dave vào nhóm",
    ]
    rejoined = conversations.get_membership(db_session, conversation.id, carol.id)
    assert rejoined is not None and rejoined.role == MemberRole.MEMBER
    assert db_session.query(ConversationMember).filter_by(conversation_id=conversation.id).count() == 4


def test_add_members_rejects_unknown_users_and_no_op_requests(db_session, group):
    alice, bob, _, conversation = group

    with pytest.raises(NotFoundError):
        conversations.add_members(db_session, conversation_id=conversation.id, user_id=alice.id, member_ids=[bob.id, 999])
    with pytest.raises(ValidationError) as excinfo:
        conversations.add_members(db_session, conversation_id=conversation.id, user_id=alice.id, member_ids=[bob.id])
    assert excinfo.value.detail == "All selected users are already members"


def test_leave_group_requires_a_group(db_session, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    direct = make_conversation(alice, bob)

    with pytest.raises(ValidationError):
        conversations.leave_group(db_session, conversation_id=direct.id, user_id=bob.id)
    assert conversations.current_member_ids(db_session, direct.id) == [alice.id, bob.id]


@pytest.mark.anyio("asyncio")
async def test_removed_session_sees_the_notice_then_leaves_the_channel(db_session, presence, group):
    alice, bob, carol, conversation = group
    sessions = {}
    for user in (alice, bob, carol):
        sessions[user.id] = ConnectionSession(user_id=user.id, websocket=DummyWebSocket())
        await presence.connect(db_session, sessions[user.id])
    bob_session = sessions[bob.id]
    await presence.enter_conversation(db_session, bob_session, conversation.id)

    change = conversations.remove_member(
        db_session, conversation_id=conversation.id, user_id=alice.id, member_id=bob.id
    )
    await presence.apply_membership_change(db_session, change)

    (notice,) = bob_session.websocket.frames("chat:new_message")
    assert notice["message"]["content"] == "bob đã bị Alice Pham xóa khỏi nhóm"
    assert conversation_channel(conversation.id) not in bob_session.channels
    assert bob_session.active_conversation_id is None
    assert presence.active_user_ids(conversation.id) == set()
    assert bob_session.websocket.frames("chat:conversation_updated")[-1] == {
        "conversation_id": conversation.id,
        "action": "delete",
    }
    carol_update = sessions[carol.id].websocket.frames("chat:conversation_updated")[-1]
    assert carol_update["removed_ids"] == [bob.id]
    assert carol_update["last_message"]["id"] == notice["message"]["id"]


@pytest.mark.anyio("asyncio")
async def test_added_session_joins_the_channel_before_the_notice(db_session, presence, group, make_user):
    alice, _, _, conversation = group
    dave = make_user("dave")
    dave_session = ConnectionSession(user_id=dave.id, websocket=DummyWebSocket())
    await presence.connect(db_session, dave_session)

    change = conversations.add_members(
        db_session, conversation_id=conversation.id, user_id=alice.id, member_ids=[dave.id]
    )
    await presence.apply_membership_change(db_session, change)

    assert conversation_channel(conversation.id) in dave_session.channels
    (notice,) = dave_session.websocket.frames("chat:new_message")
    assert notice["message"]["sender_id"] is None
    assert dave_session.websocket.frames("chat:conversation_updated")[-1]["added_ids"] == [dave.id]
