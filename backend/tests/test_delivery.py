from __future__ import annotations

from app.models import DeliveryStatus
from app.services import conversations, delivery


def _send(db, conversation, sender, content="hello"):
    message, _ = conversations.send_message(
        db, conversation_id=conversation.id, sender_id=sender.id, content=content
    )
    return message


def test_initial_status_follows_persisted_online_flag(db_session, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob", is_online=True)
    carol = make_user("carol")
    conversation = make_conversation(alice, bob, carol)

    message = _send(db_session, conversation, alice)

    statuses = {state.user_id: state.status for state in message.states}
    assert statuses == {bob.id: DeliveryStatus.DELIVERED, carol.id: DeliveryStatus.SENT}


def test_initial_status_is_not_reevaluated_when_presence_changes(db_session, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    message = _send(db_session, conversation, alice)

    bob.is_online = True
    db_session.commit()

    assert delivery.message_status(db_session, message.id, bob.id) == DeliveryStatus.SENT


def test_mark_delivered_skips_own_and_deleted_messages(db_session, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)

    incoming = _send(db_session, conversation, alice, "for bob")
    _send(db_session, conversation, bob, "from bob")
    deleted = _send(db_session, conversation, alice, "oops")
    conversations.delete_message(db_session, message_id=deleted.id, user_id=alice.id)

    changes = delivery.mark_delivered_for_user(db_session, bob.id)

    assert [change.message_id for change in changes] == [incoming.id]
    assert changes[0].sender_id == alice.id
    assert changes[0].conversation_id == conversation.id
    assert delivery.message_status(db_session, incoming.id, bob.id) == DeliveryStatus.DELIVERED
    assert delivery.message_status(db_session, deleted.id, bob.id) == DeliveryStatus.SENT


def test_mark_delivered_is_idempotent(db_session, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    _send(db_session, conversation, alice)

    assert len(delivery.mark_delivered_for_user(db_session, bob.id)) == 1
    assert delivery.mark_delivered_for_user(db_session, bob.id) == []


def test_conversation_read_returns_newest_first_and_stamps_member(db_session, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    first = _send(db_session, conversation, alice, "one")
    second = _send(db_session, conversation, alice, "two")

    changes = delivery.mark_conversation_read(db_session, conversation.id, bob.id)

    assert [change.message_id for change in changes] == [second.id, first.id]
    assert delivery.message_status(db_session, first.id, bob.id) == DeliveryStatus.READ
    membership = conversations.get_membership(db_session, conversation.id, bob.id)
    assert membership.last_read_at is not None


def test_second_read_acknowledgement_is_a_noop(db_session, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    _send(db_session, conversation, alice)

    assert delivery.mark_conversation_read(db_session, conversation.id, bob.id)
    assert delivery.mark_conversation_read(db_session, conversation.id, bob.id) == []


def test_status_never_regresses_after_read(db_session, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    message = _send(db_session, conversation, alice)

    delivery.mark_conversation_read(db_session, conversation.id, bob.id)
    assert delivery.mark_delivered_for_user(db_session, bob.id) == []
    assert delivery.message_status(db_session, message.id, bob.id) == DeliveryStatus.READ


def test_mark_message_read_reports_change_once(db_session, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob", is_online=True)
    conversation = make_conversation(alice, bob)
    message = _send(db_session, conversation, alice)

    assert delivery.mark_message_read(db_session, message.id, bob.id) is True
    assert delivery.mark_message_read(db_session, message.id, bob.id) is False
    assert delivery.message_status(db_session, message.id, bob.id) == DeliveryStatus.READ


def test_unread_count_ignores_own_and_read_messages(db_session, make_user, make_conversation):
    alice = make_user("alice")
    bob = make_user("bob")
    conversation = make_conversation(alice, bob)
    _send(db_session, conversation, alice, "one")
    _send(db_session, conversation, alice, "two")
    _send(db_session, conversation, bob, "mine")

    assert delivery.unread_count(db_session, conversation.id, bob.id) == 2
    assert delivery.unread_count(db_session, conversation.id, alice.id) == 1

    delivery.mark_conversation_read(db_session, conversation.id, bob.id)
    assert delivery.unread_count(db_session, conversation.id, bob.id) == 0
