"""Conversation level operations: membership, messages, reactions and pins."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Collection, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from chirp.realtime import ChannelHub, conversation_channel, user_channel

from app.config import get_settings
from app.core.clock import isoformat, utcnow
from app.models import (
    Conversation,
    ConversationMember,
    ConversationMessageType,
    MemberRole,
    Message,
    MessageEditHistory,
    MessageReaction,
    PinnedMessage,
    User,
)
from app.schemas.messages import MessageHistoryPage, MessageRead, PinnedMessageRead
from app.services import delivery
from app.services.errors import AccessDeniedError, NotFoundError, ValidationError
from app.services.fanout import FanoutPlan, load_presence_snapshot, plan_fanout

logger = logging.getLogger(__name__)

settings = get_settings()

MEDIA_MESSAGE_TYPES = frozenset(
    {ConversationMessageType.IMAGE, ConversationMessageType.VIDEO, ConversationMessageType.FILE}
)

PIN_ACTION_PINNED = "pinned"
PIN_ACTION_UNPINNED = "unpinned"


def _message_options():
    return (
        selectinload(Message.sender),
        selectinload(Message.reactions),
        selectinload(Message.states),
        selectinload(Message.edit_history),
    )


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


def get_membership(db: Session, conversation_id: int, user_id: int) -> ConversationMember | None:
    stmt = select(ConversationMember).where(
        ConversationMember.conversation_id == conversation_id,
        ConversationMember.user_id == user_id,
        ConversationMember.left_at.is_(None),
    )
    return db.execute(stmt).scalar_one_or_none()


def require_membership(db: Session, conversation_id: int, user_id: int) -> ConversationMember:
    """Return the current membership or raise before anything is mutated."""

    if db.get(Conversation, conversation_id) is None:
        raise NotFoundError("Conversation not found")
    membership = get_membership(db, conversation_id, user_id)
    if membership is None:
        raise AccessDeniedError("Not a conversation member")
    return membership


def current_member_ids(db: Session, conversation_id: int) -> list[int]:
    stmt = (
        select(ConversationMember.user_id)
        .where(
            ConversationMember.conversation_id == conversation_id,
            ConversationMember.left_at.is_(None),
        )
        .order_by(ConversationMember.user_id)
    )
    return list(db.execute(stmt).scalars())


def member_conversation_ids(db: Session, user_id: int) -> list[int]:
    stmt = (
        select(ConversationMember.conversation_id)
        .where(
            ConversationMember.user_id == user_id,
            ConversationMember.left_at.is_(None),
        )
        .order_by(ConversationMember.conversation_id)
    )
    return list(db.execute(stmt).scalars())


def conversation_peer_ids(db: Session, user_id: int) -> set[int]:
    """Users sharing at least one conversation with ``user_id``."""

    conversation_ids = member_conversation_ids(db, user_id)
    if not conversation_ids:
        return set()
    stmt = select(ConversationMember.user_id).where(
        ConversationMember.conversation_id.in_(conversation_ids),
        ConversationMember.left_at.is_(None),
        ConversationMember.user_id != user_id,
    )
    return set(db.execute(stmt).scalars())


# ---------------------------------------------------------------------------
# Group membership
# ---------------------------------------------------------------------------


@dataclass
class MembershipChange:
    """Outcome of a membership operation, committed but not yet broadcast."""

    conversation_id: int
    added_ids: list[int] = field(default_factory=list)
    removed_ids: list[int] = field(default_factory=list)
    skipped_ids: list[int] = field(default_factory=list)
    system_messages: list[Message] = field(default_factory=list)


def _require_group(db: Session, conversation_id: int) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    if not conversation.is_group:
        raise ValidationError("Only group conversations have managed members")
    return conversation


def _require_admin(db: Session, conversation_id: int, user_id: int) -> ConversationMember:
    membership = get_membership(db, conversation_id, user_id)
    if membership is None or membership.role != MemberRole.ADMIN:
        raise AccessDeniedError("Only group admins can manage members")
    return membership


def _add_system_message(db: Session, conversation: Conversation, content: str) -> Message:
    """Stage a sender-less SYSTEM message; system messages carry no delivery states."""

    now = utcnow()
    message = Message(
        conversation_id=conversation.id,
        sender_id=None,
        type=ConversationMessageType.SYSTEM,
        content=content,
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    conversation.last_message_at = now
    conversation.updated_at = now
    return message


def _reload(db: Session, messages: Iterable[Message]) -> list[Message]:
    return [get_message(db, message.id) for message in messages]


def leave_group(db: Session, *, conversation_id: int, user_id: int) -> MembershipChange:
    conversation = _require_group(db, conversation_id)
    membership = require_membership(db, conversation_id, user_id)

    membership.left_at = utcnow()
    message = _add_system_message(db, conversation, f"{membership.user.display_name} đã rời khỏi nhóm")
    db.commit()
    logger.info("User %s left conversation %s", user_id, conversation_id)
    return MembershipChange(
        conversation_id=conversation_id,
        removed_ids=[user_id],
        system_messages=_reload(db, [message]),
    )


def add_members(
    db: Session, *, conversation_id: int, user_id: int, member_ids: Collection[int]
) -> MembershipChange:
    """Add users to a group, reactivating those who left earlier.

    Users who are already current members are reported in ``skipped_ids``.
    """

    conversation = _require_group(db, conversation_id)
    admin = _require_admin(db, conversation_id, user_id)

    requested = list(dict.fromkeys(member_ids))
    if not requested:
        raise ValidationError("member_ids must not be empty")
    users = {
        user.id: user
        for user in db.execute(select(User).where(User.id.in_(requested))).scalars()
    }
    if len(users) != len(requested):
        raise NotFoundError("Some users do not exist")

    existing = {
        member.user_id: member
        for member in db.execute(
            select(ConversationMember).where(
                ConversationMember.conversation_id == conversation_id,
                ConversationMember.user_id.in_(requested),
            )
        ).scalars()
    }
    change = MembershipChange(conversation_id=conversation_id)
    now = utcnow()
    staged: list[Message] = []
    for member_id in requested:
        member = existing.get(member_id)
        if member is not None and member.left_at is None:
            change.skipped_ids.append(member_id)
            continue
        if member is None:
            db.add(
                ConversationMember(
                    conversation_id=conversation_id,
                    user_id=member_id,
                    role=MemberRole.MEMBER,
                    joined_at=now,
                )
            )
        else:
            member.left_at = None
            member.joined_at = now
            member.role = MemberRole.MEMBER
        change.added_ids.append(member_id)
        staged.append(
            _add_system_message(
                db,
                conversation,
                f"{admin.user.display_name} đã thêm {users[member_id].display_name} vào nhóm",
            )
        )

    if not change.added_ids:
        raise ValidationError("All selected users are already members")

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError("Members changed concurrently, please retry") from None
    change.system_messages = _reload(db, staged)
    logger.info(
        "User %s added %s to conversation %s", user_id, change.added_ids, conversation_id
    )
    return change


def remove_member(
    db: Session, *, conversation_id: int, user_id: int, member_id: int
) -> MembershipChange:
    conversation = _require_group(db, conversation_id)
    admin = _require_admin(db, conversation_id, user_id)
    if member_id == user_id:
        raise ValidationError("Admins cannot remove themselves")
    member = get_membership(db, conversation_id, member_id)
    if member is None:
        raise NotFoundError("Member not found or already left")

    member.left_at = utcnow()
    message = _add_system_message(
        db,
        conversation,
        f"{member.user.display_name} đã bị {admin.user.display_name} xóa khỏi nhóm",
    )
    db.commit()
    logger.info("User %s removed %s from conversation %s", user_id, member_id, conversation_id)
    return MembershipChange(
        conversation_id=conversation_id,
        removed_ids=[member_id],
        system_messages=_reload(db, [message]),
    )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def get_message(db: Session, message_id: int) -> Message:
    stmt = select(Message).where(Message.id == message_id).options(*_message_options())
    message = db.execute(stmt).scalar_one_or_none()
    if message is None or message.deleted_at is not None:
        raise NotFoundError("Message not found")
    return message


def _clean_content(content: str | None) -> str | None:
    if content is None:
        return None
    content = content.strip()
    if len(content) > settings.chat_message_max_length:
        raise ValidationError(
            f"Message exceeds {settings.chat_message_max_length} characters"
        )
    return content or None


def send_message(
    db: Session,
    *,
    conversation_id: int,
    sender_id: int,
    content: str | None,
    message_type: ConversationMessageType = ConversationMessageType.TEXT,
    media_url: str | None = None,
    reply_to_id: int | None = None,
    active_user_ids: Collection[int] = (),
) -> tuple[Message, FanoutPlan]:
    """Persist a message with one delivery state per recipient.

    ``active_user_ids`` are the members currently viewing the conversation;
    together with the persisted online flags they form the presence snapshot
    the fan-out plan is computed from.
    """

    require_membership(db, conversation_id, sender_id)

    if message_type == ConversationMessageType.SYSTEM:
        raise ValidationError("System messages cannot be sent by users")
    content = _clean_content(content)
    if message_type == ConversationMessageType.TEXT and not content:
        raise ValidationError("Message content is required")
    if message_type in MEDIA_MESSAGE_TYPES and not media_url:
        raise ValidationError("Media messages require a media_url")

    if reply_to_id is not None:
        parent = db.get(Message, reply_to_id)
        if parent is None or parent.conversation_id != conversation_id or parent.deleted_at is not None:
            raise ValidationError("Reply target is not part of this conversation")

    member_ids = current_member_ids(db, conversation_id)
    snapshot = load_presence_snapshot(db, member_ids, active_user_ids)
    plan = plan_fanout(sender_id, member_ids, snapshot)

    now = utcnow()
    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        type=message_type,
        content=content,
        media_url=media_url,
        reply_to_id=reply_to_id,
        created_at=now,
        updated_at=now,
    )
    db.add(message)
    conversation = db.get(Conversation, conversation_id)
    conversation.last_message_at = now
    conversation.updated_at = now
    delivery.create_states(db, message, plan.initial_statuses)
    db.commit()

    logger.info(
        "Message %s sent to conversation %s (%d recipients)",
        message.id,
        conversation_id,
        len(plan.routes),
    )
    return get_message(db, message.id), plan


def _require_own_message(db: Session, message_id: int, user_id: int) -> Message:
    message = get_message(db, message_id)
    require_membership(db, message.conversation_id, user_id)
    if message.sender_id != user_id:
        raise AccessDeniedError("Only the sender can change this message")
    return message


def edit_message(db: Session, *, message_id: int, user_id: int, content: str) -> Message:
    message = _require_own_message(db, message_id, user_id)
    if message.type != ConversationMessageType.TEXT:
        raise ValidationError("Only text messages can be edited")
    if message.is_recalled:
        raise ValidationError("Recalled messages cannot be edited")
    new_content = _clean_content(content)
    if not new_content:
        raise ValidationError("Message content is required")
    if new_content == message.content:
        raise ValidationError("Message content is unchanged")

    now = utcnow()
    db.add(
        MessageEditHistory(
            message_id=message.id,
            old_content=message.content or "",
            new_content=new_content,
            edited_by_id=user_id,
            edited_at=now,
        )
    )
    message.content = new_content
    message.updated_at = now
    db.commit()
    return get_message(db, message_id)


def recall_message(db: Session, *, message_id: int, user_id: int) -> Message:
    message = _require_own_message(db, message_id, user_id)
    if message.is_recalled:
        raise ValidationError("Message already recalled")
    now = utcnow()
    message.is_recalled = True
    message.recalled_at = now
    message.updated_at = now
    db.commit()
    return get_message(db, message_id)


def delete_message(db: Session, *, message_id: int, user_id: int) -> Message:
    """Soft delete; the row stays and its pins are dropped."""

    message = _require_own_message(db, message_id, user_id)
    now = utcnow()
    message.deleted_at = now
    message.updated_at = now
    for pin in db.execute(select(PinnedMessage).where(PinnedMessage.message_id == message_id)).scalars():
        db.delete(pin)
    db.commit()
    return message


def toggle_reaction(db: Session, *, message_id: int, user_id: int, emoji: str) -> tuple[Message, str]:
    """Add, change or remove (same emoji again) the user's reaction."""

    emoji = emoji.strip()
    if not emoji:
        raise ValidationError("Emoji is required")
    message = get_message(db, message_id)
    require_membership(db, message.conversation_id, user_id)
    if message.is_recalled:
        raise ValidationError("Recalled messages cannot be reacted to")

    existing = db.execute(
        select(MessageReaction).where(
            MessageReaction.message_id == message_id,
            MessageReaction.user_id == user_id,
        )
    ).scalar_one_or_none()
    if existing is None:
        db.add(MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji, created_at=utcnow()))
        action = "added"
    elif existing.emoji == emoji:
        db.delete(existing)
        action = "removed"
    else:
        existing.emoji = emoji
        action = "changed"

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError("Reaction changed concurrently, please retry") from None
    return get_message(db, message_id), action


def fetch_history(
    db: Session,
    conversation_id: int,
    user_id: int,
    *,
    limit: int | None = None,
    before_id: int | None = None,
) -> MessageHistoryPage:
    """Newest page of non-deleted messages in ascending order."""

    require_membership(db, conversation_id, user_id)
    limit = limit or settings.chat_history_default_limit
    limit = max(1, min(limit, settings.chat_history_max_limit))

    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id, Message.deleted_at.is_(None))
        .options(*_message_options())
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit + 1)
    )
    if before_id is not None:
        stmt = stmt.where(Message.id < before_id)
    rows = list(db.execute(stmt).scalars())
    has_more = len(rows) > limit
    rows = list(reversed(rows[:limit]))
    return MessageHistoryPage(
        items=[MessageRead.from_message(row) for row in rows],
        has_more=has_more,
        next_before_id=rows[0].id if has_more and rows else None,
    )


# ---------------------------------------------------------------------------
# Pins
# ---------------------------------------------------------------------------


def _get_pin(db: Session, conversation_id: int, message_id: int) -> PinnedMessage | None:
    stmt = select(PinnedMessage).where(
        PinnedMessage.conversation_id == conversation_id,
        PinnedMessage.message_id == message_id,
    )
    return db.execute(stmt).scalar_one_or_none()


def toggle_pin(db: Session, *, message_id: int, user_id: int) -> tuple[str, PinnedMessage | None, Message]:
    """Pin the message when unpinned, otherwise unpin it.

    A concurrent pin that wins the unique constraint leaves the message
    pinned; the losing request reports ``pinned`` rather than unpinning.
    """

    message = get_message(db, message_id)
    conversation_id = message.conversation_id
    require_membership(db, conversation_id, user_id)

    pin = _get_pin(db, conversation_id, message_id)
    if pin is not None:
        db.delete(pin)
        db.commit()
        return PIN_ACTION_UNPINNED, None, message

    pin = PinnedMessage(
        conversation_id=conversation_id,
        message_id=message_id,
        pinned_by_id=user_id,
        pinned_at=utcnow(),
    )
    db.add(pin)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug("Message %s was pinned concurrently", message_id)
        pin = _get_pin(db, conversation_id, message_id)
        if pin is None:
            raise
    return PIN_ACTION_PINNED, pin, message


def list_pins(db: Session, conversation_id: int, user_id: int) -> list[PinnedMessage]:
    require_membership(db, conversation_id, user_id)
    stmt = (
        select(PinnedMessage)
        .join(Message, Message.id == PinnedMessage.message_id)
        .where(PinnedMessage.conversation_id == conversation_id, Message.deleted_at.is_(None))
        .options(
            selectinload(PinnedMessage.pinned_by),
            selectinload(PinnedMessage.message).options(*_message_options()),
        )
        .order_by(PinnedMessage.pinned_at.desc(), PinnedMessage.id.desc())
    )
    return list(db.execute(stmt).scalars())


# ---------------------------------------------------------------------------
# Broadcast helpers
# ---------------------------------------------------------------------------


async def publish_message_update(hub: ChannelHub, event: str, message: Message) -> None:
    await hub.publish(
        conversation_channel(message.conversation_id),
        event,
        {
            "conversation_id": message.conversation_id,
            "message": MessageRead.from_message(message).model_dump(mode="json"),
        },
    )


async def publish_message_deleted(hub: ChannelHub, conversation_id: int, message_id: int) -> None:
    await hub.publish(
        conversation_channel(conversation_id),
        "chat:message_deleted",
        {"conversation_id": conversation_id, "message_id": message_id},
    )


async def publish_reaction_update(hub: ChannelHub, message: Message, user_id: int, action: str) -> None:
    serialized = MessageRead.from_message(message)
    await hub.publish(
        conversation_channel(message.conversation_id),
        "chat:message_reaction_updated",
        {
            "conversation_id": message.conversation_id,
            "message_id": message.id,
            "user_id": user_id,
            "action": action,
            "reactions": [reaction.model_dump(mode="json") for reaction in serialized.reactions],
        },
    )


async def publish_pin_update(
    hub: ChannelHub, message: Message, action: str, pin: PinnedMessage | None
) -> None:
    await hub.publish(
        conversation_channel(message.conversation_id),
        "chat:message_pinned",
        {
            "conversation_id": message.conversation_id,
            "message_id": message.id,
            "action": action,
            "pinned": PinnedMessageRead.from_pin(pin).model_dump(mode="json") if pin is not None else None,
        },
    )


async def publish_system_messages(hub: ChannelHub, change: MembershipChange) -> None:
    for message in change.system_messages:
        await hub.publish(
            conversation_channel(change.conversation_id),
            "chat:new_message",
            {
                "conversation_id": change.conversation_id,
                "message": MessageRead.from_message(message).model_dump(mode="json"),
            },
        )


async def publish_membership_summary(
    hub: ChannelHub, change: MembershipChange, member_ids: Iterable[int]
) -> None:
    """Refresh the sidebar of current members and drop the conversation for removed ones."""

    summary: dict[str, object] = {
        "conversation_id": change.conversation_id,
        "action": "update",
        "added_ids": change.added_ids,
        "removed_ids": change.removed_ids,
    }
    if change.system_messages:
        last = change.system_messages[-1]
        summary["last_message"] = MessageRead.from_message(last).model_dump(mode="json")
        summary["last_message_at"] = isoformat(last.created_at)
    for member_id in member_ids:
        await hub.publish(user_channel(member_id), "chat:conversation_updated", summary)
    for removed_id in change.removed_ids:
        await hub.publish(
            user_channel(removed_id),
            "chat:conversation_updated",
            {"conversation_id": change.conversation_id, "action": "delete"},
        )
