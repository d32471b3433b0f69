"""Per-recipient delivery state tracking (SENT -> DELIVERED -> READ)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.models import ConversationMember, DeliveryStatus, Message, MessageState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChange:
    """A message whose state advanced for one recipient."""

    message_id: int
    conversation_id: int
    sender_id: int | None


def _not_authored_by(user_id: int):
    return or_(Message.sender_id.is_(None), Message.sender_id != user_id)


def create_states(
    db: Session, message: Message, initial_statuses: Mapping[int, DeliveryStatus]
) -> list[MessageState]:
    """Add one state row per recipient; the caller commits with the message."""

    now = utcnow()
    states: list[MessageState] = []
    for user_id, status in initial_statuses.items():
        if user_id == message.sender_id:
            continue
        state = MessageState(message=message, user_id=user_id, status=status, updated_at=now)
        db.add(state)
        states.append(state)
    return states


def _advance(db: Session, state_ids: list[int], target: DeliveryStatus) -> int:
    stmt = (
        update(MessageState)
        .where(
            MessageState.id.in_(state_ids),
            MessageState.status.in_(target.below()),
        )
        .values(status=target, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount or 0


def mark_delivered_for_user(db: Session, user_id: int) -> list[StatusChange]:
    """Advance every SENT row of ``user_id`` to DELIVERED.

    Called when the user connects. Returns the messages that changed so their
    senders can be told.
    """

    stmt = (
        select(MessageState.id, Message.id, Message.conversation_id, Message.sender_id)
        .join(Message, Message.id == MessageState.message_id)
        .where(
            MessageState.user_id == user_id,
            MessageState.status.in_(DeliveryStatus.DELIVERED.below()),
            Message.deleted_at.is_(None),
            _not_authored_by(user_id),
        )
        .order_by(Message.id)
    )
    rows = db.execute(stmt).all()
    if not rows:
        return []

    try:
        _advance(db, [row[0] for row in rows], DeliveryStatus.DELIVERED)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.debug("Marked %d messages delivered for user %s", len(rows), user_id)
    return [StatusChange(message_id, conversation_id, sender_id) for _, message_id, conversation_id, sender_id in rows]


def mark_conversation_read(db: Session, conversation_id: int, user_id: int) -> list[StatusChange]:
    """Advance every unread row of ``user_id`` in the conversation to READ.

    Also stamps the member's ``last_read_at``. Returns the changed messages,
    newest first; an empty list means there was nothing left to read.
    """

    stmt = (
        select(MessageState.id, Message.id, Message.sender_id)
        .join(Message, Message.id == MessageState.message_id)
        .where(
            Message.conversation_id == conversation_id,
            MessageState.user_id == user_id,
            MessageState.status.in_(DeliveryStatus.READ.below()),
            Message.deleted_at.is_(None),
            _not_authored_by(user_id),
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
    )
    rows = db.execute(stmt).all()

    try:
        if rows:
            _advance(db, [row[0] for row in rows], DeliveryStatus.READ)
        db.execute(
            update(ConversationMember)
            .where(
                ConversationMember.conversation_id == conversation_id,
                ConversationMember.user_id == user_id,
            )
            .values(last_read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    return [StatusChange(message_id, conversation_id, sender_id) for _, message_id, sender_id in rows]


def mark_message_read(db: Session, message_id: int, user_id: int) -> bool:
    """Advance a single recipient row to READ; False when it was already read."""

    try:
        changed = (
            db.execute(
                update(MessageState)
                .where(
                    MessageState.message_id == message_id,
                    MessageState.user_id == user_id,
                    MessageState.status.in_(DeliveryStatus.READ.below()),
                )
                .values(status=DeliveryStatus.READ, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount
            or 0
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    return changed > 0


def unread_count(db: Session, conversation_id: int, user_id: int) -> int:
    stmt = (
        select(func.count(MessageState.id))
        .join(Message, Message.id == MessageState.message_id)
        .where(
            Message.conversation_id == conversation_id,
            MessageState.user_id == user_id,
            MessageState.status != DeliveryStatus.READ,
            Message.deleted_at.is_(None),
            _not_authored_by(user_id),
        )
    )
    return int(db.execute(stmt).scalar_one())


def message_status(db: Session, message_id: int, user_id: int) -> DeliveryStatus | None:
    stmt = select(MessageState.status).where(
        MessageState.message_id == message_id,
        MessageState.user_id == user_id,
    )
    return db.execute(stmt).scalar_one_or_none()
