"""Conversation fan-out: route a new message to every member."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Collection, Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chirp.realtime import ChannelHub, conversation_channel, user_channel

from app.core.clock import isoformat
from app.models import DeliveryStatus, Message, NotificationTargetType, NotificationType, User
from app.schemas.messages import MessageRead
from app.services import delivery
from app.services.notifications import NotificationAggregator, get_notification_aggregator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceSnapshot:
    """Who is online and who is looking at the conversation right now."""

    online_user_ids: frozenset[int] = frozenset()
    active_user_ids: frozenset[int] = frozenset()


@dataclass(frozen=True)
class RecipientRoute:
    user_id: int
    initial_status: DeliveryStatus
    read_on_arrival: bool


@dataclass(frozen=True)
class FanoutPlan:
    sender_id: int | None
    member_ids: tuple[int, ...]
    routes: tuple[RecipientRoute, ...] = field(default_factory=tuple)

    @property
    def initial_statuses(self) -> dict[int, DeliveryStatus]:
        return {route.user_id: route.initial_status for route in self.routes}


def plan_fanout(sender_id: int | None, member_ids: Iterable[int], snapshot: PresenceSnapshot) -> FanoutPlan:
    """Decide the initial state and read-on-arrival flag for each recipient.

    Pure function of the member list and the presence snapshot.
    """

    members = tuple(dict.fromkeys(member_ids))
    routes = tuple(
        RecipientRoute(
            user_id=user_id,
            initial_status=(
                DeliveryStatus.DELIVERED if user_id in snapshot.online_user_ids else DeliveryStatus.SENT
            ),
            read_on_arrival=user_id in snapshot.active_user_ids,
        )
        for user_id in members
        if user_id != sender_id
    )
    return FanoutPlan(sender_id=sender_id, member_ids=members, routes=routes)


def load_presence_snapshot(
    db: Session, member_ids: Collection[int], active_user_ids: Collection[int] = ()
) -> PresenceSnapshot:
    """Read persisted online flags for ``member_ids``."""

    if not member_ids:
        return PresenceSnapshot()
    online = db.execute(
        select(User.id).where(User.id.in_(list(member_ids)), User.is_online.is_(True))
    ).scalars()
    members = set(member_ids)
    return PresenceSnapshot(
        online_user_ids=frozenset(online),
        active_user_ids=frozenset(user_id for user_id in active_user_ids if user_id in members),
    )


async def deliver_message(
    db: Session,
    hub: ChannelHub,
    message: Message,
    plan: FanoutPlan,
    *,
    aggregator: NotificationAggregator | None = None,
) -> MessageRead:
    """Push an already committed message to the conversation and its members."""

    if aggregator is None:
        aggregator = get_notification_aggregator()

    conversation_id = message.conversation_id
    serialized = MessageRead.from_message(message)
    message_payload = serialized.model_dump(mode="json")

    await hub.publish(
        conversation_channel(conversation_id),
        "chat:new_message",
        {"conversation_id": conversation_id, "message": message_payload},
    )

    read_by: list[int] = []
    for route in plan.routes:
        if plan.sender_id is not None:
            await aggregator.notify(
                db,
                recipient_id=route.user_id,
                actor_id=plan.sender_id,
                notification_type=NotificationType.MESSAGE,
                target_type=NotificationTargetType.CONVERSATION,
                target_id=conversation_id,
                extra={"conversationId": conversation_id, "messageId": message.id},
            )

        if route.read_on_arrival:
            try:
                if delivery.mark_message_read(db, message.id, route.user_id):
                    read_by.append(route.user_id)
            except SQLAlchemyError:
                logger.exception(
                    "Failed to mark message %s read for active viewer %s", message.id, route.user_id
                )
            continue

        await hub.publish(
            user_channel(route.user_id),
            "chat:unread_count_update",
            {
                "conversation_id": conversation_id,
                "delta": 1,
                "unread_count": delivery.unread_count(db, conversation_id, route.user_id),
            },
        )

    if plan.sender_id is not None:
        for reader_id in read_by:
            await hub.publish(
                user_channel(plan.sender_id),
                "message:status_update",
                {
                    "conversation_id": conversation_id,
                    "message_ids": [message.id],
                    "user_id": reader_id,
                    "status": DeliveryStatus.READ.value,
                },
            )

    summary = {
        "conversation_id": conversation_id,
        "last_message": message_payload,
        "last_message_at": isoformat(message.created_at),
    }
    for member_id in plan.member_ids:
        await hub.publish(user_channel(member_id), "chat:conversation_updated", summary)

    logger.debug(
        "Delivered message %s to %d recipients (%d read on arrival)",
        message.id,
        len(plan.routes),
        len(read_by),
    )
    return serialized
