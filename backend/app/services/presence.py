"""Presence tracking: connect, disconnect and the active conversation of a session."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable

from sqlalchemy.orm import Session

from chirp.realtime import (
    ChannelHub,
    ConnectionSession,
    PresenceRegistry,
    TypingManager,
    active_conversation_channel,
    build_frame,
    conversation_channel,
    get_channel_hub,
    get_presence_registry,
    get_typing_manager,
    safe_send_json,
    user_channel,
)

from app.core.clock import isoformat, utcnow
from app.models import DeliveryStatus, User
from app.schemas.messages import ConversationReadResult
from app.services import conversations, delivery
from app.services.delivery import StatusChange
from app.services.fanout import PresenceSnapshot, load_presence_snapshot

logger = logging.getLogger(__name__)


class PresenceService:
    """Owns the online flag, channel subscriptions and read acknowledgements."""

    def __init__(
        self,
        hub: ChannelHub,
        registry: PresenceRegistry,
        typing: TypingManager,
    ) -> None:
        self._hub = hub
        self._registry = registry
        self._typing = typing

    @property
    def hub(self) -> ChannelHub:
        return self._hub

    @property
    def typing(self) -> TypingManager:
        return self._typing

    def _persist_status(self, db: Session, user_id: int, is_online: bool) -> User | None:
        user = db.get(User, user_id)
        if user is None:
            return None
        user.is_online = is_online
        user.last_seen = utcnow()
        db.commit()
        return user

    async def _broadcast_status(
        self,
        user: User,
        conversation_ids: Iterable[int],
        *,
        exclude: ConnectionSession | None = None,
    ) -> None:
        payload = {
            "user_id": user.id,
            "is_online": user.is_online,
            "last_seen": isoformat(user.last_seen),
        }
        for conversation_id in conversation_ids:
            await self._hub.publish(
                conversation_channel(conversation_id),
                "chat:user_status",
                {**payload, "conversation_id": conversation_id},
                exclude={exclude} if exclude is not None else None,
            )

    async def notify_senders(
        self, changes: Iterable[StatusChange], status: DeliveryStatus, recipient_id: int
    ) -> None:
        """Tell each sender which of their messages advanced for ``recipient_id``."""

        grouped: dict[tuple[int, int], list[int]] = defaultdict(list)
        for change in changes:
            if change.sender_id is None or change.sender_id == recipient_id:
                continue
            grouped[(change.sender_id, change.conversation_id)].append(change.message_id)
        for (sender_id, conversation_id), message_ids in grouped.items():
            await self._hub.publish(
                user_channel(sender_id),
                "message:status_update",
                {
                    "conversation_id": conversation_id,
                    "message_ids": message_ids,
                    "user_id": recipient_id,
                    "status": status.value,
                },
            )

    async def connect(self, db: Session, session: ConnectionSession) -> list[StatusChange]:
        """Bring a new websocket session online.

        Returns the messages that advanced to DELIVERED for the user.
        """

        user_id = session.user_id
        first_session = await self._registry.add(session)
        user = self._persist_status(db, user_id, True)

        await self._hub.subscribe(session, user_channel(user_id))
        conversation_ids = conversations.member_conversation_ids(db, user_id)
        for conversation_id in conversation_ids:
            await self._hub.subscribe(session, conversation_channel(conversation_id))

        if first_session and user is not None:
            await self._broadcast_status(user, conversation_ids, exclude=session)

        changes = delivery.mark_delivered_for_user(db, user_id)
        await self.notify_senders(changes, DeliveryStatus.DELIVERED, user_id)
        logger.info(
            "User %s connected (session %s, %d conversations, %d delivered)",
            user_id,
            session.session_id,
            len(conversation_ids),
            len(changes),
        )
        return changes

    async def disconnect(self, db: Session, session: ConnectionSession) -> bool:
        """Drop a session; returns True when the user went offline."""

        await self._hub.unsubscribe_all(session)
        session.active_conversation_id = None
        last_session = await self._registry.remove(session)
        if not last_session:
            logger.debug("User %s closed session %s", session.user_id, session.session_id)
            return False

        await self._typing.clear_user(session.user_id)
        user = self._persist_status(db, session.user_id, False)
        if user is not None:
            await self._broadcast_status(user, conversations.member_conversation_ids(db, user.id))
        logger.info("User %s went offline", session.user_id)
        return True

    async def acknowledge_read(
        self, db: Session, user_id: int, conversation_id: int
    ) -> ConversationReadResult:
        """Advance the user's unread messages to READ and tell senders and the viewer."""

        changes = delivery.mark_conversation_read(db, conversation_id, user_id)
        unread = delivery.unread_count(db, conversation_id, user_id)
        if changes:
            await self.notify_senders(changes, DeliveryStatus.READ, user_id)
            viewer = user_channel(user_id)
            await self._hub.publish(
                viewer,
                "chat:unread_count_update",
                {"conversation_id": conversation_id, "delta": -len(changes), "unread_count": unread},
            )
            await self._hub.publish(
                viewer,
                "chat:conversation_updated",
                {"conversation_id": conversation_id, "read": True, "unread_count": unread},
            )
        return ConversationReadResult(
            conversation_id=conversation_id,
            message_ids=[change.message_id for change in changes],
            unread_count=unread,
        )

    async def enter_conversation(
        self, db: Session, session: ConnectionSession, conversation_id: int
    ) -> ConversationReadResult:
        conversations.require_membership(db, conversation_id, session.user_id)

        if session.active_conversation_id not in (None, conversation_id):
            await self.leave_conversation(session, session.active_conversation_id)

        await self._hub.subscribe(session, conversation_channel(conversation_id))
        await self._hub.subscribe(session, active_conversation_channel(conversation_id))
        session.active_conversation_id = conversation_id

        result = await self.acknowledge_read(db, session.user_id, conversation_id)
        joined = {
            "conversation_id": conversation_id,
            "typing": await self._typing.snapshot(conversation_id),
            **result.model_dump(exclude={"conversation_id"}),
        }
        await safe_send_json(session.websocket, build_frame("chat:conversation_joined", joined))
        return result

    async def mark_seen(
        self, db: Session, session: ConnectionSession, conversation_id: int
    ) -> ConversationReadResult:
        conversations.require_membership(db, conversation_id, session.user_id)
        return await self.acknowledge_read(db, session.user_id, conversation_id)

    async def leave_conversation(self, session: ConnectionSession, conversation_id: int) -> None:
        await self._hub.unsubscribe(session, active_conversation_channel(conversation_id))
        if session.active_conversation_id == conversation_id:
            session.active_conversation_id = None

    async def _attach_member(self, conversation_id: int, user_id: int) -> None:
        for session in self._registry.sessions_for(user_id):
            await self._hub.subscribe(session, conversation_channel(conversation_id))

    async def _detach_member(self, conversation_id: int, user_id: int) -> None:
        sessions = self._registry.sessions_for(user_id)
        if sessions:
            await self._typing.set_status(conversation_id, sessions[0], "", False)
        for session in sessions:
            await self.leave_conversation(session, conversation_id)
            await self._hub.unsubscribe(session, conversation_channel(conversation_id))

    async def apply_membership_change(self, db: Session, change: conversations.MembershipChange) -> None:
        """Move live sessions in or out of the conversation and broadcast the change.

        Removed members still receive the system message before they are
        unsubscribed; added members are subscribed before it goes out.
        """

        conversation_id = change.conversation_id
        for user_id in change.added_ids:
            await self._attach_member(conversation_id, user_id)
        await conversations.publish_system_messages(self._hub, change)
        for user_id in change.removed_ids:
            await self._detach_member(conversation_id, user_id)
        await conversations.publish_membership_summary(
            self._hub, change, conversations.current_member_ids(db, conversation_id)
        )

    def active_user_ids(self, conversation_id: int) -> set[int]:
        return self._hub.user_ids(active_conversation_channel(conversation_id))

    def snapshot(self, db: Session, conversation_id: int) -> PresenceSnapshot:
        member_ids = conversations.current_member_ids(db, conversation_id)
        return load_presence_snapshot(db, member_ids, self.active_user_ids(conversation_id))


presence_service = PresenceService(get_channel_hub(), get_presence_registry(), get_typing_manager())


def get_presence_service() -> PresenceService:
    return presence_service
