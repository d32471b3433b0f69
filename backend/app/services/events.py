"""Typed social events and the dispatcher that turns them into notifications.

Producers (follow, post, comment and reaction endpoints) call
:meth:`EventDispatcher.emit` after their own transaction commits; the
notification work runs in a background task with its own database session.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from sqlalchemy.orm import Session

from app.database import get_db_session
from app.models import NotificationTargetType, NotificationType
from app.services.notifications import NotificationAggregator, get_notification_aggregator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FollowCompleted:
    actor_id: int
    target_user_id: int


@dataclass(frozen=True)
class FollowRequestSent:
    actor_id: int
    target_user_id: int


@dataclass(frozen=True)
class FollowRequestAccepted:
    actor_id: int
    target_user_id: int


@dataclass(frozen=True)
class FollowRequestRejected:
    actor_id: int
    target_user_id: int


@dataclass(frozen=True)
class ReactionCreated:
    actor_id: int
    target_type: NotificationTargetType
    target_id: int
    target_owner_id: int | None


@dataclass(frozen=True)
class CommentCreated:
    actor_id: int
    post_id: int
    post_owner_id: int | None


@dataclass(frozen=True)
class ReplyCreated:
    actor_id: int
    comment_id: int
    parent_comment_owner_id: int | None
    post_id: int | None = None
    repost_id: int | None = None


@dataclass(frozen=True)
class RepostCreated:
    actor_id: int
    post_id: int
    post_owner_id: int | None


SocialEvent = (
    FollowCompleted
    | FollowRequestSent
    | FollowRequestAccepted
    | FollowRequestRejected
    | ReactionCreated
    | CommentCreated
    | ReplyCreated
    | RepostCreated
)

Handler = Callable[[Any, Session], Awaitable[None]]
SessionFactory = Callable[[], AbstractContextManager[Session]]


class EventDispatcher:
    """Routes each event type to exactly one handler."""

    def __init__(self, session_factory: SessionFactory = get_db_session) -> None:
        self._session_factory = session_factory
        self._handlers: Dict[type, Handler] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def register(self, event_type: type, handler: Handler) -> None:
        if event_type in self._handlers:
            raise ValueError(f"Handler already registered for {event_type.__name__}")
        self._handlers[event_type] = handler

    def handler_for(self, event_type: type) -> Handler | None:
        return self._handlers.get(event_type)

    async def dispatch(self, event: Any) -> None:
        """Run the handler for ``event`` and wait for it; errors propagate."""

        handler = self._handlers.get(type(event))
        if handler is None:
            raise LookupError(f"No handler registered for {type(event).__name__}")
        with self._session_factory() as db:
            await handler(event, db)

    async def _run(self, event: Any) -> None:
        try:
            await self.dispatch(event)
        except Exception:
            logger.exception("Handler for %s failed", type(event).__name__)

    def emit(self, event: Any) -> asyncio.Task[None]:
        """Schedule ``event`` on the running loop without waiting for it."""

        task = asyncio.get_running_loop().create_task(self._run(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight emitted event."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def register_notification_handlers(
    dispatcher: EventDispatcher, aggregator: NotificationAggregator
) -> EventDispatcher:
    """Map every social event onto the aggregator."""

    def follow_handler(kind: NotificationType) -> Handler:
        async def handle(event: Any, db: Session) -> None:
            # One row per recipient; a repeat moves it to the latest actor
            await aggregator.notify(
                db,
                recipient_id=event.target_user_id,
                actor_id=event.actor_id,
                notification_type=kind,
                target_type=NotificationTargetType.USER,
                target_id=event.target_user_id,
            )

        return handle

    async def on_reaction(event: ReactionCreated, db: Session) -> None:
        if event.target_owner_id is None:
            return
        await aggregator.notify(
            db,
            recipient_id=event.target_owner_id,
            actor_id=event.actor_id,
            notification_type=NotificationType.REACTION,
            target_type=event.target_type,
            target_id=event.target_id,
        )

    async def on_comment(event: CommentCreated, db: Session) -> None:
        if event.post_owner_id is None:
            return
        await aggregator.notify(
            db,
            recipient_id=event.post_owner_id,
            actor_id=event.actor_id,
            notification_type=NotificationType.COMMENT,
            target_type=NotificationTargetType.POST,
            target_id=event.post_id,
        )

    async def on_reply(event: ReplyCreated, db: Session) -> None:
        if event.parent_comment_owner_id is None:
            return
        extra: dict[str, Any] = {}
        if event.post_id is not None:
            extra["postId"] = event.post_id
        if event.repost_id is not None:
            extra["repostId"] = event.repost_id
        await aggregator.notify(
            db,
            recipient_id=event.parent_comment_owner_id,
            actor_id=event.actor_id,
            notification_type=NotificationType.REPLY,
            target_type=NotificationTargetType.COMMENT,
            target_id=event.comment_id,
            extra=extra or None,
        )

    async def on_repost(event: RepostCreated, db: Session) -> None:
        if event.post_owner_id is None:
            return
        await aggregator.notify(
            db,
            recipient_id=event.post_owner_id,
            actor_id=event.actor_id,
            notification_type=NotificationType.REPOST,
            target_type=NotificationTargetType.POST,
            target_id=event.post_id,
        )

    dispatcher.register(FollowCompleted, follow_handler(NotificationType.FOLLOW))
    dispatcher.register(FollowRequestSent, follow_handler(NotificationType.FOLLOW_REQUEST))
    dispatcher.register(FollowRequestAccepted, follow_handler(NotificationType.FOLLOW_ACCEPTED))
    dispatcher.register(FollowRequestRejected, follow_handler(NotificationType.FOLLOW_REJECTED))
    dispatcher.register(ReactionCreated, on_reaction)
    dispatcher.register(CommentCreated, on_comment)
    dispatcher.register(ReplyCreated, on_reply)
    dispatcher.register(RepostCreated, on_repost)
    return dispatcher


event_dispatcher = register_notification_handlers(EventDispatcher(), get_notification_aggregator())


def get_event_dispatcher() -> EventDispatcher:
    return event_dispatcher
