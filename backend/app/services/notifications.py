"""Notification aggregation: emit-only, deduplicated and time-windowed groups."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from chirp.realtime import ChannelHub, get_channel_hub, user_channel

from app.config import get_settings
from app.core.clock import as_utc, utcnow
from app.models import Notification, NotificationTargetType, NotificationType, User
from app.schemas.notifications import (
    NotificationActor,
    NotificationPage,
    NotificationRead,
    NotificationTarget,
    Pagination,
)
from app.services.cache import CacheBackend, get_cache
from app.services.notification_text import FALLBACK_ACTOR, render_notification

logger = logging.getLogger(__name__)

settings = get_settings()

EMIT_ONLY_TYPES = frozenset({NotificationType.MESSAGE})
DEDUPLICATED_TYPES = frozenset(
    {
        NotificationType.FOLLOW,
        NotificationType.FOLLOW_REQUEST,
        NotificationType.FOLLOW_ACCEPTED,
        NotificationType.FOLLOW_REJECTED,
    }
)
GROUPED_TYPES = frozenset(
    {
        NotificationType.REACTION,
        NotificationType.COMMENT,
        NotificationType.REPLY,
        NotificationType.REPOST,
    }
)

NOTIFICATION_EVENT = "notification"


def _unread_cache_key(user_id: int) -> str:
    return f"notifications:unread:{user_id}"


def _actor_summary(user: User | None) -> NotificationActor | None:
    if user is None:
        return None
    return NotificationActor(
        id=user.id,
        username=user.username,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
    )


def serialize_notification(notification: Notification) -> NotificationRead:
    metadata = dict(notification.payload or {})
    actor = notification.actor
    return NotificationRead(
        id=notification.id,
        type=notification.type,
        actor=_actor_summary(actor),
        target=NotificationTarget(type=notification.target_type, id=notification.target_id),
        message=render_notification(
            notification.type,
            notification.target_type,
            metadata,
            actor.display_name if actor is not None else None,
        ),
        metadata=metadata,
        read=notification.read_at is not None,
        read_at=as_utc(notification.read_at),
        created_at=as_utc(notification.created_at),
        updated_at=as_utc(notification.updated_at),
    )


class NotificationAggregator:
    """Turns actor events into notification rows and pushes them to recipients.

    Persistence and push failures are logged and dropped; nothing is retried.
    """

    def __init__(
        self,
        hub: ChannelHub,
        *,
        window_seconds: int,
        cache: CacheBackend | None = None,
        cache_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._hub = hub
        self._window_seconds = int(window_seconds)
        self._window = timedelta(seconds=self._window_seconds)
        self._cache = cache
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock

    @property
    def cache(self) -> CacheBackend:
        if self._cache is None:
            self._cache = get_cache()
        return self._cache

    def window_index(self, moment: datetime) -> int:
        return int(as_utc(moment).timestamp()) // self._window_seconds

    # -- write side -------------------------------------------------------

    async def notify(
        self,
        db: Session,
        *,
        recipient_id: int,
        actor_id: int,
        notification_type: NotificationType,
        target_type: NotificationTargetType,
        target_id: int,
        extra: Mapping[str, Any] | None = None,
    ) -> Notification | None:
        """Record an actor event for ``recipient_id`` and push the result.

        Returns the created or updated row, or ``None`` when nothing was
        persisted (self notifications, emit-only kinds, swallowed failures).
        """

        if recipient_id == actor_id:
            return None

        if notification_type in EMIT_ONLY_TYPES:
            await self._push_transient(
                db,
                recipient_id=recipient_id,
                actor_id=actor_id,
                notification_type=notification_type,
                target_type=target_type,
                target_id=target_id,
                extra=extra,
            )
            return None

        now = self._clock()
        try:
            if notification_type in DEDUPLICATED_TYPES:
                notification, changed = self._upsert_deduplicated(
                    db, recipient_id, actor_id, notification_type, target_type, target_id, extra, now
                )
            elif notification_type in GROUPED_TYPES:
                notification, changed = self._upsert_grouped(
                    db, recipient_id, actor_id, notification_type, target_type, target_id, extra, now
                )
            else:  # pragma: no cover - every enum member is classified above
                raise ValueError(f"Unsupported notification type {notification_type}")
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Failed to persist %s notification for user %s", notification_type.value, recipient_id
            )
            return None

        if not changed:
            return notification

        self._invalidate_unread(recipient_id)
        await self._push(recipient_id, serialize_notification(notification))
        return notification

    def _find(
        self,
        db: Session,
        recipient_id: int,
        notification_type: NotificationType,
        target_type: NotificationTargetType,
        target_id: int,
        window_index: int,
    ) -> Notification | None:
        stmt = select(Notification).where(
            Notification.user_id == recipient_id,
            Notification.type == notification_type,
            Notification.target_type == target_type,
            Notification.target_id == target_id,
            Notification.window_index == window_index,
        )
        return db.execute(stmt).scalar_one_or_none()

    def _find_latest(
        self,
        db: Session,
        recipient_id: int,
        notification_type: NotificationType,
        target_type: NotificationTargetType,
        target_id: int,
    ) -> Notification | None:
        stmt = (
            select(Notification)
            .where(
                Notification.user_id == recipient_id,
                Notification.type == notification_type,
                Notification.target_type == target_type,
                Notification.target_id == target_id,
            )
            .order_by(Notification.updated_at.desc(), Notification.id.desc())
            .limit(1)
        )
        return db.execute(stmt).scalar_one_or_none()

    def _actor_name(self, db: Session, actor_id: int) -> str:
        actor = db.get(User, actor_id)
        return actor.display_name if actor is not None else FALLBACK_ACTOR

    def _initial_payload(
        self, db: Session, actor_id: int, extra: Mapping[str, Any] | None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = dict(extra or {})
        payload.update(
            actorIds=[actor_id],
            count=1,
            lastActorName=self._actor_name(db, actor_id),
        )
        return payload

    def _create(
        self,
        db: Session,
        recipient_id: int,
        actor_id: int,
        notification_type: NotificationType,
        target_type: NotificationTargetType,
        target_id: int,
        window_index: int,
        extra: Mapping[str, Any] | None,
        now: datetime,
    ) -> Notification:
        notification = Notification(
            user_id=recipient_id,
            actor_id=actor_id,
            type=notification_type,
            target_type=target_type,
            target_id=target_id,
            window_index=window_index,
            payload=self._initial_payload(db, actor_id, extra),
            created_at=now,
            updated_at=now,
        )
        db.add(notification)
        db.commit()
        return notification

    def _upsert_deduplicated(
        self,
        db: Session,
        recipient_id: int,
        actor_id: int,
        notification_type: NotificationType,
        target_type: NotificationTargetType,
        target_id: int,
        extra: Mapping[str, Any] | None,
        now: datetime,
    ) -> tuple[Notification, bool]:
        key = (recipient_id, notification_type, target_type, target_id, 0)
        existing = self._find(db, *key)
        if existing is None:
            try:
                return (
                    self._create(db, recipient_id, actor_id, notification_type, target_type, target_id, 0, extra, now),
                    True,
                )
            except IntegrityError:
                db.rollback()
                logger.debug("Notification %s already exists, updating instead", key)
                existing = self._find(db, *key)
                if existing is None:
                    raise

        payload = dict(existing.payload or {})
        payload.update(extra or {})
        payload.update(actorIds=[actor_id], count=1, lastActorName=self._actor_name(db, actor_id))
        existing.payload = payload
        existing.actor_id = actor_id
        existing.updated_at = now
        existing.read_at = None
        db.commit()
        return existing, True

    def _extend_group(
        self,
        db: Session,
        notification: Notification,
        actor_id: int,
        extra: Mapping[str, Any] | None,
        now: datetime,
    ) -> tuple[Notification, bool]:
        payload = dict(notification.payload or {})
        actor_ids = list(payload.get("actorIds") or [])
        if actor_id in actor_ids:
            return notification, False
        actor_ids.append(actor_id)
        payload.update(extra or {})
        payload.update(
            actorIds=actor_ids,
            count=len(actor_ids),
            lastActorName=self._actor_name(db, actor_id),
        )
        notification.payload = payload
        notification.updated_at = now
        notification.read_at = None
        db.commit()
        return notification, True

    def _upsert_grouped(
        self,
        db: Session,
        recipient_id: int,
        actor_id: int,
        notification_type: NotificationType,
        target_type: NotificationTargetType,
        target_id: int,
        extra: Mapping[str, Any] | None,
        now: datetime,
    ) -> tuple[Notification, bool]:
        latest = self._find_latest(db, recipient_id, notification_type, target_type, target_id)
        # Freshness follows the time since the last update, not the bucket key
        if latest is not None and now - as_utc(latest.updated_at) < self._window:
            return self._extend_group(db, latest, actor_id, extra, now)

        window_index = self.window_index(now)
        try:
            return (
                self._create(
                    db, recipient_id, actor_id, notification_type, target_type, target_id, window_index, extra, now
                ),
                True,
            )
        except IntegrityError:
            db.rollback()
            existing = self._find(db, recipient_id, notification_type, target_type, target_id, window_index)
            if existing is None:
                raise
            return self._extend_group(db, existing, actor_id, extra, now)

    async def _push_transient(
        self,
        db: Session,
        *,
        recipient_id: int,
        actor_id: int,
        notification_type: NotificationType,
        target_type: NotificationTargetType,
        target_id: int,
        extra: Mapping[str, Any] | None,
    ) -> None:
        actor = db.get(User, actor_id)
        metadata: dict[str, Any] = dict(extra or {})
        metadata.setdefault("senderId", actor_id)
        now = self._clock()
        notification = NotificationRead(
            type=notification_type,
            actor=_actor_summary(actor),
            target=NotificationTarget(type=target_type, id=target_id),
            message=render_notification(
                notification_type,
                target_type,
                metadata,
                actor.display_name if actor is not None else None,
            ),
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        await self._push(recipient_id, notification)

    async def _push(self, recipient_id: int, notification: NotificationRead) -> None:
        try:
            await self._hub.publish(
                user_channel(recipient_id),
                NOTIFICATION_EVENT,
                notification.model_dump(mode="json"),
            )
        except Exception:
            logger.exception("Failed to push notification to user %s", recipient_id)

    # -- read side --------------------------------------------------------

    def _invalidate_unread(self, user_id: int) -> None:
        try:
            self.cache.delete(_unread_cache_key(user_id))
        except Exception:
            logger.warning("Could not invalidate unread counter for user %s", user_id, exc_info=True)

    def list_notifications(self, db: Session, user_id: int, *, page: int = 1, limit: int | None = None) -> NotificationPage:
        limit = limit or settings.notifications_page_default_limit
        limit = max(1, min(limit, settings.notifications_page_max_limit))
        page = max(1, page)

        total = int(
            db.execute(select(func.count(Notification.id)).where(Notification.user_id == user_id)).scalar_one()
        )
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.updated_at.desc(), Notification.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        notifications = db.execute(stmt).scalars().all()
        return NotificationPage(
            notifications=[serialize_notification(item) for item in notifications],
            pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
        )

    def unread_count(self, db: Session, user_id: int) -> int:
        key = _unread_cache_key(user_id)
        try:
            cached = self.cache.get(key)
        except Exception:
            logger.warning("Unread counter cache unavailable", exc_info=True)
            cached = None
        if cached is not None:
            return int(cached)

        count = int(
            db.execute(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id,
                    Notification.read_at.is_(None),
                )
            ).scalar_one()
        )
        try:
            self.cache.set(key, str(count), self._cache_ttl)
        except Exception:
            logger.warning("Could not cache unread counter for user %s", user_id, exc_info=True)
        return count

    def owns(self, db: Session, user_id: int, notification_id: int) -> bool:
        notification = db.get(Notification, notification_id)
        return notification is not None and notification.user_id == user_id

    def mark_read(self, db: Session, user_id: int, notification_id: int) -> bool:
        result = db.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
                Notification.read_at.is_(None),
            )
            .values(read_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        self._invalidate_unread(user_id)
        return (result.rowcount or 0) > 0

    def mark_all_read(self, db: Session, user_id: int) -> int:
        result = db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read_at.is_(None))
            .values(read_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        self._invalidate_unread(user_id)
        return result.rowcount or 0


notification_aggregator = NotificationAggregator(
    get_channel_hub(),
    window_seconds=settings.notification_group_window_seconds,
    cache_ttl_seconds=settings.notification_cache_ttl_seconds,
)


def get_notification_aggregator() -> NotificationAggregator:
    return notification_aggregator
