"""Human readable notification messages (Vietnamese locale)."""

from __future__ import annotations

from typing import Any, Mapping

from app.models import NotificationTargetType, NotificationType

FALLBACK_ACTOR = "Ai đó"

_PHRASES: dict[tuple[NotificationType, NotificationTargetType | None], str] = {
    (NotificationType.FOLLOW, None): "đã theo dõi bạn.",
    (NotificationType.FOLLOW_REQUEST, None): "đã gửi yêu cầu theo dõi bạn.",
    (NotificationType.FOLLOW_ACCEPTED, None): "đã chấp nhận yêu cầu theo dõi của bạn.",
    (NotificationType.FOLLOW_REJECTED, None): "đã từ chối yêu cầu theo dõi của bạn.",
    (NotificationType.REACTION, NotificationTargetType.POST): "đã thích bài viết của bạn.",
    (NotificationType.REACTION, NotificationTargetType.COMMENT): "đã thích bình luận của bạn.",
    (NotificationType.COMMENT, None): "đã bình luận bài viết của bạn.",
    (NotificationType.REPLY, None): "đã trả lời bình luận của bạn.",
    (NotificationType.REPOST, None): "đã chia sẻ bài viết của bạn.",
    (NotificationType.MESSAGE, None): "đã gửi tin nhắn cho bạn.",
}
_DEFAULT_PHRASE = "đã tương tác với bạn."


def phrase_for(kind: NotificationType, target_type: NotificationTargetType | None = None) -> str:
    return _PHRASES.get((kind, target_type)) or _PHRASES.get((kind, None), _DEFAULT_PHRASE)


def render_notification(
    kind: NotificationType,
    target_type: NotificationTargetType | None,
    metadata: Mapping[str, Any] | None,
    actor_name: str | None = None,
) -> str:
    """Render the message pushed to clients.

    ``actor_name`` is the notification row's actor, which for a rolled-up
    group is the user who opened it: "<name> và N-1 người khác ...".
    ``metadata["lastActorName"]`` only fills in when no actor is known.
    """

    metadata = metadata or {}
    name = actor_name or metadata.get("lastActorName") or FALLBACK_ACTOR
    count = int(metadata.get("count") or 1)
    phrase = phrase_for(kind, target_type)
    if count > 1:
        return f"{name} và {count - 1} người khác {phrase}"
    return f"{name} {phrase}"
