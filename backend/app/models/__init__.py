"""Database models package."""

from .base import Base
from .chat import (
    Conversation,
    ConversationMember,
    Message,
    MessageEditHistory,
    MessageReaction,
    MessageState,
    Notification,
    PinnedMessage,
    User,
)
from .enums import (
    ConversationMessageType,
    DeliveryStatus,
    MemberRole,
    NotificationTargetType,
    NotificationType,
)

__all__ = [
    "Base",
    "User",
    "Conversation",
    "ConversationMember",
    "Message",
    "MessageEditHistory",
    "MessageState",
    "MessageReaction",
    "PinnedMessage",
    "Notification",
    "ConversationMessageType",
    "DeliveryStatus",
    "MemberRole",
    "NotificationType",
    "NotificationTargetType",
]
