"""Pydantic schemas for API payloads."""

from .messages import (
    ConversationReadResult,
    MessageAuthor,
    MessageCreate,
    MessageEdit,
    MessageHistoryPage,
    MessageRead,
    MessageReactionSummary,
    PinnedMessageRead,
    PinToggleResult,
    ReactionRequest,
)
from .notifications import (
    MarkReadResult,
    NotificationActor,
    NotificationPage,
    NotificationRead,
    NotificationTarget,
    UnreadCount,
)

__all__ = [
    "ConversationReadResult",
    "MessageAuthor",
    "MessageCreate",
    "MessageEdit",
    "MessageHistoryPage",
    "MessageRead",
    "MessageReactionSummary",
    "PinnedMessageRead",
    "PinToggleResult",
    "ReactionRequest",
    "MarkReadResult",
    "NotificationActor",
    "NotificationPage",
    "NotificationRead",
    "NotificationTarget",
    "UnreadCount",
]
