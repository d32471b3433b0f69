from __future__ import annotations

from enum import Enum


class ConversationMessageType(str, Enum):
    """Kinds of payload a conversation message can carry."""

    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    FILE = "FILE"
    SYSTEM = "SYSTEM"


class MemberRole(str, Enum):
    """Role of a user inside a group conversation."""

    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class DeliveryStatus(str, Enum):
    """Per-recipient delivery lifecycle of a message.

    Statuses only ever advance: SENT -> DELIVERED -> READ.
    """

    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"

    @property
    def rank(self) -> int:
        return _DELIVERY_RANKS[self]

    def below(self) -> list["DeliveryStatus"]:
        """Statuses that may legally advance to this one."""

        return [status for status in DeliveryStatus if status.rank < self.rank]


_DELIVERY_RANKS = {
    DeliveryStatus.SENT: 0,
    DeliveryStatus.DELIVERED: 1,
    DeliveryStatus.READ: 2,
}


class NotificationType(str, Enum):
    """Actor events that produce user-facing notifications."""

    FOLLOW = "FOLLOW"
    FOLLOW_REQUEST = "FOLLOW_REQUEST"
    FOLLOW_ACCEPTED = "FOLLOW_ACCEPTED"
    FOLLOW_REJECTED = "FOLLOW_REJECTED"
    REACTION = "REACTION"
    COMMENT = "COMMENT"
    REPLY = "REPLY"
    REPOST = "REPOST"
    MESSAGE = "MESSAGE"


class NotificationTargetType(str, Enum):
    """Entity a notification points at."""

    USER = "USER"
    POST = "POST"
    COMMENT = "COMMENT"
    MESSAGE = "MESSAGE"
    CONVERSATION = "CONVERSATION"
