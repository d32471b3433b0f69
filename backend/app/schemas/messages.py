"""Schemas related to conversation messages."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.core.clock import as_utc
from app.models import ConversationMessageType, DeliveryStatus, Message, PinnedMessage, User


class MessageAuthor(BaseModel):
    """Lightweight author information for displaying messages."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    display_name: str
    avatar_url: str | None = None
    is_online: bool = False

    @classmethod
    def from_user(cls, user: User | None) -> "MessageAuthor | None":
        if user is None:
            return None
        return cls(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            avatar_url=user.avatar_url,
            is_online=user.is_online,
        )


class MessageReactionSummary(BaseModel):
    """Aggregated reaction information for a message."""

    emoji: str = Field(..., description="Emoji identifier, e.g. 😀 or :thumbsup:")
    count: int = Field(..., ge=0, description="Total reactions with the emoji")
    user_ids: list[int] = Field(
        default_factory=list,
        description="Identifiers of users who added this reaction",
    )


class MessageStateRead(BaseModel):
    user_id: int
    status: DeliveryStatus


class MessageRead(BaseModel):
    """Serialized representation of a conversation message."""

    id: int
    conversation_id: int
    sender_id: int | None
    sender: MessageAuthor | None = None
    type: ConversationMessageType
    content: str | None
    media_url: str | None = None
    reply_to_id: int | None = None
    is_recalled: bool = False
    recalled_at: datetime | None = None
    edited: bool = False
    created_at: datetime
    updated_at: datetime
    reactions: list[MessageReactionSummary] = []
    states: list[MessageStateRead] = []

    @classmethod
    def from_message(cls, message: Message) -> "MessageRead":
        grouped: dict[str, list[int]] = defaultdict(list)
        for reaction in message.reactions:
            grouped[reaction.emoji].append(reaction.user_id)
        reactions = [
            MessageReactionSummary(emoji=emoji, count=len(user_ids), user_ids=sorted(user_ids))
            for emoji, user_ids in sorted(grouped.items())
        ]
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            sender=MessageAuthor.from_user(message.sender),
            type=message.type,
            # Recalled messages never expose their original content
            content=None if message.is_recalled else message.content,
            media_url=None if message.is_recalled else message.media_url,
            reply_to_id=message.reply_to_id,
            is_recalled=message.is_recalled,
            recalled_at=as_utc(message.recalled_at),
            edited=bool(message.edit_history),
            created_at=as_utc(message.created_at),
            updated_at=as_utc(message.updated_at),
            reactions=reactions,
            states=[
                MessageStateRead(user_id=state.user_id, status=state.status)
                for state in sorted(message.states, key=lambda item: item.user_id)
            ],
        )


class MessageHistoryPage(BaseModel):
    """Newest page of a conversation, oldest message first."""

    items: list[MessageRead]
    has_more: bool = False
    next_before_id: int | None = None


class MessageCreate(BaseModel):
    """Payload for posting a message into a conversation."""

    content: str | None = None
    type: ConversationMessageType = ConversationMessageType.TEXT
    media_url: str | None = Field(default=None, max_length=512)
    reply_to_id: int | None = None


class MessageEdit(BaseModel):
    content: str = Field(..., min_length=1)


class ReactionRequest(BaseModel):
    """Payload for adding, changing or removing a reaction."""

    emoji: str = Field(..., min_length=1, max_length=32)


class PinnedMessageRead(BaseModel):
    """Pinned message metadata combined with serialized message."""

    id: int
    conversation_id: int
    message_id: int
    message: MessageRead
    pinned_at: datetime
    pinned_by: MessageAuthor | None = None

    @classmethod
    def from_pin(cls, pin: PinnedMessage) -> "PinnedMessageRead":
        return cls(
            id=pin.id,
            conversation_id=pin.conversation_id,
            message_id=pin.message_id,
            message=MessageRead.from_message(pin.message),
            pinned_at=as_utc(pin.pinned_at),
            pinned_by=MessageAuthor.from_user(pin.pinned_by),
        )


class PinToggleResult(BaseModel):
    message_id: int
    conversation_id: int
    action: str
    pinned: PinnedMessageRead | None = None


class ConversationReadResult(BaseModel):
    conversation_id: int
    message_ids: list[int]
    unread_count: int
