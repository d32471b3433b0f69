"""Conversation history, messaging, read acknowledgement and pin endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from chirp.realtime import get_channel_hub

from app.api.deps import get_current_user
from app.database import get_db
from app.models import User
from app.schemas.messages import (
    ConversationReadResult,
    MessageCreate,
    MessageHistoryPage,
    MessageRead,
    PinnedMessageRead,
    PinToggleResult,
)
from app.services import ChatError, conversations
from app.services.fanout import deliver_message
from app.services.presence import get_presence_service

router = APIRouter(tags=["conversations"])


@router.get("/conversations/{conversation_id}/messages", response_model=MessageHistoryPage)
def read_history(
    conversation_id: int,
    limit: int | None = Query(default=None, ge=1),
    before_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageHistoryPage:
    try:
        return conversations.fetch_history(
            db, conversation_id, current_user.id, limit=limit, before_id=before_id
        )
    except ChatError as exc:
        raise exc.to_http() from exc


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_message(
    conversation_id: int,
    payload: MessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessageRead:
    presence = get_presence_service()
    try:
        message, plan = conversations.send_message(
            db,
            conversation_id=conversation_id,
            sender_id=current_user.id,
            content=payload.content,
            message_type=payload.type,
            media_url=payload.media_url,
            reply_to_id=payload.reply_to_id,
            active_user_ids=presence.active_user_ids(conversation_id),
        )
    except ChatError as exc:
        raise exc.to_http() from exc
    return await deliver_message(db, get_channel_hub(), message, plan)


@router.post("/conversations/{conversation_id}/read", response_model=ConversationReadResult)
async def mark_conversation_read(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ConversationReadResult:
    try:
        conversations.require_membership(db, conversation_id, current_user.id)
    except ChatError as exc:
        raise exc.to_http() from exc
    return await get_presence_service().acknowledge_read(db, current_user.id, conversation_id)


@router.get("/conversations/{conversation_id}/pins", response_model=list[PinnedMessageRead])
def read_pins(
    conversation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[PinnedMessageRead]:
    try:
        pins = conversations.list_pins(db, conversation_id, current_user.id)
    except ChatError as exc:
        raise exc.to_http() from exc
    return [PinnedMessageRead.from_pin(pin) for pin in pins]


@router.post("/messages/{message_id}/pin", response_model=PinToggleResult)
async def toggle_pin(
    message_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PinToggleResult:
    try:
        action, pin, message = conversations.toggle_pin(db, message_id=message_id, user_id=current_user.id)
    except ChatError as exc:
        raise exc.to_http() from exc
    await conversations.publish_pin_update(get_channel_hub(), message, action, pin)
    return PinToggleResult(
        message_id=message.id,
        conversation_id=message.conversation_id,
        action=action,
        pinned=PinnedMessageRead.from_pin(pin) if pin is not None else None,
    )
