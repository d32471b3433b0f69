"""WebSocket endpoint for realtime chat and notifications."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from sqlalchemy.exc import SQLAlchemyError

from chirp.realtime import ConnectionSession, build_frame, safe_send_json

from app.api.deps import get_user_from_token
from app.config import get_settings
from app.database import get_db_session
from app.models import ConversationMessageType, User
from app.services import ChatError, ValidationError, conversations
from app.services.fanout import deliver_message
from app.services.notifications import get_notification_aggregator
from app.services.presence import get_presence_service

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

presence = get_presence_service()
notification_aggregator = get_notification_aggregator()

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = False
            if interval <= 0:
                should_ping = True
            else:
                if now - last_activity >= interval and (
                    last_ping_sent is None or now - last_ping_sent >= interval
                ):
                    should_ping = True

            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _resolve_user(websocket: WebSocket) -> User | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        with get_db_session() as db:
            return get_user_from_token(token, db)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


async def _send_error(websocket: WebSocket, detail: str, request_type: str | None = None) -> None:
    await safe_send_json(websocket, build_frame("chat:error", {"detail": detail, "request_type": request_type}))


def _require_int(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    return value


def _require_int_list(data: dict[str, Any], key: str) -> list[int]:
    values = data.get(key)
    if not isinstance(values, list) or any(
        isinstance(item, bool) or not isinstance(item, int) for item in values
    ):
        raise ValidationError(f"{key} must be a list of integers")
    return values


# ---------------------------------------------------------------------------
# Frame handlers
# ---------------------------------------------------------------------------


async def _join_conversation(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    conversation_id = _require_int(data, "conversation_id")
    with get_db_session() as db:
        await presence.enter_conversation(db, session, conversation_id)


async def _leave_conversation(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    conversation_id = _require_int(data, "conversation_id")
    await presence.typing.set_status(conversation_id, session, user.display_name, False)
    await presence.leave_conversation(session, conversation_id)


async def _send_message(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    conversation_id = _require_int(data, "conversation_id")
    try:
        message_type = ConversationMessageType(data.get("type") or ConversationMessageType.TEXT.value)
    except ValueError:
        raise ValidationError("Unsupported message type") from None
    reply_to_id = data.get("reply_to_id")
    if reply_to_id is not None:
        reply_to_id = _require_int(data, "reply_to_id")
    content = data.get("content")
    if content is not None and not isinstance(content, str):
        raise ValidationError("content must be a string")

    with get_db_session() as db:
        message, plan = conversations.send_message(
            db,
            conversation_id=conversation_id,
            sender_id=session.user_id,
            content=content,
            message_type=message_type,
            media_url=data.get("media_url"),
            reply_to_id=reply_to_id,
            active_user_ids=presence.active_user_ids(conversation_id),
        )
        await deliver_message(db, presence.hub, message, plan, aggregator=notification_aggregator)
    await presence.typing.set_status(conversation_id, session, user.display_name, False)


async def _edit_message(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    message_id = _require_int(data, "message_id")
    content = data.get("content")
    if not isinstance(content, str):
        raise ValidationError("content must be a string")
    with get_db_session() as db:
        message = conversations.edit_message(db, message_id=message_id, user_id=session.user_id, content=content)
        await conversations.publish_message_update(presence.hub, "chat:message_edited", message)


async def _recall_message(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    message_id = _require_int(data, "message_id")
    with get_db_session() as db:
        message = conversations.recall_message(db, message_id=message_id, user_id=session.user_id)
        await conversations.publish_message_update(presence.hub, "chat:message_recalled", message)


async def _delete_message(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    message_id = _require_int(data, "message_id")
    with get_db_session() as db:
        message = conversations.delete_message(db, message_id=message_id, user_id=session.user_id)
        await conversations.publish_message_deleted(presence.hub, message.conversation_id, message.id)


async def _react_message(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    message_id = _require_int(data, "message_id")
    emoji = data.get("emoji")
    if not isinstance(emoji, str):
        raise ValidationError("emoji must be a string")
    with get_db_session() as db:
        message, action = conversations.toggle_reaction(
            db, message_id=message_id, user_id=session.user_id, emoji=emoji
        )
        await conversations.publish_reaction_update(presence.hub, message, session.user_id, action)


async def _pin_message(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    message_id = _require_int(data, "message_id")
    with get_db_session() as db:
        action, pin, message = conversations.toggle_pin(db, message_id=message_id, user_id=session.user_id)
        await conversations.publish_pin_update(presence.hub, message, action, pin)


async def _leave_group(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    conversation_id = _require_int(data, "conversation_id")
    with get_db_session() as db:
        change = conversations.leave_group(db, conversation_id=conversation_id, user_id=session.user_id)
        await presence.apply_membership_change(db, change)


async def _add_members(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    conversation_id = _require_int(data, "conversation_id")
    member_ids = _require_int_list(data, "member_ids")
    with get_db_session() as db:
        change = conversations.add_members(
            db, conversation_id=conversation_id, user_id=session.user_id, member_ids=member_ids
        )
        await presence.apply_membership_change(db, change)
    if change.skipped_ids:
        await safe_send_json(
            session.websocket,
            build_frame(
                "chat:warning",
                {
                    "detail": f"{len(change.skipped_ids)} users are already members",
                    "request_type": "chat:add_members",
                    "skipped_ids": change.skipped_ids,
                },
            ),
        )


async def _remove_member(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    conversation_id = _require_int(data, "conversation_id")
    member_id = _require_int(data, "user_id")
    with get_db_session() as db:
        change = conversations.remove_member(
            db, conversation_id=conversation_id, user_id=session.user_id, member_id=member_id
        )
        await presence.apply_membership_change(db, change)


async def _typing(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    conversation_id = _require_int(data, "conversation_id")
    with get_db_session() as db:
        conversations.require_membership(db, conversation_id, session.user_id)
    await presence.typing.set_status(conversation_id, session, user.display_name, bool(data.get("is_typing", True)))


async def _message_seen(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    conversation_id = _require_int(data, "conversation_id")
    with get_db_session() as db:
        await presence.mark_seen(db, session, conversation_id)


async def _send_unread_notifications(session: ConnectionSession, db) -> None:
    await safe_send_json(
        session.websocket,
        build_frame(
            "notif:unread_count",
            {"unread_count": notification_aggregator.unread_count(db, session.user_id)},
        ),
    )


async def _notification_read(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    notification_id = _require_int(data, "notification_id")
    with get_db_session() as db:
        notification_aggregator.mark_read(db, session.user_id, notification_id)
        await _send_unread_notifications(session, db)


async def _notifications_all_read(session: ConnectionSession, user: User, data: dict[str, Any]) -> None:
    with get_db_session() as db:
        notification_aggregator.mark_all_read(db, session.user_id)
        await _send_unread_notifications(session, db)


FrameHandler = Callable[[ConnectionSession, User, dict[str, Any]], Awaitable[None]]

FRAME_HANDLERS: dict[str, FrameHandler] = {
    "chat:join_conversation": _join_conversation,
    "chat:leave_conversation": _leave_conversation,
    "chat:send_message": _send_message,
    "chat:edit_message": _edit_message,
    "chat:recall_message": _recall_message,
    "chat:delete_message": _delete_message,
    "chat:react_message": _react_message,
    "chat:pin_message": _pin_message,
    "chat:leave_group": _leave_group,
    "chat:add_members": _add_members,
    "chat:remove_member": _remove_member,
    "chat:typing": _typing,
    "message:seen": _message_seen,
    "notif:mark_read": _notification_read,
    "notif:mark_all_read": _notifications_all_read,
}


@router.websocket("/chat")
async def websocket_chat(websocket: WebSocket) -> None:
    """Realtime channel for conversations, delivery receipts and notifications."""

    user = await _resolve_user(websocket)
    if user is None:
        return

    await websocket.accept()
    session = ConnectionSession(user_id=user.id, websocket=websocket)
    try:
        with get_db_session() as db:
            await presence.connect(db, session)

        timeout_seconds = settings.websocket_keepalive_timeout_seconds
        ping_interval = settings.websocket_keepalive_ping_interval_seconds
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=timeout_seconds,
            ping_interval_seconds=ping_interval,
        ):
            try:
                frame = json.loads(raw_message)
            except json.JSONDecodeError:
                await _send_error(websocket, "Invalid message format")
                continue

            if not isinstance(frame, dict):
                await _send_error(websocket, "Message payload must be a JSON object")
                continue

            frame_type = frame.get("type")
            if frame_type == "ping":
                await safe_send_json(websocket, {"type": "pong"})
                continue
            if frame_type == "pong":
                continue

            handler = FRAME_HANDLERS.get(frame_type)
            if handler is None:
                await _send_error(websocket, "Unsupported message type", frame_type)
                continue

            data = frame.get("payload", {})
            if not isinstance(data, dict):
                await _send_error(websocket, "payload must be a JSON object", frame_type)
                continue

            try:
                await handler(session, user, data)
            except ChatError as exc:
                await _send_error(websocket, exc.detail, frame_type)
            except SQLAlchemyError:
                logger.exception("Database error while handling %s for user %s", frame_type, user.id)
                await _send_error(websocket, "Internal error", frame_type)
    finally:
        with get_db_session() as db:
            await presence.disconnect(db, session)
