"""In-process realtime managers for conversation and user channels."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Dict, Iterable, Sequence, Set

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.config import get_settings

from .channels import ConnectionSession, conversation_channel

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Safely send JSON data through websocket, handling disconnections gracefully.

    Returns True if message was sent successfully, False otherwise.
    """
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


def build_frame(event: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": event, "payload": payload}


# ---------------------------------------------------------------------------
# Channel hub
# ---------------------------------------------------------------------------


class ChannelHub:
    """Publish/subscribe over named channels of websocket sessions."""

    def __init__(self) -> None:
        self._channels: Dict[str, Set[ConnectionSession]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def subscribe(self, session: ConnectionSession, channel: str) -> bool:
        async with self._lock:
            bucket = self._channels[channel]
            if session in bucket:
                return False
            bucket.add(session)
            session.channels.add(channel)
            return True

    async def unsubscribe(self, session: ConnectionSession, channel: str) -> bool:
        async with self._lock:
            bucket = self._channels.get(channel)
            session.channels.discard(channel)
            if not bucket or session not in bucket:
                return False
            bucket.discard(session)
            if not bucket:
                self._channels.pop(channel, None)
            return True

    async def unsubscribe_all(self, session: ConnectionSession) -> list[str]:
        async with self._lock:
            left: list[str] = []
            for channel in list(session.channels):
                bucket = self._channels.get(channel)
                if bucket and session in bucket:
                    bucket.discard(session)
                    left.append(channel)
                    if not bucket:
                        self._channels.pop(channel, None)
            session.channels.clear()
            return left

    def subscribers(self, channel: str) -> set[ConnectionSession]:
        return set(self._channels.get(channel, ()))

    def user_ids(self, channel: str) -> set[int]:
        return {session.user_id for session in self._channels.get(channel, ())}

    async def publish(
        self,
        channel: str,
        event: str,
        payload: dict[str, Any],
        *,
        exclude: Iterable[ConnectionSession] | None = None,
    ) -> int:
        """Send ``event`` to every session on ``channel``; returns the delivered count."""

        sessions = self.subscribers(channel)
        if not sessions:
            return 0
        exclude_set = set(exclude or [])
        frame = build_frame(event, payload)
        delivered = 0
        for session in sessions:
            if session in exclude_set:
                continue
            if await safe_send_json(session.websocket, frame):
                delivered += 1
        logger.debug("Published %s to %s (%d sessions)", event, channel, delivered)
        return delivered

    async def clear(self) -> None:
        async with self._lock:
            for bucket in self._channels.values():
                for session in bucket:
                    session.channels.clear()
            self._channels.clear()


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------


class PresenceRegistry:
    """Tracks live sessions per user on this process."""

    def __init__(self) -> None:
        self._sessions: Dict[int, Set[ConnectionSession]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def add(self, session: ConnectionSession) -> bool:
        """Register a session; True when it is the user's first live session."""

        async with self._lock:
            bucket = self._sessions[session.user_id]
            first = not bucket
            bucket.add(session)
            return first

    async def remove(self, session: ConnectionSession) -> bool:
        """Forget a session; True when the user has no live sessions left."""

        async with self._lock:
            bucket = self._sessions.get(session.user_id)
            if not bucket or session not in bucket:
                return False
            bucket.discard(session)
            if bucket:
                return False
            self._sessions.pop(session.user_id, None)
            return True

    def is_connected(self, user_id: int) -> bool:
        return bool(self._sessions.get(user_id))

    def sessions_for(self, user_id: int) -> list[ConnectionSession]:
        return list(self._sessions.get(user_id, ()))

    async def clear(self) -> None:
        async with self._lock:
            self._sessions.clear()


# ---------------------------------------------------------------------------
# Typing indicators
# ---------------------------------------------------------------------------


class TypingStatusStore:
    """Stores transient typing indicators per conversation."""

    def __init__(self, ttl_seconds: float) -> None:
        self._ttl = ttl_seconds
        self._entries: Dict[int, Dict[int, tuple[str, float]]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def _cleanup_expired(
        self, conversation_id: int, bucket: Dict[int, tuple[str, float]], now: float
    ) -> bool:
        removed = [user_id for user_id, (_, ts) in bucket.items() if now - ts > self._ttl]
        for user_id in removed:
            bucket.pop(user_id, None)
        if not bucket:
            self._entries.pop(conversation_id, None)
        return bool(removed)

    @staticmethod
    def _build_snapshot(bucket: Dict[int, tuple[str, float]]) -> list[dict[str, str | int]]:
        entries: list[dict[str, str | int]] = [
            {"id": user_id, "display_name": display_name}
            for user_id, (display_name, _) in bucket.items()
        ]
        entries.sort(key=lambda item: str(item["display_name"]).lower())
        return entries

    async def set_status(
        self,
        conversation_id: int,
        *,
        user_id: int,
        display_name: str,
        is_typing: bool,
    ) -> tuple[list[dict[str, str | int]], bool]:
        now = time.monotonic()
        async with self._lock:
            bucket = self._entries.setdefault(conversation_id, {})
            changed = False
            if is_typing:
                changed = user_id not in bucket
                bucket[user_id] = (display_name, now)
            elif user_id in bucket:
                bucket.pop(user_id, None)
                changed = True

            if self._cleanup_expired(conversation_id, bucket, now):
                changed = True
            return self._build_snapshot(bucket), changed

    async def clear_user(self, user_id: int) -> list[tuple[int, list[dict[str, str | int]]]]:
        """Drop ``user_id`` from every conversation; returns the touched snapshots."""

        now = time.monotonic()
        async with self._lock:
            touched: list[tuple[int, list[dict[str, str | int]]]] = []
            for conversation_id in list(self._entries):
                bucket = self._entries[conversation_id]
                if user_id not in bucket:
                    continue
                bucket.pop(user_id, None)
                self._cleanup_expired(conversation_id, bucket, now)
                touched.append((conversation_id, self._build_snapshot(bucket)))
            return touched

    async def snapshot(self, conversation_id: int) -> list[dict[str, str | int]]:
        now = time.monotonic()
        async with self._lock:
            bucket = self._entries.get(conversation_id)
            if not bucket:
                return []
            self._cleanup_expired(conversation_id, bucket, now)
            return self._build_snapshot(bucket)


class TypingManager:
    """Broadcast typing indicators to conversation channels."""

    def __init__(self, hub: ChannelHub, *, ttl_seconds: float) -> None:
        self._hub = hub
        self._store = TypingStatusStore(ttl_seconds)

    @property
    def ttl(self) -> float:
        return self._store.ttl

    def _payload(
        self, conversation_id: int, user_id: int, is_typing: bool, users: Sequence[dict[str, Any]]
    ) -> dict[str, Any]:
        return {
            "conversation_id": conversation_id,
            "user_id": user_id,
            "is_typing": is_typing,
            "users": list(users),
            "expires_in": self._store.ttl,
        }

    async def set_status(
        self,
        conversation_id: int,
        session: ConnectionSession,
        display_name: str,
        is_typing: bool,
    ) -> bool:
        snapshot, changed = await self._store.set_status(
            conversation_id,
            user_id=session.user_id,
            display_name=display_name,
            is_typing=is_typing,
        )
        if not changed:
            return False
        await self._hub.publish(
            conversation_channel(conversation_id),
            "chat:user_typing",
            self._payload(conversation_id, session.user_id, is_typing, snapshot),
            exclude={session},
        )
        return True

    async def clear_user(self, user_id: int) -> None:
        for conversation_id, snapshot in await self._store.clear_user(user_id):
            await self._hub.publish(
                conversation_channel(conversation_id),
                "chat:user_typing",
                self._payload(conversation_id, user_id, False, snapshot),
            )

    async def snapshot(self, conversation_id: int) -> list[dict[str, str | int]]:
        return await self._store.snapshot(conversation_id)


# ---------------------------------------------------------------------------
# Module level lifecycle helpers
# ---------------------------------------------------------------------------


settings = get_settings()

channel_hub = ChannelHub()
presence_registry = PresenceRegistry()
typing_manager = TypingManager(channel_hub, ttl_seconds=float(settings.typing_ttl_seconds))


async def startup_realtime() -> None:
    logger.info("Realtime hub ready (in-process fan-out)")


async def shutdown_realtime() -> None:
    await asyncio.gather(channel_hub.clear(), presence_registry.clear())


# Convenience accessors exposed to the FastAPI layer ----------------------


def get_channel_hub() -> ChannelHub:
    return channel_hub


def get_presence_registry() -> PresenceRegistry:
    return presence_registry


def get_typing_manager() -> TypingManager:
    return typing_manager


__all__ = [
    "ChannelHub",
    "PresenceRegistry",
    "TypingManager",
    "TypingStatusStore",
    "build_frame",
    "safe_send_json",
    "startup_realtime",
    "shutdown_realtime",
    "get_channel_hub",
    "get_presence_registry",
    "get_typing_manager",
]
