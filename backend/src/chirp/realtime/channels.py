"""Channel naming and per-connection session state."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

CONVERSATION_PREFIX = "conversation_"
ACTIVE_CONVERSATION_PREFIX = "active_conversation_"
USER_PREFIX = "user_"


def conversation_channel(conversation_id: int) -> str:
    return f"{CONVERSATION_PREFIX}{conversation_id}"


def active_conversation_channel(conversation_id: int) -> str:
    return f"{ACTIVE_CONVERSATION_PREFIX}{conversation_id}"


def user_channel(user_id: int) -> str:
    return f"{USER_PREFIX}{user_id}"


@dataclass(eq=False)
class ConnectionSession:
    """State owned by a single websocket connection.

    ``active_conversation_id`` is the conversation the client is currently
    viewing. It is only changed through the presence service so the fan-out
    router can read a consistent snapshot from the hub.
    """

    user_id: int
    websocket: Any
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    channels: set[str] = field(default_factory=set)
    active_conversation_id: int | None = None

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"ConnectionSession(user_id={self.user_id}, session_id={self.session_id!r})"
