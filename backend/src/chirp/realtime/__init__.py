"""Realtime helpers for websocket channel fan-out."""

from .channels import (  # noqa: F401
    ConnectionSession,
    active_conversation_channel,
    conversation_channel,
    user_channel,
)
from .managers import (  # noqa: F401
    ChannelHub,
    PresenceRegistry,
    TypingManager,
    build_frame,
    get_channel_hub,
    get_presence_registry,
    get_typing_manager,
    safe_send_json,
    shutdown_realtime,
    startup_realtime,
)

__all__ = [
    "startup_realtime",
    "shutdown_realtime",
    "get_channel_hub",
    "get_presence_registry",
    "get_typing_manager",
    "safe_send_json",
    "build_frame",
    "ChannelHub",
    "ConnectionSession",
    "PresenceRegistry",
    "TypingManager",
    "active_conversation_channel",
    "conversation_channel",
    "user_channel",
]
