"""Test doubles shared across realtime tests."""

from __future__ import annotations

from typing import Any

from fastapi.websockets import WebSocketState


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def frames(self, event: str) -> list[dict[str, Any]]:
        return [frame["payload"] for frame in self.sent if frame.get("type") == event]
