"""Schemas for user notifications."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.models import NotificationTargetType, NotificationType


class NotificationActor(BaseModel):
    id: int
    username: str
    display_name: str
    avatar_url: str | None = None


class NotificationTarget(BaseModel):
    type: NotificationTargetType
    id: int


class NotificationRead(BaseModel):
    """Notification as pushed over the websocket and listed over REST."""

    id: int | None = Field(default=None, description="Absent for emit-only notifications")
    type: NotificationType
    actor: NotificationActor | None = None
    target: NotificationTarget
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    read_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class NotificationPage(BaseModel):
    notifications: list[NotificationRead]
    pagination: Pagination


class UnreadCount(BaseModel):
    unread_count: int


class MarkReadResult(BaseModel):
    updated: bool
    unread_count: int
