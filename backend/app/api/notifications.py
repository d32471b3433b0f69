"""Notification listing and read-state endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.database import get_db
from app.models import User
from app.schemas.notifications import MarkReadResult, NotificationPage, UnreadCount
from app.services.notifications import get_notification_aggregator

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationPage)
def list_notifications(
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> NotificationPage:
    return get_notification_aggregator().list_notifications(db, current_user.id, page=page, limit=limit)


@router.get("/unread-count", response_model=UnreadCount)
def unread_count(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> UnreadCount:
    return UnreadCount(unread_count=get_notification_aggregator().unread_count(db, current_user.id))


@router.post("/read-all", response_model=MarkReadResult)
def mark_all_read(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MarkReadResult:
    aggregator = get_notification_aggregator()
    updated = aggregator.mark_all_read(db, current_user.id)
    return MarkReadResult(updated=updated > 0, unread_count=aggregator.unread_count(db, current_user.id))


@router.post("/{notification_id}/read", response_model=MarkReadResult)
def mark_read(
    notification_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MarkReadResult:
    aggregator = get_notification_aggregator()
    updated = aggregator.mark_read(db, current_user.id, notification_id)
    if not updated and not aggregator.owns(db, current_user.id, notification_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return MarkReadResult(updated=updated, unread_count=aggregator.unread_count(db, current_user.id))
