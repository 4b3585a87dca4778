"""Notification inbox routes and tap resolution."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from karma_notify.dependencies import get_action_router, get_current_user_id, get_db
from karma_notify.schemas.notification import (
    DestinationResponse,
    NotificationActionRequest,
    NotificationResponse,
    UnreadCountResponse,
    UserNotificationResponse,
)
from karma_notify.services import notification_inbox
from karma_notify.services.action_router import NotificationAction, NotificationActionRouter

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _to_response(row) -> UserNotificationResponse:
    n = row.notification
    return UserNotificationResponse(
        id=str(row.id),
        user_id=str(row.user_id),
        notification_id=str(row.notification_id),
        is_read=row.is_read,
        read_at=_iso(row.read_at),
        created_at=row.created_at.isoformat(),
        notification=NotificationResponse(
            id=str(n.id),
            title=n.title,
            message=n.message,
            type=n.type,
            target_audience=n.target_audience,
            is_active=n.is_active,
            scheduled_at=_iso(n.scheduled_at),
            expires_at=_iso(n.expires_at),
            created_at=n.created_at.isoformat(),
            updated_at=n.updated_at.isoformat(),
        )
        if n is not None
        else None,
    )


@router.get("", response_model=list[UserNotificationResponse])
async def list_notifications(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """List inbox notifications for the current user, newest first."""
    rows = await notification_inbox.list_for_user(
        db, user_id, include_read=not unread_only, limit=limit, offset=offset
    )
    return [_to_response(r) for r in rows]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return UnreadCountResponse(count=await notification_inbox.unread_count(db, user_id))


@router.post("/{user_notification_id}/read")
async def mark_notification_read(
    user_notification_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    if not await notification_inbox.mark_read(db, user_id, user_notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"status": "ok"}


@router.delete("/{user_notification_id}", status_code=204)
async def delete_notification(
    user_notification_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    if not await notification_inbox.delete_for_user(db, user_id, user_notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")


@router.post("/resolve", response_model=DestinationResponse)
async def resolve_notification_action(
    body: NotificationActionRequest,
    router_: NotificationActionRouter = Depends(get_action_router),
):
    """Resolve a tap payload to a destination without navigating.

    Web clients never register for native push but still render links from
    the inbox, so they ask the server where a link should go.
    """
    destination = router_.route(NotificationAction(link=body.link, notification_id=body.notification_id))
    return DestinationResponse(kind=destination.kind.value, target=destination.target)
