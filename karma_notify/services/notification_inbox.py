"""In-app notification inbox queries for a single user."""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from karma_notify.models.notification import UserNotification

logger = logging.getLogger(__name__)


async def list_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    include_read: bool = True,
    limit: int = 50,
    offset: int = 0,
) -> list[UserNotification]:
    """Newest first, with the broadcast notification joined in. Errors propagate."""
    query = (
        select(UserNotification)
        .where(UserNotification.user_id == user_id)
        .options(joinedload(UserNotification.notification))
        .order_by(UserNotification.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if not include_read:
        query = query.where(UserNotification.is_read == False)  # noqa: E712

    result = await db.execute(query)
    return list(result.scalars().unique().all())


async def mark_read(db: AsyncSession, user_id: uuid.UUID, user_notification_id: uuid.UUID) -> bool:
    """Mark one inbox row as read. Returns False if the row does not belong to the user."""
    result = await db.execute(
        update(UserNotification)
        .where(UserNotification.id == user_notification_id, UserNotification.user_id == user_id)
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    return result.rowcount > 0


async def unread_count(db: AsyncSession, user_id: uuid.UUID) -> int:
    try:
        result = await db.execute(
            select(func.count())
            .select_from(UserNotification)
            .where(UserNotification.user_id == user_id, UserNotification.is_read == False)  # noqa: E712
        )
        return result.scalar() or 0
    except Exception as e:
        logger.error("Error getting unread count for user %s: %s", user_id, e)
        return 0


async def delete_for_user(db: AsyncSession, user_id: uuid.UUID, user_notification_id: uuid.UUID) -> bool:
    try:
        result = await db.execute(
            delete(UserNotification).where(
                UserNotification.id == user_notification_id,
                UserNotification.user_id == user_id,
            )
        )
    except Exception as e:
        logger.error("Error deleting user notification %s: %s", user_notification_id, e)
        return False
    return result.rowcount > 0
