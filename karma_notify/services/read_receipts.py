"""Mark a delivered notification as read once its tap has been handled."""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from karma_notify.metrics import read_receipts_total
from karma_notify.models.notification import UserNotification

logger = logging.getLogger(__name__)


class ReadReceiptUpdater:
    """Best-effort: failures are logged and never propagate."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def mark_read(self, user_id: uuid.UUID | str, notification_id: uuid.UUID | str) -> bool:
        try:
            user_uuid = user_id if isinstance(user_id, uuid.UUID) else uuid.UUID(str(user_id))
            notification_uuid = (
                notification_id if isinstance(notification_id, uuid.UUID) else uuid.UUID(str(notification_id))
            )
            async with self._session_factory() as db:
                await db.execute(
                    update(UserNotification)
                    .where(
                        UserNotification.user_id == user_uuid,
                        UserNotification.notification_id == notification_uuid,
                    )
                    .values(is_read=True, read_at=datetime.now(timezone.utc))
                )
                await db.commit()
        except Exception as e:
            read_receipts_total.labels(outcome="failed").inc()
            logger.error("Error marking notification %s as read for user %s: %s", notification_id, user_id, e)
            return False

        read_receipts_total.labels(outcome="ok").inc()
        return True
