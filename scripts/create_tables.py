"""Create the notification tables on a development database."""

import asyncio

from sqlalchemy.ext.asyncio import create_async_engine

from karma_notify.config import get_settings
from karma_notify.models import DeviceToken, Notification, UserNotification  # noqa: F401
from karma_notify.models.base import Base


async def create_tables():
    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=settings.debug)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    print(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    asyncio.run(create_tables())
