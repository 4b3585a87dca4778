"""Durable (user, token) -> device metadata table."""

import abc
import logging
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from karma_notify.models.device_token import DeviceToken

logger = logging.getLogger(__name__)

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


class StoreErrorKind(str, Enum):
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    FATAL = "fatal"


class TokenStoreError(Exception):
    """A store failure tagged with whether retrying can help."""

    def __init__(self, kind: StoreErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind == StoreErrorKind.TRANSIENT


def mask_token(token: str) -> str:
    return f"{token[:8]}..."


def classify_db_error(exc: Exception) -> StoreErrorKind:
    """Map a SQLAlchemy/driver exception onto the store error taxonomy."""
    if isinstance(exc, IntegrityError):
        sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
        if sqlstate == UNIQUE_VIOLATION:
            return StoreErrorKind.CONFLICT
        return StoreErrorKind.FATAL
    if isinstance(exc, (OperationalError, InterfaceError, TimeoutError, ConnectionError)):
        return StoreErrorKind.TRANSIENT
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return StoreErrorKind.TRANSIENT
    return StoreErrorKind.FATAL


class TokenStore(abc.ABC):
    """Keyed by (user_id, token); last write wins on last_used_at."""

    @abc.abstractmethod
    async def upsert(self, user_id: uuid.UUID, token: str, platform: str, now: datetime) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, user_id: uuid.UUID, token: str) -> None:
        ...

    @abc.abstractmethod
    async def list_for_user(self, user_id: uuid.UUID) -> list[DeviceToken]:
        ...


class SqlAlchemyTokenStore(TokenStore):
    """Postgres-backed token store.

    ``upsert`` is a single ``INSERT ... ON CONFLICT (user_id, token) DO UPDATE``
    so concurrent writers of the same pair never produce two rows. If a
    unique violation still surfaces (e.g. the constraint was created after a
    racing plain insert), the existing row is updated explicitly instead.

    Each operation runs in its own session so the store can be shared by
    long-lived background retry tasks.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def build_upsert(user_id: uuid.UUID, token: str, platform: str, now: datetime):
        stmt = insert(DeviceToken).values(
            user_id=user_id,
            token=token,
            platform=platform,
            last_used_at=now,
        )
        return stmt.on_conflict_do_update(
            index_elements=[DeviceToken.user_id, DeviceToken.token],
            set_={"platform": stmt.excluded.platform, "last_used_at": stmt.excluded.last_used_at},
        )

    async def upsert(self, user_id: uuid.UUID, token: str, platform: str, now: datetime) -> None:
        async with self._session_factory() as db:
            try:
                await db.execute(self.build_upsert(user_id, token, platform, now))
                await db.commit()
                return
            except SQLAlchemyError as e:
                await db.rollback()
                kind = classify_db_error(e)
                if kind != StoreErrorKind.CONFLICT:
                    raise TokenStoreError(kind, f"upsert failed: {e}") from e
                logger.info("Token %s already exists for user %s, updating last_used_at", mask_token(token), user_id)

            try:
                result = await db.execute(
                    update(DeviceToken)
                    .where(DeviceToken.user_id == user_id, DeviceToken.token == token)
                    .values(platform=platform, last_used_at=now)
                )
                # Row vanished between the insert and the update (e.g. a logout delete).
                if result.rowcount == 0:
                    await db.rollback()
                    raise TokenStoreError(StoreErrorKind.TRANSIENT, "update fallback matched no row")
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                kind = classify_db_error(e)
                # A conflict on a plain UPDATE is not a duplicate we can resolve here.
                if kind == StoreErrorKind.CONFLICT:
                    kind = StoreErrorKind.FATAL
                raise TokenStoreError(kind, f"update fallback failed: {e}") from e

    async def delete(self, user_id: uuid.UUID, token: str) -> None:
        async with self._session_factory() as db:
            try:
                await db.execute(
                    delete(DeviceToken).where(DeviceToken.user_id == user_id, DeviceToken.token == token)
                )
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise TokenStoreError(classify_db_error(e), f"delete failed: {e}") from e

    async def list_for_user(self, user_id: uuid.UUID) -> list[DeviceToken]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(DeviceToken)
                .where(DeviceToken.user_id == user_id)
                .order_by(DeviceToken.last_used_at.desc())
            )
            return list(result.scalars().all())
