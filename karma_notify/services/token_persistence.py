"""Turns a raw registration token into a durable store write."""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from karma_notify.config import Settings
from karma_notify.metrics import token_persist_attempts_total, token_persist_results_total
from karma_notify.services.token_store import StoreErrorKind, TokenStore, TokenStoreError, mask_token

logger = logging.getLogger(__name__)


class PersistResult(str, Enum):
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"  # no user known yet
    CANCELLED = "cancelled"  # abandoned by remove()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPersistenceCoordinator:
    """Bounded, non-blocking retry of device token upserts.

    At most one retry loop runs per (user_id, token). A second registration
    callback for a key that is still in flight cancels the running loop and
    starts a fresh one; callers awaiting the old loop follow the new one.
    """

    def __init__(
        self,
        store: TokenStore,
        platform: str,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._platform = platform
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._clock = clock
        self._inflight: dict[tuple[uuid.UUID, str], asyncio.Task] = {}

    def schedule(self, user_id: uuid.UUID | None, token: str) -> asyncio.Task | None:
        """Start (or restart) the retry loop for this key. Returns None if there is no user."""
        if not user_id:
            logger.warning("No user id for token %s; cannot persist yet", mask_token(token))
            token_persist_results_total.labels(result=PersistResult.SKIPPED.value).inc()
            return None

        key = (user_id, token)
        previous = self._inflight.get(key)
        if previous is not None and not previous.done():
            logger.info("Restarting in-flight persistence for token %s", mask_token(token))
            previous.cancel()

        task = asyncio.get_running_loop().create_task(self._run(user_id, token))
        self._inflight[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return task

    async def persist(self, user_id: uuid.UUID | None, token: str) -> PersistResult:
        task = self.schedule(user_id, token)
        if task is None:
            return PersistResult.SKIPPED

        key = (user_id, token)
        while True:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
                replacement = self._inflight.get(key)
                if replacement is None or replacement is task:
                    return PersistResult.CANCELLED
                task = replacement

    async def remove(self, user_id: uuid.UUID, token: str) -> bool:
        """Delete the (user, token) row, e.g. on logout. Errors are logged, not raised."""
        task = self._inflight.pop((user_id, token), None)
        if task is not None and not task.done():
            task.cancel()
            token_persist_results_total.labels(result=PersistResult.CANCELLED.value).inc()
            logger.info("Cancelled in-flight persistence for token %s", mask_token(token))
        try:
            await self._store.delete(user_id, token)
        except Exception as e:
            logger.error("Error removing device token %s for user %s: %s", mask_token(token), user_id, e)
            return False
        logger.info("Device token %s removed for user %s", mask_token(token), user_id)
        return True

    def in_flight(self, user_id: uuid.UUID, token: str) -> bool:
        task = self._inflight.get((user_id, token))
        return task is not None and not task.done()

    def _forget(self, key: tuple[uuid.UUID, str], task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _run(self, user_id: uuid.UUID, token: str) -> PersistResult:
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._store.upsert(user_id, token, self._platform, self._clock())
            except TokenStoreError as e:
                token_persist_attempts_total.labels(outcome=e.kind.value).inc()
                logger.warning(
                    "Failed to save token %s for user %s (attempt %d/%d, %s): %s",
                    mask_token(token), user_id, attempt, self._max_attempts, e.kind.value, e,
                )
                if e.kind == StoreErrorKind.FATAL:
                    break
            except Exception as e:
                token_persist_attempts_total.labels(outcome="error").inc()
                logger.warning(
                    "Failed to save token %s for user %s (attempt %d/%d): %s",
                    mask_token(token), user_id, attempt, self._max_attempts, e,
                )
            else:
                token_persist_attempts_total.labels(outcome="success").inc()
                token_persist_results_total.labels(result=PersistResult.SUCCESS.value).inc()
                logger.info("Device token %s saved for user %s", mask_token(token), user_id)
                return PersistResult.SUCCESS

            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff)

        token_persist_results_total.labels(result=PersistResult.EXHAUSTED.value).inc()
        logger.error("Giving up on device token %s for user %s", mask_token(token), user_id)
        return PersistResult.EXHAUSTED


def get_token_persistence_coordinator(
    store: TokenStore, platform: str, settings: Settings
) -> TokenPersistenceCoordinator:
    return TokenPersistenceCoordinator(
        store=store,
        platform=platform,
        max_attempts=settings.token_persist_max_attempts,
        backoff_seconds=settings.token_persist_backoff_seconds,
    )
