"""Push registration lifecycle for the current app session."""

import asyncio
import functools
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from karma_notify.config import Settings
from karma_notify.metrics import registration_transitions_total
from karma_notify.services.action_router import NotificationAction, NotificationActionRouter, Navigator
from karma_notify.services.push_transport import ListenerHandle, PermissionState, PushEvent, PushTransport
from karma_notify.services.read_receipts import ReadReceiptUpdater
from karma_notify.services.token_persistence import TokenPersistenceCoordinator, get_token_persistence_coordinator
from karma_notify.services.token_store import SqlAlchemyTokenStore, mask_token

logger = logging.getLogger(__name__)


class RegistrationStatus(str, Enum):
    IDLE = "idle"
    AWAITING_PERMISSION = "awaiting_permission"
    REGISTERING = "registering"
    REGISTERED = "registered"
    FAILED = "failed"


ACTIVE_STATUSES = (
    RegistrationStatus.AWAITING_PERMISSION,
    RegistrationStatus.REGISTERING,
    RegistrationStatus.REGISTERED,
)


@dataclass
class RegistrationSession:
    """Process-wide registration state.

    ``generation`` increases on every start and teardown; callbacks and
    suspended ``start`` calls carrying an older generation are ignored.
    """

    status: RegistrationStatus = RegistrationStatus.IDLE
    active_user_id: uuid.UUID | None = None
    listeners_attached: bool = False
    token: str | None = None
    generation: int = 0
    handles: list[ListenerHandle] = field(default_factory=list)


def _token_value(raw: Any) -> str | None:
    if isinstance(raw, str):
        return raw or None
    if isinstance(raw, Mapping):
        value = raw.get("value")
    else:
        value = getattr(raw, "value", None)
    return value if isinstance(value, str) and value else None


def _action_data(raw: Any) -> Any:
    """Pull the data map out of an action event, tolerating both flat and nested shapes."""
    if isinstance(raw, Mapping):
        notification = raw.get("notification")
        if isinstance(notification, Mapping) and "data" in notification:
            return notification.get("data")
    return raw


class RegistrationStateMachine:
    """Drives idle -> awaiting_permission -> registering -> registered/failed.

    Listeners are attached before permission is requested because the
    transport may fire the registration callback from inside ``register()``.
    Starting for a different user tears the previous session down first so
    a late token is never attributed to the previous user.
    """

    def __init__(
        self,
        transport: PushTransport,
        coordinator: TokenPersistenceCoordinator,
        router: NotificationActionRouter,
        read_receipts: ReadReceiptUpdater,
        navigate: Navigator,
    ) -> None:
        self._transport = transport
        self._coordinator = coordinator
        self._router = router
        self._read_receipts = read_receipts
        self._navigate = navigate
        self._background: set[asyncio.Task] = set()
        # Guards listener swaps; never acquired from transport callbacks.
        self._lock = asyncio.Lock()
        self.session = RegistrationSession()

    @property
    def status(self) -> RegistrationStatus:
        return self.session.status

    def _set_status(self, status: RegistrationStatus) -> None:
        if self.session.status != status:
            logger.info("Push registration %s -> %s", self.session.status.value, status.value)
            registration_transitions_total.labels(status=status.value).inc()
        self.session.status = status

    def _is_stale(self, generation: int) -> bool:
        return generation != self.session.generation

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def start(self, user_id: uuid.UUID | None) -> RegistrationStatus:
        session = self.session
        if not self._transport.is_native:
            logger.info("Push notifications only work on native platforms (platform=%s)", self._transport.platform)
            return session.status

        async with self._lock:
            if session.status in ACTIVE_STATUSES and session.active_user_id == user_id:
                logger.info("Push notifications already initialized for user %s, skipping", user_id)
                return session.status

            if session.listeners_attached or session.status != RegistrationStatus.IDLE:
                if session.active_user_id != user_id:
                    logger.info("User changed (%s -> %s), re-initializing push notifications", session.active_user_id, user_id)
                await self._teardown()

            session.generation += 1
            generation = session.generation
            session.active_user_id = user_id
            self._set_status(RegistrationStatus.AWAITING_PERMISSION)

            try:
                await self._attach_listeners(generation, user_id)
            except Exception as e:
                logger.error("Error attaching push listeners: %s", e)
                self._set_status(RegistrationStatus.FAILED)
                return session.status

        # Lock released: a later start or teardown makes this generation stale.
        try:
            permission = await self._transport.request_permission()
            if self._is_stale(generation):
                return session.status
            logger.info("Push permission result: %s", permission)

            if permission == PermissionState.DENIED:
                logger.warning("Push notification permission denied for user %s", user_id)
                self._set_status(RegistrationStatus.FAILED)
                return session.status

            # A prompt that has not been answered yet can still end in a token.
            if session.status == RegistrationStatus.AWAITING_PERMISSION:
                self._set_status(RegistrationStatus.REGISTERING)
            await self._transport.register()
            if self._is_stale(generation):
                return session.status
        except Exception as e:
            logger.error("Error initializing push notifications: %s", e)
            if not self._is_stale(generation):
                self._set_status(RegistrationStatus.FAILED)

        return session.status

    async def _attach_listeners(self, generation: int, user_id: uuid.UUID | None) -> None:
        listeners = (
            (PushEvent.REGISTRATION, functools.partial(self._on_registration, generation)),
            (PushEvent.REGISTRATION_ERROR, functools.partial(self._on_registration_error, generation)),
            (PushEvent.NOTIFICATION_RECEIVED, self._on_notification_received),
            (PushEvent.NOTIFICATION_ACTION, functools.partial(self._on_notification_action, generation, user_id)),
        )
        for event, handler in listeners:
            self.session.handles.append(await self._transport.add_listener(event, handler))

        self.session.listeners_attached = True
        logger.info("All push listeners set up")

    async def _remove_handle(self, handle: ListenerHandle) -> None:
        try:
            await handle.remove()
        except Exception as e:
            logger.warning("Failed to remove push listener: %s", e)

    async def teardown(self) -> None:
        """Remove every listener and reset to idle. Safe to call repeatedly."""
        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        session = self.session
        session.generation += 1
        handles, session.handles = session.handles, []
        for handle in handles:
            await self._remove_handle(handle)
        session.listeners_attached = False
        session.active_user_id = None
        session.token = None
        self._set_status(RegistrationStatus.IDLE)
        if handles:
            logger.info("Push notification listeners removed")

    async def logout(self) -> None:
        """Tear down and drop this device's token row for the departing user."""
        async with self._lock:
            user_id, token = self.session.active_user_id, self.session.token
            await self._teardown()
        if user_id and token:
            await self._coordinator.remove(user_id, token)

    async def wait_for_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- transport callbacks ---

    def _on_registration(self, generation: int, raw: Any) -> None:
        if self._is_stale(generation):
            logger.info("Ignoring registration callback from a previous session")
            return
        token = _token_value(raw)
        if token is None:
            logger.warning("Registration callback without a usable token: %r", type(raw).__name__)
            return

        logger.info("Push registration success, token %s", mask_token(token))
        self.session.token = token
        self._set_status(RegistrationStatus.REGISTERED)
        task = self._coordinator.schedule(self.session.active_user_id, token)
        if task is not None:
            self._track(task)

    def _on_registration_error(self, generation: int, error: Any) -> None:
        logger.error("Error on push registration: %s", error)
        if not self._is_stale(generation):
            self._set_status(RegistrationStatus.FAILED)

    def _on_notification_received(self, notification: Any) -> None:
        logger.info("Push notification received: %s", notification)

    def _on_notification_action(self, generation: int, user_id: uuid.UUID | None, raw: Any) -> None:
        action = NotificationAction.from_payload(_action_data(raw))
        try:
            destination = self._router.dispatch(action, self._navigate)
        except Exception as e:
            logger.error("Navigation failed for tapped notification: %s", e)
            return
        logger.info("Notification tap routed to %s %s", destination.kind.value, destination.target)

        notification_id = action.notification_id
        if self._is_stale(generation):
            return
        if user_id and isinstance(notification_id, str) and notification_id.strip():
            task = asyncio.get_running_loop().create_task(
                self._read_receipts.mark_read(user_id, notification_id.strip())
            )
            self._track(task)


def get_registration_state_machine(
    transport: PushTransport,
    navigate: Navigator,
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> RegistrationStateMachine:
    """Factory that wires a state machine to Postgres-backed collaborators."""
    coordinator = get_token_persistence_coordinator(
        SqlAlchemyTokenStore(session_factory), transport.platform, settings
    )
    return RegistrationStateMachine(
        transport=transport,
        coordinator=coordinator,
        router=NotificationActionRouter(home=settings.home_route),
        read_receipts=ReadReceiptUpdater(session_factory),
        navigate=navigate,
    )
