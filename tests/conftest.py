"""Shared test fixtures and in-memory fakes for the push transport and token store."""

import uuid
from datetime import datetime
from types import SimpleNamespace

import pytest

from karma_notify.services.push_transport import ListenerHandle, PermissionState, PushEvent, PushTransport
from karma_notify.services.token_store import TokenStore


class FakeHandle(ListenerHandle):
    def __init__(self, transport: "FakeTransport", event: PushEvent, handler) -> None:
        self._transport = transport
        self.event = event
        self.handler = handler
        self.removed = 0

    async def remove(self) -> None:
        self.removed += 1
        listeners = self._transport.listeners[self.event]
        if self.handler in listeners:
            listeners.remove(self.handler)


class FakeTransport(PushTransport):
    """Scriptable transport.

    ``register_token`` is emitted synchronously from inside ``register()``,
    the way some platforms deliver it.
    """

    def __init__(
        self,
        platform: str = "android",
        permission: PermissionState = PermissionState.GRANTED,
        register_token: str | None = None,
        register_error: Exception | None = None,
    ) -> None:
        self.platform = platform
        self.permission = permission
        self.register_token = register_token
        self.register_error = register_error
        self.listeners: dict[PushEvent, list] = {event: [] for event in PushEvent}
        self.calls: list[str] = []
        self.handles: list[FakeHandle] = []

    async def request_permission(self) -> PermissionState:
        self.calls.append("request_permission")
        return self.permission

    async def register(self) -> None:
        self.calls.append("register")
        if self.register_error is not None:
            raise self.register_error
        if self.register_token is not None:
            self.emit(PushEvent.REGISTRATION, {"value": self.register_token})

    async def add_listener(self, event: PushEvent, handler) -> FakeHandle:
        self.calls.append(f"add_listener:{event.value}")
        self.listeners[event].append(handler)
        handle = FakeHandle(self, event, handler)
        self.handles.append(handle)
        return handle

    def emit(self, event: PushEvent, payload) -> int:
        """Deliver ``payload`` to every attached listener; returns how many ran."""
        handlers = list(self.listeners[event])
        for handler in handlers:
            handler(payload)
        return len(handlers)


class InMemoryTokenStore(TokenStore):
    def __init__(self) -> None:
        self.rows: dict[tuple[uuid.UUID, str], dict] = {}
        self.upsert_calls = 0

    async def upsert(self, user_id: uuid.UUID, token: str, platform: str, now: datetime) -> None:
        self.upsert_calls += 1
        existing = self.rows.get((user_id, token))
        row_id = existing["id"] if existing else uuid.uuid4()
        self.rows[(user_id, token)] = {"id": row_id, "platform": platform, "last_used_at": now}

    async def delete(self, user_id: uuid.UUID, token: str) -> None:
        self.rows.pop((user_id, token), None)

    async def list_for_user(self, user_id: uuid.UUID) -> list:
        return [
            SimpleNamespace(user_id=uid, token=token, **row)
            for (uid, token), row in self.rows.items()
            if uid == user_id
        ]


class FailingTokenStore(InMemoryTokenStore):
    """Raises ``errors`` in order, then behaves like the in-memory store."""

    def __init__(self, errors: list[Exception]) -> None:
        super().__init__()
        self.errors = list(errors)

    async def upsert(self, user_id, token, platform, now) -> None:
        if self.errors:
            self.upsert_calls += 1
            raise self.errors.pop(0)
        await super().upsert(user_id, token, platform, now)


class RecordingNavigator:
    def __init__(self) -> None:
        self.destinations = []

    def __call__(self, destination) -> None:
        self.destinations.append(destination)


@pytest.fixture
def sample_user_id() -> uuid.UUID:
    return uuid.UUID("12345678-1234-1234-1234-123456789abc")


@pytest.fixture
def other_user_id() -> uuid.UUID:
    return uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


@pytest.fixture
def memory_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def navigator() -> RecordingNavigator:
    return RecordingNavigator()
