"""Tests for RegistrationStateMachine transitions, user switches and tap handling."""

import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest

from conftest import FakeTransport, InMemoryTokenStore, RecordingNavigator
from karma_notify.services.action_router import Destination, DestinationKind, NotificationActionRouter
from karma_notify.services.push_transport import PermissionState, PushEvent
from karma_notify.services.read_receipts import ReadReceiptUpdater
from karma_notify.services.registration import RegistrationStateMachine, RegistrationStatus
from karma_notify.services.token_persistence import TokenPersistenceCoordinator

TOKEN = "fcm-token-0123456789"


class SlowPermissionTransport(FakeTransport):
    """The first permission request hangs until ``gate`` is set."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.waiting = asyncio.Event()
        self._first = True

    async def request_permission(self) -> PermissionState:
        self.calls.append("request_permission")
        if self._first:
            self._first = False
            self.waiting.set()
            await self.gate.wait()
        return self.permission


class BrokenHandleTransport(FakeTransport):
    async def add_listener(self, event, handler):
        handle = await super().add_listener(event, handler)
        handle.remove = AsyncMock(side_effect=RuntimeError("already removed"))
        return handle


class YieldingHandleTransport(FakeTransport):
    """Listener removal suspends, like a bridge call to the native layer."""

    async def add_listener(self, event, handler):
        handle = await super().add_listener(event, handler)
        remove = handle.remove

        async def remove_after_yield():
            await asyncio.sleep(0)
            await remove()

        handle.remove = remove_after_yield
        return handle


def build(transport, store=None, navigator=None, read_receipts=None):
    coordinator = TokenPersistenceCoordinator(
        store=store if store is not None else InMemoryTokenStore(),
        platform=transport.platform,
        backoff_seconds=0,
    )
    return RegistrationStateMachine(
        transport=transport,
        coordinator=coordinator,
        router=NotificationActionRouter(),
        read_receipts=read_receipts if read_receipts is not None else AsyncMock(spec=ReadReceiptUpdater),
        navigate=navigator if navigator is not None else RecordingNavigator(),
    )


class TestStart:
    @pytest.mark.asyncio
    async def test_web_platform_is_a_no_op(self, sample_user_id):
        transport = FakeTransport(platform="web")
        machine = build(transport)

        assert await machine.start(sample_user_id) == RegistrationStatus.IDLE
        assert transport.calls == []
        assert not machine.session.listeners_attached

    @pytest.mark.asyncio
    async def test_granted_permission_registers_and_persists(self, memory_store, sample_user_id):
        transport = FakeTransport(register_token=TOKEN)
        machine = build(transport, store=memory_store)

        status = await machine.start(sample_user_id)
        await machine.wait_for_background()

        assert status == RegistrationStatus.REGISTERED
        assert machine.session.token == TOKEN
        assert machine.session.active_user_id == sample_user_id
        assert list(memory_store.rows) == [(sample_user_id, TOKEN)]
        assert memory_store.rows[(sample_user_id, TOKEN)]["platform"] == "android"

    @pytest.mark.asyncio
    async def test_listeners_attached_before_permission_request(self, sample_user_id):
        transport = FakeTransport(register_token=TOKEN)
        machine = build(transport)

        await machine.start(sample_user_id)

        permission_index = transport.calls.index("request_permission")
        listener_calls = [i for i, c in enumerate(transport.calls) if c.startswith("add_listener:")]
        assert len(listener_calls) == 4
        assert max(listener_calls) < permission_index
        assert transport.calls[-1] == "register"

    @pytest.mark.asyncio
    async def test_synchronous_token_is_not_dropped(self, memory_store, sample_user_id):
        # Token is emitted from inside register(), before start() returns.
        transport = FakeTransport(register_token=TOKEN)
        machine = build(transport, store=memory_store)

        await machine.start(sample_user_id)
        await machine.wait_for_background()

        assert memory_store.upsert_calls == 1

    @pytest.mark.asyncio
    async def test_prompt_permission_still_registers(self, sample_user_id):
        transport = FakeTransport(permission=PermissionState.PROMPT)
        machine = build(transport)

        status = await machine.start(sample_user_id)

        assert status == RegistrationStatus.REGISTERING
        assert "register" in transport.calls

    @pytest.mark.asyncio
    async def test_denied_permission_fails_without_registering(self, sample_user_id):
        transport = FakeTransport(permission=PermissionState.DENIED)
        machine = build(transport)

        status = await machine.start(sample_user_id)

        assert status == RegistrationStatus.FAILED
        assert "register" not in transport.calls

    @pytest.mark.asyncio
    async def test_registration_error_event_fails_session(self, sample_user_id):
        transport = FakeTransport()
        machine = build(transport)
        await machine.start(sample_user_id)
        assert machine.status == RegistrationStatus.REGISTERING

        transport.emit(PushEvent.REGISTRATION_ERROR, {"error": "SERVICE_NOT_AVAILABLE"})

        assert machine.status == RegistrationStatus.FAILED

    @pytest.mark.asyncio
    async def test_register_exception_fails_session(self, sample_user_id):
        transport = FakeTransport(register_error=RuntimeError("no google play services"))
        machine = build(transport)

        assert await machine.start(sample_user_id) == RegistrationStatus.FAILED

    @pytest.mark.asyncio
    async def test_same_user_start_is_idempotent(self, sample_user_id):
        transport = FakeTransport(register_token=TOKEN)
        machine = build(transport)

        await machine.start(sample_user_id)
        await machine.start(sample_user_id)

        assert transport.calls.count("register") == 1
        assert transport.calls.count("request_permission") == 1
        assert len(transport.handles) == 4

    @pytest.mark.asyncio
    async def test_failed_session_can_be_restarted(self, sample_user_id):
        transport = FakeTransport(permission=PermissionState.DENIED)
        machine = build(transport)
        await machine.start(sample_user_id)

        transport.permission = PermissionState.GRANTED
        transport.register_token = TOKEN
        status = await machine.start(sample_user_id)

        assert status == RegistrationStatus.REGISTERED
        assert all(h.removed == 1 for h in transport.handles[:4])

    @pytest.mark.asyncio
    async def test_anonymous_registration_drops_token(self, memory_store):
        transport = FakeTransport(register_token=TOKEN)
        machine = build(transport, store=memory_store)

        status = await machine.start(None)
        await machine.wait_for_background()

        assert status == RegistrationStatus.REGISTERED
        assert memory_store.rows == {}


class TestUserSwitch:
    @pytest.mark.asyncio
    async def test_switch_tears_down_previous_listeners(self, memory_store, sample_user_id, other_user_id):
        transport = FakeTransport()
        machine = build(transport, store=memory_store)
        await machine.start(sample_user_id)
        old_handles = list(transport.handles)

        await machine.start(other_user_id)
        assert all(h.removed == 1 for h in old_handles)

        transport.emit(PushEvent.REGISTRATION, {"value": TOKEN})
        await machine.wait_for_background()

        assert machine.session.active_user_id == other_user_id
        assert list(memory_store.rows) == [(other_user_id, TOKEN)]

    @pytest.mark.asyncio
    async def test_switch_while_permission_pending(self, memory_store, sample_user_id, other_user_id):
        transport = SlowPermissionTransport(register_token=TOKEN)
        machine = build(transport, store=memory_store)

        first = asyncio.create_task(machine.start(sample_user_id))
        await transport.waiting.wait()

        assert await machine.start(other_user_id) == RegistrationStatus.REGISTERED

        transport.gate.set()
        await first
        await machine.wait_for_background()

        assert machine.status == RegistrationStatus.REGISTERED
        assert machine.session.active_user_id == other_user_id
        assert transport.calls.count("register") == 1
        assert list(memory_store.rows) == [(other_user_id, TOKEN)]

    @pytest.mark.asyncio
    async def test_callback_from_stale_listener_is_ignored(self, memory_store, sample_user_id, other_user_id):
        transport = FakeTransport()
        machine = build(transport, store=memory_store)
        await machine.start(sample_user_id)
        stale_handler = transport.handles[0].handler

        await machine.start(other_user_id)
        stale_handler({"value": TOKEN})
        await machine.wait_for_background()

        assert memory_store.rows == {}
        assert machine.session.token is None

    @pytest.mark.asyncio
    async def test_overlapping_switches_keep_the_last_user(self, sample_user_id, other_user_id):
        third_user_id = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")
        transport = YieldingHandleTransport(register_token=TOKEN)
        navigator = RecordingNavigator()
        machine = build(transport, navigator=navigator)
        await machine.start(sample_user_id)

        await asyncio.gather(machine.start(other_user_id), machine.start(third_user_id))
        await machine.wait_for_background()

        assert machine.session.active_user_id == third_user_id
        assert machine.status == RegistrationStatus.REGISTERED
        assert len(machine.session.handles) == 4
        assert all(len(listeners) == 1 for listeners in transport.listeners.values())

        assert transport.emit(PushEvent.NOTIFICATION_ACTION, {"link": "/help"}) == 1
        assert navigator.destinations == [Destination(DestinationKind.APP_ROUTE, "/help")]

    @pytest.mark.asyncio
    async def test_teardown_racing_start_leaves_no_listeners(self, sample_user_id, other_user_id):
        transport = YieldingHandleTransport(register_token=TOKEN)
        machine = build(transport)
        await machine.start(sample_user_id)

        await asyncio.gather(machine.teardown(), machine.start(other_user_id))
        await machine.wait_for_background()
        await machine.teardown()

        assert machine.status == RegistrationStatus.IDLE
        assert machine.session.handles == []
        assert all(not listeners for listeners in transport.listeners.values())


class TestTeardown:
    @pytest.mark.asyncio
    async def test_teardown_twice_is_safe(self, sample_user_id):
        transport = FakeTransport(register_token=TOKEN)
        machine = build(transport)
        await machine.start(sample_user_id)

        await machine.teardown()
        await machine.teardown()

        assert machine.status == RegistrationStatus.IDLE
        assert not machine.session.listeners_attached
        assert machine.session.active_user_id is None
        assert all(h.removed == 1 for h in transport.handles)
        assert all(not listeners for listeners in transport.listeners.values())

    @pytest.mark.asyncio
    async def test_teardown_on_fresh_machine(self):
        machine = build(FakeTransport())

        await machine.teardown()

        assert machine.status == RegistrationStatus.IDLE

    @pytest.mark.asyncio
    async def test_teardown_tolerates_remove_errors(self, sample_user_id):
        transport = BrokenHandleTransport()
        machine = build(transport)
        await machine.start(sample_user_id)

        await machine.teardown()

        assert machine.status == RegistrationStatus.IDLE
        assert machine.session.handles == []

    @pytest.mark.asyncio
    async def test_logout_removes_device_token(self, memory_store, sample_user_id):
        transport = FakeTransport(register_token=TOKEN)
        machine = build(transport, store=memory_store)
        await machine.start(sample_user_id)
        await machine.wait_for_background()
        assert memory_store.rows

        await machine.logout()

        assert memory_store.rows == {}
        assert machine.status == RegistrationStatus.IDLE


class TestNotificationTaps:
    @pytest.mark.asyncio
    async def test_tap_navigates_and_marks_read(self, sample_user_id):
        transport = FakeTransport()
        navigator = RecordingNavigator()
        receipts = AsyncMock(spec=ReadReceiptUpdater)
        machine = build(transport, navigator=navigator, read_receipts=receipts)
        await machine.start(sample_user_id)

        transport.emit(
            PushEvent.NOTIFICATION_ACTION,
            {"actionId": "tap", "notification": {"data": {"link": "/profile", "notification_id": "n-1"}}},
        )
        await machine.wait_for_background()

        assert navigator.destinations == [Destination(DestinationKind.APP_ROUTE, "/profile")]
        receipts.mark_read.assert_awaited_once_with(sample_user_id, "n-1")

    @pytest.mark.asyncio
    async def test_tap_without_notification_id_skips_read_receipt(self, sample_user_id):
        transport = FakeTransport()
        receipts = AsyncMock(spec=ReadReceiptUpdater)
        machine = build(transport, read_receipts=receipts)
        await machine.start(sample_user_id)

        transport.emit(PushEvent.NOTIFICATION_ACTION, {"notification": {"data": {"link": "https://karmaterra.in"}}})
        await machine.wait_for_background()

        receipts.mark_read.assert_not_called()

    @pytest.mark.asyncio
    async def test_garbage_tap_payload_goes_home(self, sample_user_id):
        transport = FakeTransport()
        navigator = RecordingNavigator()
        machine = build(transport, navigator=navigator)
        await machine.start(sample_user_id)

        transport.emit(PushEvent.NOTIFICATION_ACTION, {"notification": {"data": ["not", "a", "map"]}})

        assert navigator.destinations == [Destination(DestinationKind.HOME, "/")]

    @pytest.mark.asyncio
    async def test_anonymous_tap_skips_read_receipt(self):
        transport = FakeTransport()
        receipts = AsyncMock(spec=ReadReceiptUpdater)
        machine = build(transport, read_receipts=receipts)
        await machine.start(None)

        transport.emit(PushEvent.NOTIFICATION_ACTION, {"link": "/help", "notification_id": "n-2"})
        await machine.wait_for_background()

        receipts.mark_read.assert_not_called()

    @pytest.mark.asyncio
    async def test_navigation_crash_does_not_escape_callback(self, sample_user_id):
        transport = FakeTransport()
        receipts = AsyncMock(spec=ReadReceiptUpdater)

        def broken_navigator(destination):
            raise RuntimeError("webview gone")

        machine = build(transport, navigator=broken_navigator, read_receipts=receipts)
        await machine.start(sample_user_id)

        transport.emit(PushEvent.NOTIFICATION_ACTION, {"link": "/help", "notification_id": "n-3"})
        await machine.wait_for_background()

        receipts.mark_read.assert_not_called()

    @pytest.mark.asyncio
    async def test_received_notification_is_only_logged(self, sample_user_id):
        transport = FakeTransport()
        navigator = RecordingNavigator()
        machine = build(transport, navigator=navigator)
        await machine.start(sample_user_id)

        assert transport.emit(PushEvent.NOTIFICATION_RECEIVED, {"title": "Hi"}) == 1
        assert navigator.destinations == []


def test_factory_wires_postgres_collaborators():
    from unittest.mock import MagicMock

    from karma_notify.config import Settings
    from karma_notify.services.registration import get_registration_state_machine
    from karma_notify.services.token_store import SqlAlchemyTokenStore

    transport = FakeTransport(platform="ios")
    machine = get_registration_state_machine(
        transport, RecordingNavigator(), Settings(home_route="/"), MagicMock()
    )

    assert machine.status == RegistrationStatus.IDLE
    assert isinstance(machine._coordinator._store, SqlAlchemyTokenStore)
    assert machine._coordinator._platform == "ios"
