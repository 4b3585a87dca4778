"""Narrow contract for the platform push transport (APNs/FCM bridge)."""

import abc
from enum import Enum
from typing import Any, Callable


class PermissionState(str, Enum):
    GRANTED = "granted"
    PROMPT = "prompt"
    DENIED = "denied"


class PushEvent(str, Enum):
    REGISTRATION = "registration"
    REGISTRATION_ERROR = "registrationError"
    NOTIFICATION_RECEIVED = "pushNotificationReceived"
    NOTIFICATION_ACTION = "pushNotificationActionPerformed"


Handler = Callable[[Any], None]


class ListenerHandle(abc.ABC):
    @abc.abstractmethod
    async def remove(self) -> None:
        ...


class PushTransport(abc.ABC):
    """Platform side of push registration.

    Handlers may be invoked synchronously from inside ``register()``, so every
    listener has to be attached before registration is requested.
    """

    platform: str = "web"

    @property
    def is_native(self) -> bool:
        return self.platform in ("android", "ios")

    @abc.abstractmethod
    async def request_permission(self) -> PermissionState:
        ...

    @abc.abstractmethod
    async def register(self) -> None:
        ...

    @abc.abstractmethod
    async def add_listener(self, event: PushEvent, handler: Handler) -> ListenerHandle:
        ...
