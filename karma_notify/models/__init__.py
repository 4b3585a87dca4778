"""KarmaTerra notification database models."""

from karma_notify.models.device_token import DeviceToken
from karma_notify.models.notification import Notification, UserNotification

__all__ = [
    "DeviceToken",
    "Notification",
    "UserNotification",
]
