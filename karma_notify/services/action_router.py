"""Resolve a tapped notification's payload to a safe destination."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from karma_notify.metrics import notification_routes_total

logger = logging.getLogger(__name__)

EXTERNAL_SCHEMES = ("http://", "https://")
APP_SCHEME = "app://"
PARAM_MARKER = ":"

# Mirrors the web app's route table.
DEFAULT_ALLOWED_ROUTES: tuple[str, ...] = (
    "/",
    "/profile",
    "/community",
    "/know-your-skin",
    "/skin-analysis-results",
    "/progress-tracking",
    "/hair-analysis",
    "/hair-analysis-results",
    "/ask-karma",
    "/ingredients",
    "/know-your-hair",
    "/market",
    "/blogs",
    "/blog",
    "/blog/:id",
    "/terms",
    "/privacy",
    "/feedback",
    "/help",
)


class DestinationKind(str, Enum):
    HOME = "home"
    EXTERNAL = "external"
    APP_ROUTE = "app_route"


@dataclass(frozen=True)
class Destination:
    kind: DestinationKind
    target: str


@dataclass(frozen=True)
class NotificationAction:
    """Tap payload. Both fields may hold anything the sender put there."""

    link: Any = None
    notification_id: Any = None

    @classmethod
    def from_payload(cls, payload: Any) -> "NotificationAction":
        if not isinstance(payload, Mapping):
            return cls()
        return cls(
            link=payload.get("link"),
            notification_id=payload.get("notification_id", payload.get("notificationId")),
        )


Navigator = Callable[[Destination], None]


class NotificationActionRouter:
    """Pure decision procedure from a NotificationAction to a Destination.

    Every candidate in-app route goes through the allow-list; anything that
    fails validation, or raises, resolves to home.
    """

    def __init__(self, allowed_routes: Iterable[str] = DEFAULT_ALLOWED_ROUTES, home: str = "/") -> None:
        self._allowed = tuple(allowed_routes)
        self._home = Destination(DestinationKind.HOME, home)

    @property
    def home(self) -> Destination:
        return self._home

    def is_allowed(self, route: str) -> bool:
        for allowed in self._allowed:
            if allowed == route:
                return True
            if PARAM_MARKER in allowed and route.startswith(allowed.split(PARAM_MARKER, 1)[0]):
                return True
        return False

    def route(self, action: NotificationAction) -> Destination:
        try:
            destination = self._resolve(action)
        except Exception as e:
            logger.error("Failed to resolve notification link, falling back to home: %s", e)
            destination = self._home
        notification_routes_total.labels(kind=destination.kind.value).inc()
        return destination

    def _resolve(self, action: NotificationAction) -> Destination:
        link = action.link
        if link is None:
            logger.info("No link in notification, routing home")
            return self._home
        if not isinstance(link, str):
            logger.warning("Non-string notification link %r, routing home", type(link).__name__)
            return self._home

        link = link.strip()
        if not link:
            logger.info("Empty link in notification, routing home")
            return self._home

        if link.startswith(EXTERNAL_SCHEMES):
            return Destination(DestinationKind.EXTERNAL, link)

        if link.startswith("/"):
            candidate = link
        elif link.startswith(APP_SCHEME):
            candidate = "/" + link[len(APP_SCHEME):]
        else:
            candidate = "/" + link

        if not self.is_allowed(candidate):
            logger.warning("Route %s is not an app route, routing home", candidate)
            return self._home
        return Destination(DestinationKind.APP_ROUTE, candidate)

    def dispatch(self, action: NotificationAction, navigate: Navigator) -> Destination:
        """Route ``action`` and hand the result to the navigation host."""
        destination = self.route(action)
        try:
            navigate(destination)
        except Exception as e:
            logger.error("Navigation to %s failed, retrying with home: %s", destination.target, e)
            if destination == self._home:
                raise
            destination = self._home
            navigate(destination)
        return destination
