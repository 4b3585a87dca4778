"""Prometheus metric definitions for the notification core.

Single source of truth for all custom metrics. Import from here in services and routers.
"""

from prometheus_client import Counter

# --- Registration ---

registration_transitions_total = Counter(
    "karma_push_registration_transitions_total",
    "Registration state machine transitions by target status",
    ["status"],
)

# --- Token persistence ---

token_persist_attempts_total = Counter(
    "karma_token_persist_attempts_total",
    "Device token upsert attempts by outcome",
    ["outcome"],
)

token_persist_results_total = Counter(
    "karma_token_persist_results_total",
    "Device token persistence results per registration event",
    ["result"],
)

# --- Notification taps ---

notification_routes_total = Counter(
    "karma_notification_routes_total",
    "Notification tap destinations by kind",
    ["kind"],
)

read_receipts_total = Counter(
    "karma_read_receipts_total",
    "Read receipt updates by outcome",
    ["outcome"],
)
