"""Central registry for Prometheus metrics used across the client."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

log = logging.getLogger(__name__)


CHANNEL_CONNECTED = Gauge(
	"passradar_channel_connected",
	"Push channel connection state (1=connected,0=disconnected)",
)

CHANNEL_LIFECYCLE = Counter(
	"passradar_channel_lifecycle_total",
	"Push channel lifecycle transitions",
	["event"],
)

CHANNEL_EVENTS_IN = Counter(
	"passradar_channel_events_received_total",
	"Push events dispatched to local subscribers",
	["event"],
)

CHANNEL_EVENTS_OUT = Counter(
	"passradar_channel_events_emitted_total",
	"Push events emitted to the server",
	["event", "result"],
)

ROOM_TRANSITIONS = Counter(
	"passradar_room_transitions_total",
	"Location room join/leave emissions",
	["action"],
)

PRESENCE_UPDATES = Counter(
	"passradar_presence_updates_total",
	"Nearby set updates by source",
	["source", "result"],
)

PRESENCE_NEARBY = Gauge(
	"passradar_presence_nearby_users",
	"Users currently in the reconciled nearby set",
)

POLL_FETCHES = Counter(
	"passradar_poll_fetches_total",
	"Fallback nearby fetches issued",
	["result"],
)

HTTP_LATENCY = Histogram(
	"passradar_http_request_duration_seconds",
	"REST call latency in seconds",
	["operation"],
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

UNLOCK_TRANSITIONS = Counter(
	"passradar_unlock_transitions_total",
	"Unlock session state transitions",
	["state"],
)

REQUEST_ACTIONS = Counter(
	"passradar_request_actions_total",
	"Accept/reject submissions for incoming requests",
	["action", "result"],
)

REQUEST_RESOLUTIONS = Counter(
	"passradar_request_resolutions_total",
	"Incoming request id lookups",
	["result"],
)

NOTIFICATIONS_ROUTED = Counter(
	"passradar_notifications_routed_total",
	"Server notifications routed to a handler",
	["event", "target"],
)

NOTIFICATIONS_UNREAD = Gauge(
	"passradar_notifications_unread",
	"Unread incoming request counter",
)


def channel_state(connected: bool) -> None:
	CHANNEL_CONNECTED.set(1.0 if connected else 0.0)


def channel_event(event: str) -> None:
	CHANNEL_EVENTS_IN.labels(event=event).inc()


def unlock_transition(state: str) -> None:
	UNLOCK_TRANSITIONS.labels(state=state).inc()
