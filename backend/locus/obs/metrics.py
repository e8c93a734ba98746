"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"locus_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"locus_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"locus_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"locus_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

LOCATION_REPORTS = Counter(
	"locus_location_reports_total",
	"Location reports handled",
	["result"],
)

ALERT_EVALUATIONS = Counter(
	"locus_alert_evaluations_total",
	"Proximity alert evaluations by outcome",
	["outcome"],
)

ALERT_TRIGGERS = Counter(
	"locus_alert_triggers_total",
	"Proximity alerts triggered",
)

ALERT_DISPATCH_FAILURES = Counter(
	"locus_alert_dispatch_failures_total",
	"Proximity match notifications that failed to dispatch",
)

ALERT_MATCH_SECONDS = Histogram(
	"locus_alert_match_seconds",
	"Time spent evaluating alerts for a single location update",
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

ALERT_COUNTER_RESETS = Counter(
	"locus_alert_counter_resets_total",
	"Alerts whose daily trigger counter was reset",
)

VISIBILITY_QUERIES = Counter(
	"locus_visibility_queries_total",
	"Visibility resolutions served",
	["kind"],
)


def observe_request(route: str, method: str, status: int, latency_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(latency_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_location_report(result: str) -> None:
	LOCATION_REPORTS.labels(result=result).inc()


def inc_alert_evaluation(outcome: str) -> None:
	ALERT_EVALUATIONS.labels(outcome=outcome).inc()


def inc_alert_trigger() -> None:
	ALERT_TRIGGERS.inc()


def inc_dispatch_failure() -> None:
	ALERT_DISPATCH_FAILURES.inc()


def observe_match_latency(seconds: float) -> None:
	ALERT_MATCH_SECONDS.observe(seconds)


def inc_counter_resets(count: int) -> None:
	if count > 0:
		ALERT_COUNTER_RESETS.inc(count)


def inc_visibility_query(kind: str) -> None:
	VISIBILITY_QUERIES.labels(kind=kind).inc()
