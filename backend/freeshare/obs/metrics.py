"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

log = logging.getLogger(__name__)


REQUEST_COUNTER = Counter(
	"freeshare_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"freeshare_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

MODERATION_ACTIONS = Counter(
	"freeshare_moderation_actions_total",
	"Moderation actions dispatched, by entity, action and outcome",
	["entity", "action", "result"],
)

HOLD_CONFLICTS = Counter(
	"freeshare_moderation_hold_conflicts_total",
	"Actions refused because another moderator holds the item",
	["entity", "action"],
)

DUPLICATE_CASCADE = Counter(
	"freeshare_chat_duplicate_rejections_total",
	"Chat messages rejected as duplicates of an explicitly rejected message",
)

TASKS_ENQUEUED = Counter(
	"freeshare_background_tasks_enqueued_total",
	"Background tasks inserted by the moderation engine",
	["task_type"],
)

TASK_ENQUEUE_FAILURES = Counter(
	"freeshare_background_task_enqueue_failures_total",
	"Background task inserts that failed and were dropped",
	["task_type"],
)

POSTGRES_UP = Gauge(
	"freeshare_postgres_up",
	"Postgres readiness (1 healthy, 0 unhealthy)",
)

POSTGRES_LATENCY = Histogram(
	"freeshare_postgres_ping_seconds",
	"Latency of the readiness probe query",
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25),
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def inc_moderation_action(entity: str, action: str, result: str) -> None:
	MODERATION_ACTIONS.labels(entity=entity, action=action, result=result).inc()


def inc_hold_conflict(entity: str, action: str) -> None:
	HOLD_CONFLICTS.labels(entity=entity, action=action).inc()


def inc_duplicate_rejections(count: int) -> None:
	if count > 0:
		DUPLICATE_CASCADE.inc(count)


def inc_task_enqueued(task_type: str) -> None:
	TASKS_ENQUEUED.labels(task_type=task_type).inc()


def inc_task_enqueue_failure(task_type: str) -> None:
	TASK_ENQUEUE_FAILURES.labels(task_type=task_type).inc()


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)
