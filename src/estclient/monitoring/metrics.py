"""Prometheus metrics for the correlation engine."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

registry = CollectorRegistry(auto_describe=True)

LOTS_SUBMITTED = Counter(
    "estclient_lots_submitted_total",
    "Logical lots submitted",
    ["mode"],
    registry=registry,
)
MESSAGES_SENT = Counter(
    "estclient_messages_sent_total",
    "Physical messages sent to the estimator",
    registry=registry,
)
MESSAGES_DELIVERED = Counter(
    "estclient_messages_delivered_total",
    "Inbound messages by outcome",
    ["outcome"],
    registry=registry,
)
LOTS_FINISHED = Counter(
    "estclient_lots_finished_total",
    "Lots retired by outcome",
    ["outcome"],
    registry=registry,
)
DUPLICATE_KEYS = Counter(
    "estclient_duplicate_keys_total",
    "Submissions that reused a still-pending correlation key",
    registry=registry,
)
PENDING_LOTS = Gauge(
    "estclient_pending_lots",
    "Lots awaiting completion",
    registry=registry,
)


def observe_delivery(outcome: str) -> None:
    MESSAGES_DELIVERED.labels(outcome=outcome).inc()


def observe_finished(outcome: str, pending: int) -> None:
    LOTS_FINISHED.labels(outcome=outcome).inc()
    PENDING_LOTS.set(pending)


def sample(name: str, labels: dict[str, str] | None = None) -> float:
    value = registry.get_sample_value(name, labels or {})
    return value or 0.0


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(registry), CONTENT_TYPE_LATEST
