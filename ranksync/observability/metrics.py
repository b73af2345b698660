from __future__ import annotations

from flask import Blueprint, Response
from prometheus_client import Counter, Gauge, generate_latest

metrics_blueprint = Blueprint("metrics_bp", __name__)

CONTENT_TYPE_LATEST = "text/plain; version=0.0.4; charset=utf-8"

LIST_WRITES = Counter(
    "ranksync_list_writes_total",
    "Total number of list writes committed, by write shape.",
    ["kind"],
)
DUPLICATES_REJECTED = Counter(
    "ranksync_duplicate_entries_rejected_total",
    "Entries rejected by incremental updates because their identity already exists.",
)
BROADCAST_DELIVERIES = Counter(
    "ranksync_broadcast_deliveries_total",
    "List change events delivered to push subscribers.",
)
BROADCAST_FAILURES = Counter(
    "ranksync_broadcast_failures_total",
    "List change events that could not be delivered to a subscriber.",
)
OPEN_SUBSCRIBERS = Gauge(
    "ranksync_open_subscribers",
    "Current number of open list event streams.",
)
AGGREGATE_RECOMPUTES = Counter(
    "ranksync_aggregate_recomputes_total",
    "Year aggregate recomputations, by outcome.",
    ["outcome"],
)


def record_list_write(kind: str) -> None:
    LIST_WRITES.labels(kind=kind).inc()


def record_duplicates(count: int) -> None:
    if count > 0:
        DUPLICATES_REJECTED.inc(count)


def record_broadcast_delivery(count: int) -> None:
    if count > 0:
        BROADCAST_DELIVERIES.inc(count)


def record_broadcast_failure() -> None:
    BROADCAST_FAILURES.inc()


def update_subscriber_gauge(count: int) -> None:
    OPEN_SUBSCRIBERS.set(max(0, count))


def record_aggregate_recompute(outcome: str) -> None:
    AGGREGATE_RECOMPUTES.labels(outcome=outcome).inc()


@metrics_blueprint.route("/metrics")
def metrics_endpoint() -> Response:
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)
