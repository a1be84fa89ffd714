"""Prometheus metrics definitions for r2broker.

All metrics use the ``r2broker_`` prefix. Collectors are only registered
once :func:`init_metrics` has been called; until then the ``record_*``
helpers are no-ops, so library users who never enable metrics leave the
global registry untouched.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

_initialized: bool = False

# ---------------------------------------------------------------------------
# Remote store operations  (labels: operation, status)
# ---------------------------------------------------------------------------
store_operations_total: Counter | None = None

# ---------------------------------------------------------------------------
# Fast-tier listing cache  (labels: result = hit | miss)
# ---------------------------------------------------------------------------
listing_cache_requests_total: Counter | None = None

# ---------------------------------------------------------------------------
# Rate limiter rejections  (labels: operation)
# ---------------------------------------------------------------------------
rate_limit_rejections_total: Counter | None = None

# ---------------------------------------------------------------------------
# Snapshot size after the latest sync
# ---------------------------------------------------------------------------
snapshot_objects: Gauge | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics. Idempotent."""
    global _initialized
    global store_operations_total, listing_cache_requests_total
    global rate_limit_rejections_total, snapshot_objects

    if _initialized:
        return

    store_operations_total = Counter(
        "r2broker_store_operations_total",
        "Total object store operations by type and outcome",
        ["operation", "status"],
    )

    listing_cache_requests_total = Counter(
        "r2broker_listing_cache_requests_total",
        "Listing cache lookups by result",
        ["result"],
    )

    rate_limit_rejections_total = Counter(
        "r2broker_rate_limit_rejections_total",
        "Operations rejected by the fixed-window rate limiter",
        ["operation"],
    )

    snapshot_objects = Gauge(
        "r2broker_snapshot_objects",
        "Objects in the persisted snapshot after the latest sync",
    )

    _initialized = True


def record_store_operation(operation: str, status: str) -> None:
    if store_operations_total is not None:
        store_operations_total.labels(operation=operation, status=status).inc()


def record_cache_lookup(hit: bool) -> None:
    if listing_cache_requests_total is not None:
        listing_cache_requests_total.labels(result="hit" if hit else "miss").inc()


def record_rate_limit_rejection(operation: str) -> None:
    if rate_limit_rejections_total is not None:
        rate_limit_rejections_total.labels(operation=operation).inc()


def set_snapshot_objects(count: int) -> None:
    if snapshot_objects is not None:
        snapshot_objects.set(count)
