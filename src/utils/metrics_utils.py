"""
Prometheus metrics shared by the API server, the like engine and the
reconciliation job.
"""

from prometheus_client import Counter, Gauge, Histogram, REGISTRY

LATENCY_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]


def _get_or_create_metric(metric_class, name, description, labelnames=None, **kwargs):
    """
    Returns existing metric if already registered, otherwise creates new one.
    Prevents 'Duplicated timeseries' error on module re-import (uvicorn workers, tests).

    Algorithm:
    1. Attempt to create the metric
    2. If ValueError (duplicate), find and return the existing collector
    3. For Counters, internal name is without '_total' suffix
    """
    try:
        if labelnames:
            return metric_class(name, description, labelnames, **kwargs)
        return metric_class(name, description, **kwargs)
    except ValueError:
        base_name = name[: -len("_total")] if name.endswith("_total") else name
        for collector in REGISTRY._names_to_collectors.values():
            if getattr(collector, "_name", None) in (base_name, name):
                return collector
        raise


# HTTP layer

REQUEST_COUNT = _get_or_create_metric(
    Counter,
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=LATENCY_BUCKETS,
)

ACTIVE_REQUESTS = _get_or_create_metric(
    Gauge,
    "http_requests_active",
    "Number of active HTTP requests",
)

# Like/view engine

LIKE_TOGGLES = _get_or_create_metric(
    Counter,
    "like_toggles_total",
    "Like toggles by outcome (liked, unliked, rejected, failed)",
    ["outcome"],
)

VIEWS_RECORDED = _get_or_create_metric(
    Counter,
    "views_recorded_total",
    "Views counted in the cache",
)

DB_SYNC_FAILURES = _get_or_create_metric(
    Counter,
    "like_db_sync_failures_total",
    "Fire-and-forget durable writes that exhausted their retries",
    ["action"],
)

# Reconciliation

COUNTER_SYNC_DURATION = _get_or_create_metric(
    Histogram,
    "counter_sync_duration_seconds",
    "Wall-clock duration of a reconciliation pass",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

COUNTER_SYNC_ROWS = _get_or_create_metric(
    Counter,
    "counter_sync_rows_total",
    "Durable counter rows overwritten by reconciliation",
    ["family"],
)

COUNTER_SYNC_BATCH_FAILURES = _get_or_create_metric(
    Counter,
    "counter_sync_batch_failures_total",
    "Reconciliation batches whose transaction failed",
    ["family"],
)
