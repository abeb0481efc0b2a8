"""Prometheus metrics for sync and analysis.

Metrics live in a dedicated CollectorRegistry so a run's values can be pushed
to a Pushgateway as one group. Naming: snake_case, reviewsync_ prefix.
"""

import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.exposition import pushadd_to_gateway

logger = logging.getLogger("reviewsync.metrics")

__all__ = [
    "REGISTRY",
    "analysis_total",
    "changes_synced_total",
    "generation_duration_seconds",
    "push_metrics",
    "scheduler_runs_total",
    "sync_duration_seconds",
    "sync_status_failures_total",
]

REGISTRY = CollectorRegistry()

# ==============================================================================
# COUNTERS
# ==============================================================================

changes_synced_total = Counter(
    "reviewsync_changes_synced_total",
    "Changes written to the store by sync",
    ["status", "result"],
    # result: inserted, updated, failed
    registry=REGISTRY,
)

sync_status_failures_total = Counter(
    "reviewsync_sync_status_failures_total",
    "Per-status fetch failures tolerated by the sync engine",
    ["status"],
    registry=REGISTRY,
)

analysis_total = Counter(
    "reviewsync_analysis_total",
    "Analysis pipeline outcomes per change",
    ["outcome"],
    # outcome: success, fallback, failed
    registry=REGISTRY,
)

scheduler_runs_total = Counter(
    "reviewsync_scheduler_runs_total",
    "Scheduled task invocations",
    ["scheduler", "outcome"],
    # outcome: success, failed, cancelled
    registry=REGISTRY,
)

# ==============================================================================
# GAUGES / HISTOGRAMS
# ==============================================================================

sync_duration_seconds = Gauge(
    "reviewsync_sync_duration_seconds",
    "Duration of the most recent sync run",
    registry=REGISTRY,
)

generation_duration_seconds = Histogram(
    "reviewsync_generation_duration_seconds",
    "Generative model call latency",
    ["task"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
    registry=REGISTRY,
)


def push_metrics(gateway_url: str, job: str, instance: str = "default") -> bool:
    """Push the registry to a Pushgateway.

    Failures are logged as warnings, never raised.

    Args:
        gateway_url: host:port of the Pushgateway; empty disables push
        job: Prometheus job label
        instance: grouping key instance label

    Returns:
        True if the push succeeded
    """
    if not gateway_url:
        return False
    try:
        pushadd_to_gateway(
            gateway_url,
            job=job,
            registry=REGISTRY,
            grouping_key={"instance": instance},
            timeout=2.0,
        )
        return True
    except Exception as e:
        logger.warning("pushgateway_push_failed", extra={"job": job, "error": str(e)})
        return False
