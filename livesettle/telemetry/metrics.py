"""
Prometheus metrics for live sync and settlement.

Design principles:
- Low cardinality (controlled labels)
- Best-effort (never block main flow)

=============================================================================
CARDINALITY CONTROL
=============================================================================

ALLOWED LABELS (bounded sets):
- provider:   "api_football" (max ~5)
- endpoint:   "fixtures", "standings" (max ~10)
- status_code: "200", "429", "500", "0" (max ~10)
- error_code: "timeout", "rate_limit", "http_5xx", "request_error", "malformed" (max ~10)
- outcome:    "created", "updated", "unchanged", "rejected" (upserts)
- source:     "provider", "computed", "smart", "fallback"
- result:     "WON", "LOST"; kind: "instant", "period_close"
- job:        scheduler job ids

FORBIDDEN AS LABELS: external_id, prediction id, team names, raw errors.
Use logs for per-match debugging.
=============================================================================
"""

import logging
import time

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)

logger = logging.getLogger(__name__)

# =============================================================================
# FEED METRICS
# =============================================================================

feed_requests_total = Counter(
    "livesettle_feed_requests_total",
    "Total requests to the live feed provider",
    ["provider", "endpoint", "status_code"],
)

feed_errors_total = Counter(
    "livesettle_feed_errors_total",
    "Total errors from the live feed provider",
    ["provider", "endpoint", "error_code"],
)

feed_latency_ms = Histogram(
    "livesettle_feed_latency_ms",
    "Feed request latency in milliseconds",
    ["provider", "endpoint"],
    buckets=[10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000],
)

# =============================================================================
# MATCH STORE METRICS
# =============================================================================

match_upserts_total = Counter(
    "livesettle_match_upserts_total",
    "Match snapshot upserts by outcome",
    ["outcome"],
)

status_transitions_rejected_total = Counter(
    "livesettle_status_transitions_rejected_total",
    "Backward status transitions rejected by the forward-only guard",
    ["from_status", "to_status"],
)

anchors_backfilled_total = Counter(
    "livesettle_anchors_backfilled_total",
    "Kickoff anchors filled by the estimator",
    ["half", "source"],
)

minute_estimates_total = Counter(
    "livesettle_minute_estimates_total",
    "Minutes written by the minute tick, by source",
    ["source"],
)

# =============================================================================
# SETTLEMENT METRICS
# =============================================================================

settlements_total = Counter(
    "livesettle_settlements_total",
    "Predictions settled",
    ["result", "kind"],
)

settlement_noops_total = Counter(
    "livesettle_settlement_noops_total",
    "Settlement attempts on already-settled predictions",
)

settlement_errors_total = Counter(
    "livesettle_settlement_errors_total",
    "Per-prediction settlement failures",
)

# =============================================================================
# GENERIC JOB HEALTH METRICS
# =============================================================================

job_runs_total = Counter(
    "livesettle_job_runs_total",
    "Total job runs by job and status",
    ["job", "status"],
)

job_last_success_timestamp = Gauge(
    "livesettle_job_last_success_timestamp",
    "Unix timestamp of last successful job run",
    ["job"],
)

job_duration_ms = Histogram(
    "livesettle_job_duration_ms",
    "Job duration in milliseconds",
    ["job"],
    buckets=[10, 50, 100, 500, 1000, 5000, 10000, 30000, 60000, 120000],
)


# =============================================================================
# HELPERS (never raise)
# =============================================================================


def record_feed_request(
    provider: str,
    endpoint: str,
    status_code: int,
    latency_ms: float,
    error_code: str = None,
) -> None:
    """Record a feed request with all associated metrics."""
    try:
        feed_requests_total.labels(
            provider=provider, endpoint=endpoint, status_code=str(status_code)
        ).inc()
        feed_latency_ms.labels(provider=provider, endpoint=endpoint).observe(latency_ms)
        if error_code:
            feed_errors_total.labels(
                provider=provider, endpoint=endpoint, error_code=error_code
            ).inc()
    except Exception as e:
        logger.warning(f"Failed to record feed request metric: {e}")


def record_match_upsert(outcome: str) -> None:
    try:
        match_upserts_total.labels(outcome=outcome).inc()
    except Exception as e:
        logger.warning(f"Failed to record upsert metric: {e}")


def record_rejected_transition(from_status: str, to_status: str) -> None:
    try:
        status_transitions_rejected_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()
    except Exception as e:
        logger.warning(f"Failed to record rejected transition metric: {e}")


def record_anchor_backfill(half: str, source: str) -> None:
    try:
        anchors_backfilled_total.labels(half=half, source=source).inc()
    except Exception as e:
        logger.warning(f"Failed to record anchor backfill metric: {e}")


def record_minute_estimate(source: str) -> None:
    try:
        minute_estimates_total.labels(source=source).inc()
    except Exception as e:
        logger.warning(f"Failed to record minute estimate metric: {e}")


def record_settlement(result: str, instant: bool) -> None:
    try:
        settlements_total.labels(
            result=result, kind="instant" if instant else "period_close"
        ).inc()
    except Exception as e:
        logger.warning(f"Failed to record settlement metric: {e}")


def record_settlement_noop() -> None:
    try:
        settlement_noops_total.inc()
    except Exception as e:
        logger.warning(f"Failed to record settlement no-op metric: {e}")


def record_settlement_error() -> None:
    try:
        settlement_errors_total.inc()
    except Exception as e:
        logger.warning(f"Failed to record settlement error metric: {e}")


def record_job_run(job: str, status: str, duration_ms: float) -> None:
    """
    Record a job run with status and duration.

    Args:
        job: Job identifier (live_poll, minute_tick, settlement_sweep, ...)
        status: "ok" or "error"
        duration_ms: Job duration in milliseconds
    """
    try:
        job_runs_total.labels(job=job, status=status).inc()
        if duration_ms > 0:
            job_duration_ms.labels(job=job).observe(duration_ms)
        if status == "ok":
            job_last_success_timestamp.labels(job=job).set(time.time())
    except Exception as e:
        logger.warning(f"Failed to record job run metric: {e}")


def get_metrics_text() -> tuple[str, str]:
    """
    Generate Prometheus metrics text output.

    Returns:
        Tuple of (content, content_type)
    """
    return generate_latest(REGISTRY).decode("utf-8"), CONTENT_TYPE_LATEST
