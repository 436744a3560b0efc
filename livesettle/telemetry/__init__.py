"""
Telemetry Module

Provides Prometheus metrics for:
- Feed requests (count, errors, latency)
- Match upserts and rejected status transitions
- Kickoff anchor backfill and minute estimation
- Settlement outcomes
- Scheduler job health
"""

from livesettle.telemetry.metrics import (
    record_feed_request,
    record_match_upsert,
    record_rejected_transition,
    record_anchor_backfill,
    record_minute_estimate,
    record_settlement,
    record_settlement_noop,
    record_settlement_error,
    record_job_run,
    get_metrics_text,
)

__all__ = [
    "record_feed_request",
    "record_match_upsert",
    "record_rejected_transition",
    "record_anchor_backfill",
    "record_minute_estimate",
    "record_settlement",
    "record_settlement_noop",
    "record_settlement_error",
    "record_job_run",
    "get_metrics_text",
]
