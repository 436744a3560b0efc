"""Read-only routes: health, metrics, match and prediction lookups.

No write endpoints: every write comes from the reconciler, the settlement
evaluator, or the audited override script.
"""

import time
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from livesettle.services import Services
from livesettle.telemetry import get_metrics_text

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    scheduler_running: bool


class MatchResponse(BaseModel):
    external_id: str
    status: str
    home_score: Optional[int]
    away_score: Optional[int]
    ht_home_score: Optional[int]
    ht_away_score: Optional[int]
    minute: Optional[int]
    minute_source: Optional[str]
    scheduled_kickoff_ts: Optional[int]
    first_half_kickoff_ts: Optional[int]
    first_half_kickoff_source: Optional[str]
    second_half_kickoff_ts: Optional[int]
    second_half_kickoff_source: Optional[str]
    finished_at: Optional[datetime]


class SettlementAuditEntry(BaseModel):
    result: str
    reason: str
    score: Optional[str]
    minute: Optional[int]
    created_at: datetime


class PredictionResponse(BaseModel):
    id: int
    match_external_id: Optional[str]
    period: str
    resolved_period: Optional[str]
    line_type: str
    threshold: float
    result: str
    result_reason: Optional[str]
    resulted_at: Optional[datetime]
    final_score: Optional[str]
    audit: list[SettlementAuditEntry]


def _services(request: Request) -> Services:
    return request.app.state.services


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    from livesettle.scheduler import scheduler

    return HealthResponse(status="ok", scheduler_running=scheduler.running)


@router.get("/metrics")
async def prometheus_metrics(
    request: Request,
    authorization: str = Header(None, alias="Authorization"),
):
    """
    Prometheus metrics endpoint.

    Requires a Bearer token when METRICS_BEARER_TOKEN is set.
    """
    expected_token = _services(request).settings.METRICS_BEARER_TOKEN
    if expected_token and authorization != f"Bearer {expected_token}":
        return PlainTextResponse(
            content="# Unauthorized\n",
            status_code=401,
            media_type="text/plain",
        )
    content, content_type = get_metrics_text()
    return PlainTextResponse(content=content, media_type=content_type)


@router.get("/matches/{external_id}", response_model=MatchResponse)
async def get_match(external_id: str, request: Request):
    """Stored match state, with the minute re-estimated for now."""
    services = _services(request)
    match = await services.store.get(external_id)
    if match is None:
        raise HTTPException(status_code=404, detail="Match not found")

    estimate = services.estimator.for_match(
        match, int(time.time()), services.settings.PROVIDER_MINUTE_FRESH_SECONDS
    )
    return MatchResponse(
        external_id=match.external_id,
        status=match.status,
        home_score=match.home_score,
        away_score=match.away_score,
        ht_home_score=match.ht_home_score,
        ht_away_score=match.ht_away_score,
        minute=estimate.minute if estimate else match.minute,
        minute_source=estimate.source.value if estimate else match.minute_source,
        scheduled_kickoff_ts=match.scheduled_kickoff_ts,
        first_half_kickoff_ts=match.first_half_kickoff_ts,
        first_half_kickoff_source=match.first_half_kickoff_source,
        second_half_kickoff_ts=match.second_half_kickoff_ts,
        second_half_kickoff_source=match.second_half_kickoff_source,
        finished_at=match.finished_at,
    )


@router.get("/predictions/{prediction_id}", response_model=PredictionResponse)
async def get_prediction(prediction_id: int, request: Request):
    """Prediction with its settlement audit trail."""
    services = _services(request)
    prediction = await services.ledger.get(prediction_id)
    if prediction is None:
        raise HTTPException(status_code=404, detail="Prediction not found")

    audit = await services.ledger.audit_trail(prediction_id)
    return PredictionResponse(
        id=prediction.id,
        match_external_id=prediction.match_external_id,
        period=prediction.period,
        resolved_period=prediction.resolved_period,
        line_type=prediction.line_type,
        threshold=prediction.threshold,
        result=prediction.result,
        result_reason=prediction.result_reason,
        resulted_at=prediction.resulted_at,
        final_score=prediction.final_score,
        audit=[
            SettlementAuditEntry(
                result=entry.result,
                reason=entry.reason,
                score=entry.score,
                minute=entry.minute,
                created_at=entry.created_at,
            )
            for entry in audit
        ],
    )
