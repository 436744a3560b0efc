"""
Scheduled jobs.

- live_poll:         reconcile live matches with the feed (every LIVE_POLL_INTERVAL_SECONDS)
- minute_tick:       advance estimated minutes between feed updates
- settlement_sweep:  re-evaluate matches with pending predictions (safety net)
- standings_sync:    refresh configured season tables (slow cadence)
- anchor_backfill:   fill missing kickoff anchors, once at startup

Every job returns a summary dict, records job metrics, and never raises
into the scheduler.
"""

import logging
import os
import time
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from livesettle.minute import backfill_kickoff_anchors, refresh_live_minutes
from livesettle.services import Services
from livesettle.standings import sync_standings
from livesettle.telemetry import record_job_run

logger = logging.getLogger(__name__)

# Flag to prevent multiple scheduler instances (e.g., with --reload)
_scheduler_started = False
scheduler = AsyncIOScheduler()


async def _run_job(job_name: str, work) -> dict:
    start_time = time.time()
    try:
        result = await work()
    except Exception as e:
        duration_ms = (time.time() - start_time) * 1000
        logger.error(f"[{job_name.upper()}] Job failed: {e}", exc_info=True)
        record_job_run(job=job_name, status="error", duration_ms=duration_ms)
        return {"status": "error", "error": str(e)}

    duration_ms = (time.time() - start_time) * 1000
    record_job_run(job=job_name, status="ok", duration_ms=duration_ms)
    return result


async def live_poll_job(services: Services) -> dict:
    """Reconcile live matches with the feed and trigger settlement."""

    async def work():
        summary = await services.reconciler.poll_live()
        logger.info(f"[LIVE_POLL] {summary}")
        return summary

    return await _run_job("live_poll", work)


async def minute_tick_job(services: Services) -> dict:
    """Advance estimated minutes of live matches."""

    async def work():
        summary = await refresh_live_minutes(
            services.store,
            services.estimator,
            provider_fresh_seconds=services.settings.PROVIDER_MINUTE_FRESH_SECONDS,
        )
        if summary["updated"]:
            logger.info(f"[MINUTE_TICK] {summary}")
        return {"status": "ok", **summary}

    return await _run_job("minute_tick", work)


async def anchor_backfill_job(services: Services) -> dict:
    """Cold-start recovery: estimate kickoff anchors missing on live matches."""

    async def work():
        summary = await backfill_kickoff_anchors(services.store, services.estimator)
        logger.info(f"[BACKFILL] {summary}")
        return {"status": "ok", **summary}

    return await _run_job("anchor_backfill", work)


async def settlement_sweep_job(services: Services) -> dict:
    """Re-evaluate every match that still has pending linked predictions."""

    async def work():
        summary = await services.evaluator.sweep()
        if summary["matches"]:
            logger.info(f"[SETTLEMENT_SWEEP] {summary}")
        return summary

    return await _run_job("settlement_sweep", work)


async def standings_sync_job(services: Services) -> dict:
    """Refresh every configured (league, season) table."""

    async def work():
        results = []
        for league_id, season in services.settings.standings_seasons():
            try:
                results.append(
                    await sync_standings(services.feed, services.session_factory, league_id, season)
                )
            except Exception as e:
                logger.error(f"[STANDINGS] Failed league {league_id} season {season}: {e}")
                results.append({"status": "error", "league_id": league_id, "season": season})
        return {"status": "ok", "tables": results}

    return await _run_job("standings_sync", work)


def start_scheduler(services: Services) -> None:
    """
    Start the background scheduler.

    Uses a module-level flag to prevent duplicate scheduler instances
    when running with --reload.
    """
    global _scheduler_started

    if _scheduler_started:
        logger.warning("Scheduler already started, skipping duplicate initialization")
        return

    # Uvicorn sets this env var in the reloader subprocess
    if os.environ.get("UVICORN_RELOADED"):
        logger.info("Skipping scheduler in reload subprocess")
        return

    settings = services.settings
    now = datetime.now(timezone.utc)

    # Cold-start anchor backfill: once, right away
    scheduler.add_job(
        anchor_backfill_job,
        kwargs={"services": services},
        id="anchor_backfill",
        name="Kickoff anchor backfill (startup)",
        next_run_time=now,
        replace_existing=True,
    )

    scheduler.add_job(
        live_poll_job,
        trigger=IntervalTrigger(seconds=settings.LIVE_POLL_INTERVAL_SECONDS),
        kwargs={"services": services},
        id="live_poll",
        name=f"Live poll (every {settings.LIVE_POLL_INTERVAL_SECONDS}s)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=now,
    )

    scheduler.add_job(
        minute_tick_job,
        trigger=IntervalTrigger(seconds=settings.MINUTE_TICK_INTERVAL_SECONDS),
        kwargs={"services": services},
        id="minute_tick",
        name=f"Minute tick (every {settings.MINUTE_TICK_INTERVAL_SECONDS}s)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        settlement_sweep_job,
        trigger=IntervalTrigger(seconds=settings.SETTLEMENT_SWEEP_INTERVAL_SECONDS),
        kwargs={"services": services},
        id="settlement_sweep",
        name=f"Settlement sweep (every {settings.SETTLEMENT_SWEEP_INTERVAL_SECONDS}s)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if settings.standings_seasons():
        scheduler.add_job(
            standings_sync_job,
            trigger=IntervalTrigger(minutes=settings.STANDINGS_SYNC_INTERVAL_MINUTES),
            kwargs={"services": services},
            id="standings_sync",
            name=f"Standings sync (every {settings.STANDINGS_SYNC_INTERVAL_MINUTES} min)",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=now,
        )

    scheduler.start()
    _scheduler_started = True

    logger.info(
        f"Scheduler started:\n"
        f"  - Anchor backfill: once at startup\n"
        f"  - Live poll: every {settings.LIVE_POLL_INTERVAL_SECONDS}s\n"
        f"  - Minute tick: every {settings.MINUTE_TICK_INTERVAL_SECONDS}s\n"
        f"  - Settlement sweep: every {settings.SETTLEMENT_SWEEP_INTERVAL_SECONDS}s\n"
        f"  - Standings sync: every {settings.STANDINGS_SYNC_INTERVAL_MINUTES} min "
        f"({len(settings.standings_seasons())} tables)"
    )


def stop_scheduler() -> None:
    """Stop the background scheduler."""
    global _scheduler_started
    if scheduler.running:
        scheduler.shutdown(wait=False)
        _scheduler_started = False
        logger.info("Scheduler stopped")
