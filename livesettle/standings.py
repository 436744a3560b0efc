"""Standings sync: mirror the feed's season table into the standings table."""

import logging

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from livesettle.database import get_session_with_retry
from livesettle.feed.base import FeedClient, FeedError
from livesettle.models import Standing, utcnow

logger = logging.getLogger(__name__)

UPDATE_COLUMNS = [
    "team_name",
    "position",
    "points",
    "played",
    "won",
    "drawn",
    "lost",
    "goals_for",
    "goals_against",
    "group_name",
    "updated_at",
]


async def sync_standings(feed: FeedClient, session_factory, league_id: int, season: int) -> dict:
    """
    Fetch one season table and upsert it keyed by (league_id, season, team).

    Feed errors are reported in the summary, storage errors propagate.
    """
    try:
        rows = await feed.get_season_standings_table(league_id, season)
    except FeedError as e:
        logger.warning(f"[STANDINGS] Feed error for league {league_id} season {season}: {e}")
        return {"status": "feed_error", "league_id": league_id, "season": season, "rows": 0}

    if not rows:
        logger.info(f"[STANDINGS] No standings for league {league_id} season {season}")
        return {"status": "ok", "league_id": league_id, "season": season, "rows": 0}

    async with get_session_with_retry(session_factory) as session:
        dialect = session.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        try:
            for row in rows:
                values = {
                    "league_id": league_id,
                    "season": season,
                    "team_external_id": row.team_external_id,
                    "team_name": row.team_name,
                    "position": row.position,
                    "points": row.points,
                    "played": row.played,
                    "won": row.won,
                    "drawn": row.drawn,
                    "lost": row.lost,
                    "goals_for": row.goals_for,
                    "goals_against": row.goals_against,
                    "group_name": row.group,
                    "updated_at": utcnow(),
                }
                stmt = insert(Standing.__table__).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["league_id", "season", "team_external_id"],
                    set_={col: getattr(stmt.excluded, col) for col in UPDATE_COLUMNS},
                )
                await session.execute(stmt)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info(f"[STANDINGS] league {league_id} season {season}: {len(rows)} rows")
    return {"status": "ok", "league_id": league_id, "season": season, "rows": len(rows)}
