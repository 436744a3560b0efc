#!/usr/bin/env python3
"""
Administrative correction of a match's live state.

This is the only supported way to fix a stuck or wrong status/score by hand.
It bypasses the forward-only guard, records an audit row with the before and
after values, and then re-runs settlement for the match.

Usage:
    python scripts/override_match.py 1208123 --status ENDED --home 2 --away 1 \
        --actor ops --reason "provider stuck in 2H after full time"
"""

import argparse
import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from livesettle.config import get_settings
from livesettle.enums import MatchStatus
from livesettle.match_store import MatchNotFound
from livesettle.services import build_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("override_match")


async def run(args) -> int:
    services = build_services(get_settings())
    try:
        try:
            match = await services.store.apply_override(
                args.external_id,
                actor=args.actor,
                reason=args.reason,
                status=MatchStatus(args.status) if args.status else None,
                home_score=args.home,
                away_score=args.away,
                minute=args.minute,
            )
        except MatchNotFound:
            logger.error(f"Match {args.external_id} not found")
            return 1

        print(
            f"Match {match.external_id}: status={match.status} "
            f"score={match.home_score}-{match.away_score} minute={match.minute}"
        )

        if not args.no_settle:
            summary = await services.evaluator.evaluate_match(match.external_id, force=True)
            print(f"Settlement: {summary}")
    finally:
        await services.close()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Audited administrative match override")
    parser.add_argument("external_id", help="Provider fixture ID")
    parser.add_argument("--status", choices=[s.value for s in MatchStatus])
    parser.add_argument("--home", type=int, help="Home score")
    parser.add_argument("--away", type=int, help="Away score")
    parser.add_argument("--minute", type=int)
    parser.add_argument("--actor", required=True, help="Who is making the correction")
    parser.add_argument("--reason", required=True, help="Why (stored in the audit trail)")
    parser.add_argument("--no-settle", action="store_true", help="Skip settlement re-evaluation")
    args = parser.parse_args()

    if args.status is None and args.home is None and args.away is None and args.minute is None:
        parser.error("nothing to override: pass --status, --home, --away or --minute")

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
