#!/usr/bin/env python
"""
Recompute engagement rankings.

Rankings are otherwise refreshed by whatever scheduler the deployment uses;
run this after a bulk watch-history import or to backfill a new user.

Usage:
    python scripts/recompute_rankings.py                # every user with watch history
    python scripts/recompute_rankings.py --user-id 7
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from peek_catalog.db.database import async_session, engine
from peek_catalog.db.models import WatchHistory
from peek_catalog.services.ranking_service import RankingComputeService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def main(user_id: int | None) -> int:
    service = RankingComputeService()

    if user_id is not None:
        user_ids = [user_id]
    else:
        async with async_session() as db:
            result = await db.execute(select(WatchHistory.user_id).distinct())
            user_ids = sorted(row[0] for row in result.all())

    logger.info(f"Recomputing rankings for {len(user_ids)} users")
    failed = 0
    for uid in user_ids:
        try:
            written = await service.recompute_all_rankings(uid)
            logger.info(f"User {uid}: {written}")
        except Exception as e:
            failed += 1
            logger.error(f"Ranking recompute failed for user {uid}: {e}", exc_info=True)

    await engine.dispose()
    logger.info(f"Done ({failed} failed)")
    return 1 if failed else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Recompute per-user engagement rankings")
    parser.add_argument("--user-id", type=int, default=None, help="Only this user")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.user_id)))
