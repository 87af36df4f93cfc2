#!/usr/bin/env python
"""
Rebuild the materialized user_excluded_entities table.

Needed after content restrictions change or after a catalog sync adds
entities that INCLUDE-mode restrictions or cascades should cover.

Usage:
    python scripts/recompute_exclusions.py              # all users
    python scripts/recompute_exclusions.py --user-id 7
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from peek_catalog.db.database import engine
from peek_catalog.services.exclusion_computation import get_exclusion_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def main(user_id: int | None) -> int:
    service = get_exclusion_service()
    try:
        if user_id is not None:
            await service.recompute_for_user(user_id)
            return 0

        summary = await service.recompute_all_users()
        logger.info(f"Recomputed {summary['users']} users, {summary['failed']} failed")
        return 1 if summary["failed"] else 0
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Recompute per-user exclusions")
    parser.add_argument("--user-id", type=int, default=None, help="Only this user")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.user_id)))
