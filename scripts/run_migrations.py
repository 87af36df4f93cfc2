#!/usr/bin/env python
"""Run Alembic migrations up to head (container startup)."""

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from alembic.config import Config
from alembic import command

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def run_migrations() -> bool:
    try:
        logger.info("Running database migrations")
        command.upgrade(Config(str(ROOT / "alembic.ini")), "head")
        logger.info("Migrations complete, schema is up to date")
        return True
    except Exception as e:
        logger.error(f"Migration failed: {e}", exc_info=True)
        return False


if __name__ == "__main__":
    sys.exit(0 if run_migrations() else 1)
