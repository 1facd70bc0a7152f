#!/usr/bin/env python3
"""
Database initialization script for billing state.

Usage:
    python scripts/init_billing_db.py [--db-path PATH]

Options:
    --db-path PATH    Path to SQLite database file (default: DATABASE_PATH or ./data/billing.db)

This script is idempotent - safe to run multiple times.
"""

import argparse
import asyncio
import logging

from tollgate.config import get_settings
from tollgate.storage.database import BillingDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = {"users", "subscriptions", "provider_events", "billable_actions", "audit_log"}


async def init_database(db_path: str) -> bool:
    """
    Initialize billing database schema.

    Returns:
        bool: True if initialization succeeded
    """
    db = BillingDatabase(db_path=db_path)
    try:
        await db.initialize()

        rows = db._get_connection().execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ).fetchall()
        missing = EXPECTED_TABLES - {row["name"] for row in rows}
        if missing:
            logger.error(f"Missing tables after initialization: {sorted(missing)}")
            return False

        logger.info(f"Billing database ready at {db_path}")
        return True

    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        return False
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Initialize the billing database")
    parser.add_argument(
        "--db-path",
        default=None,
        help="Path to SQLite database file",
    )
    args = parser.parse_args()

    db_path = args.db_path or get_settings().database.path
    ok = asyncio.run(init_database(db_path))
    raise SystemExit(0 if ok else 1)


if __name__ == "__main__":
    main()
