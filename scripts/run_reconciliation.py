#!/usr/bin/env python3
"""
Scheduled billing reconciliation job.

Compares local subscriptions, user tiers and metered usage against Lemon
Squeezy and reports drift. Optionally retries unreported usage first.

Usage:
  python scripts/run_reconciliation.py
  python scripts/run_reconciliation.py --sweep-usage --sweep-limit 500 --json

Exit codes:
  0  no drift found
  1  drift found (details in the log / JSON output)
  2  configuration error
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys


async def run_job(sweep_usage: bool, sweep_limit: int, as_json: bool) -> int:
    from tollgate.billing.provider import LemonSqueezyClient
    from tollgate.billing.reconciliation import ReconciliationEngine
    from tollgate.billing.usage_reporting import UsageReporter
    from tollgate.config import ConfigurationError, get_settings
    from tollgate.observability.logging import RequestContext, get_logger
    from tollgate.storage.database import BillingDatabase

    logger = get_logger("tollgate.jobs.reconciliation")
    settings = get_settings()

    try:
        settings.validate_configuration()
    except ConfigurationError as e:
        logger.error("Configuration invalid", error=str(e))
        return 2

    db = BillingDatabase(
        db_path=settings.database.path,
        busy_timeout_seconds=settings.database.busy_timeout_seconds,
    )
    await db.initialize()
    client = LemonSqueezyClient.from_config(settings.lemonsqueezy)

    try:
        with RequestContext():
            if sweep_usage:
                reporter = UsageReporter(
                    db, client, claim_ttl_seconds=settings.usage.claim_ttl_seconds
                )
                outcomes = await reporter.sweep_unreported(
                    limit=sweep_limit,
                    grace_seconds=settings.reconciliation.unreported_grace_seconds,
                )
                logger.info("Usage sweep finished", outcomes=outcomes)

            engine = ReconciliationEngine(db, client, settings.reconciliation)
            report = await engine.run()

        if as_json:
            json.dump(report.model_dump(mode="json"), sys.stdout, indent=2)
            sys.stdout.write("\n")
        else:
            logger.info("Reconciliation summary", **report.summary())

        return 1 if report.has_issues else 0

    finally:
        await client.aclose()
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Reconcile local billing state against Lemon Squeezy",
    )
    parser.add_argument(
        "--sweep-usage",
        action="store_true",
        help="Retry unreported usage before reconciling",
    )
    parser.add_argument(
        "--sweep-limit",
        type=int,
        default=100,
        help="Maximum unreported actions to retry (default: 100)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full report as JSON",
    )
    args = parser.parse_args()

    from tollgate.config import get_settings
    from tollgate.observability.logging import configure_logging

    settings = get_settings()
    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
    )

    exit_code = asyncio.run(
        run_job(sweep_usage=args.sweep_usage, sweep_limit=args.sweep_limit, as_json=args.json)
    )
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
