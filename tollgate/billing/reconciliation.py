"""
Reconciliation between local billing state and Lemon Squeezy.

Read-only against local state. Three independent checks run in parallel:
- Subscriptions: status, user tier, renewal date, and existence at the provider
- Usage: local billable actions this month vs provider usage records
- Orphans: active provider subscriptions with no local row

Issues are returned in a ReconciliationReport and raised as an operator
alert (error log plus Prometheus counters). Nothing is repaired automatically.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from tollgate.billing.provider import LemonSqueezyClient, ProviderError
from tollgate.config import ReconciliationConfig
from tollgate.models.billing import (
    OrphanedSubscription,
    ReconciliationIssue,
    ReconciliationIssueType,
    ReconciliationReport,
    SubscriptionStatus,
    Tier,
    UsageDiscrepancy,
)
from tollgate.observability.metrics import mark_reconciliation_run, track_reconciliation_issue
from tollgate.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

CHECKED_STATUSES = [
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.PAUSED,
    SubscriptionStatus.ON_TRIAL,
]


def billing_period_start(now: datetime) -> datetime:
    """First instant of the current UTC calendar month."""
    now = now.astimezone(UTC)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def usage_drift_exceeds(db_count: int, provider_count: int, tolerance_percent: float) -> bool:
    """
    True when |db - provider| / db is strictly above the tolerance.

    Integer cross-multiplication keeps the 5.0% boundary exact. With no
    local usage, any provider usage is drift.
    """
    if db_count == 0:
        return provider_count > 0
    return abs(db_count - provider_count) * 100 > db_count * tolerance_percent


class ReconciliationEngine:
    """
    Detects drift between the local store and the provider.

    Usage:
        engine = ReconciliationEngine(db, client, settings.reconciliation)
        report = await engine.run()
    """

    def __init__(
        self,
        db: BillingDatabase,
        client: LemonSqueezyClient,
        config: ReconciliationConfig,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.db = db
        self.client = client
        self.config = config
        self._clock = clock

    async def run(self) -> ReconciliationReport:
        """Run all checks and alert if anything is out of sync."""
        started_at = self._clock()
        logger.info("Reconciliation started")

        (issues, subs_checked), (discrepancies, users_checked, usage_errors), (
            orphans,
            orphan_errors,
        ) = await asyncio.gather(
            self.check_subscriptions(),
            self.check_usage(),
            self.find_orphans(),
        )

        report = ReconciliationReport(
            started_at=started_at,
            finished_at=self._clock(),
            subscriptions_checked=subs_checked,
            users_checked=users_checked,
            subscription_issues=issues,
            usage_discrepancies=discrepancies,
            orphaned_subscriptions=orphans,
            errors=usage_errors + orphan_errors,
        )

        self._alert(report)
        mark_reconciliation_run(report.finished_at.timestamp())
        logger.info("Reconciliation finished", extra=report.summary())
        return report

    # ========================================================================
    # CHECKS
    # ========================================================================

    async def check_subscriptions(self) -> tuple[list[ReconciliationIssue], int]:
        """Compare each live local subscription with the provider's copy."""
        subscriptions = await self.db.list_subscriptions_by_status(CHECKED_STATUSES)
        issues: list[ReconciliationIssue] = []

        for sub in subscriptions:
            sub_id = sub.provider_subscription_id
            try:
                remote = await self.client.get_subscription(sub_id)
            except ProviderError as e:
                issues.append(
                    ReconciliationIssue(
                        issue_type=ReconciliationIssueType.API_ERROR,
                        user_id=sub.user_id,
                        subscription_id=sub_id,
                        details=str(e),
                    )
                )
                continue

            if remote is None:
                issues.append(
                    ReconciliationIssue(
                        issue_type=ReconciliationIssueType.MISSING_IN_LEMONSQUEEZY,
                        user_id=sub.user_id,
                        subscription_id=sub_id,
                        db_value=sub.status.value,
                        details="Subscription exists locally but provider returned 404",
                    )
                )
                continue

            if sub.status.value != remote.status:
                issues.append(
                    ReconciliationIssue(
                        issue_type=ReconciliationIssueType.STATUS_MISMATCH,
                        user_id=sub.user_id,
                        subscription_id=sub_id,
                        db_value=sub.status.value,
                        lemonsqueezy_value=remote.status,
                    )
                )

            user = await self.db.get_user(sub.user_id)
            if user is not None and user.tier != sub.effective_tier:
                issues.append(
                    ReconciliationIssue(
                        issue_type=ReconciliationIssueType.USER_TIER_MISMATCH,
                        user_id=sub.user_id,
                        subscription_id=sub_id,
                        db_value=user.tier.value,
                        lemonsqueezy_value=sub.effective_tier.value,
                        details=f"User tier does not match {sub.status.value} subscription",
                    )
                )

            if sub.renews_at is not None and remote.renews_at is not None:
                drift = abs((sub.renews_at - remote.renews_at).total_seconds())
                if drift > self.config.renewal_tolerance_seconds:
                    issues.append(
                        ReconciliationIssue(
                            issue_type=ReconciliationIssueType.RENEWAL_DATE_MISMATCH,
                            user_id=sub.user_id,
                            subscription_id=sub_id,
                            db_value=sub.renews_at.isoformat(),
                            lemonsqueezy_value=remote.renews_at.isoformat(),
                            details=f"Renewal dates differ by {drift:.0f}s",
                        )
                    )

        return issues, len(subscriptions)

    async def check_usage(self) -> tuple[list[UsageDiscrepancy], int, list[str]]:
        """Compare this month's local action count with provider usage records."""
        now = self._clock()
        period_start = billing_period_start(now)
        subscriptions = await self.db.list_subscriptions_by_status([SubscriptionStatus.ACTIVE])
        metered = [s for s in subscriptions if s.tier == Tier.PAYG]

        discrepancies: list[UsageDiscrepancy] = []
        errors: list[str] = []
        checked = 0

        for sub in metered:
            if not sub.provider_subscription_item_id:
                errors.append(f"subscription {sub.provider_subscription_id} has no item id")
                continue

            try:
                records = await self.client.list_usage_records(sub.provider_subscription_item_id)
            except ProviderError as e:
                errors.append(f"usage records for {sub.provider_subscription_id}: {e}")
                logger.error(
                    "Failed to fetch usage records",
                    extra={"subscription_id": sub.provider_subscription_id, "error": str(e)},
                )
                continue

            checked += 1
            db_count = await self.db.count_billable_actions(sub.user_id, period_start, now)
            provider_count = sum(
                r.quantity
                for r in records
                if r.created_at is None or r.created_at >= period_start
            )

            if usage_drift_exceeds(db_count, provider_count, self.config.usage_tolerance_percent):
                discrepancies.append(
                    UsageDiscrepancy(
                        user_id=sub.user_id,
                        subscription_id=sub.provider_subscription_id,
                        subscription_item_id=sub.provider_subscription_item_id,
                        db_count=db_count,
                        provider_count=provider_count,
                        difference=db_count - provider_count,
                        difference_percent=(
                            round(abs(db_count - provider_count) / db_count * 100, 2)
                            if db_count
                            else None
                        ),
                    )
                )

        return discrepancies, checked, errors

    async def find_orphans(self) -> tuple[list[OrphanedSubscription], list[str]]:
        """Active provider subscriptions we have never heard of."""
        try:
            remote_subs = await self.client.list_subscriptions()
        except ProviderError as e:
            logger.error("Failed to list provider subscriptions", extra={"error": str(e)})
            return [], [f"list subscriptions: {e}"]

        local_ids = await self.db.list_provider_subscription_ids()
        orphans = [
            OrphanedSubscription(
                subscription_id=remote.id,
                status=remote.status,
                customer_id=remote.customer_id,
                user_email=remote.user_email,
                variant_id=remote.variant_id,
            )
            for remote in remote_subs
            if remote.status == SubscriptionStatus.ACTIVE.value and remote.id not in local_ids
        ]
        return orphans, []

    # ========================================================================
    # ALERTING
    # ========================================================================

    def _alert(self, report: ReconciliationReport) -> None:
        for issue in report.subscription_issues:
            track_reconciliation_issue(issue.issue_type.value)
            logger.error(
                "Reconciliation issue",
                extra={
                    "issue_type": issue.issue_type.value,
                    "user_id": issue.user_id,
                    "subscription_id": issue.subscription_id,
                    "db_value": issue.db_value,
                    "lemonsqueezy_value": issue.lemonsqueezy_value,
                    "details": issue.details,
                },
            )

        for discrepancy in report.usage_discrepancies:
            track_reconciliation_issue("usage_mismatch")
            logger.error(
                "Usage discrepancy",
                extra={
                    "issue_type": "usage_mismatch",
                    "risk": "revenue" if discrepancy.under_reported else "trust",
                    **discrepancy.model_dump(),
                },
            )

        for orphan in report.orphaned_subscriptions:
            track_reconciliation_issue("orphaned_subscription")
            logger.error(
                "Orphaned provider subscription",
                extra={"issue_type": "orphaned_subscription", **orphan.model_dump()},
            )

        if report.has_issues:
            logger.error("Reconciliation found billing drift", extra=report.summary())
