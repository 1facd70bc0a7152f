"""
Metered usage reporting to Lemon Squeezy.

Each billable action is reported at most once:
1. Already reported -> short-circuit, no provider call
2. User not on a metered (payg) subscription -> settled without a call
3. Otherwise claim the row (conditional UPDATE), call the provider, and mark
   it reported. A failed call releases the claim so the sweep can retry.

Reporting never raises to the caller: the action that produced the usage has
already happened and must not fail because metering did.
"""

import logging
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from tollgate.billing.provider import LemonSqueezyClient, ProviderError
from tollgate.models.billing import (
    SubscriptionStatus,
    Tier,
    UsageReportOutcome,
    UsageReportResult,
)
from tollgate.observability.metrics import track_usage_report
from tollgate.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

# A claim older than this is assumed abandoned (crashed worker). Must exceed
# the longest a metering call can take; see Settings.validate_configuration.
DEFAULT_CLAIM_TTL_SECONDS = 600


class UsageReporter:
    """
    Reports billable actions to the provider's metering API.

    Usage:
        reporter = UsageReporter(db, client)
        result = await reporter.report_usage(user_id, action_id)
        if not result.ok:
            logger.warning("usage not reported yet", extra=result.model_dump())
    """

    def __init__(
        self,
        db: BillingDatabase,
        client: LemonSqueezyClient,
        claim_ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.db = db
        self.client = client
        self.claim_ttl_seconds = claim_ttl_seconds
        self._clock = clock

    async def report_usage(self, user_id: str, action_id: str, quantity: int = 1) -> UsageReportResult:
        """
        Report one billable action.

        Args:
            user_id: Owning user
            action_id: Billable action identifier
            quantity: Units to meter (1 per action in this service)

        Returns:
            UsageReportResult: Never raises
        """
        try:
            result = await self._report(user_id, action_id, quantity)
        except Exception as e:
            # Storage failures land here; the row stays unreported for the sweep
            logger.error(
                "Usage reporting failed unexpectedly",
                extra={"user_id": user_id, "action_id": action_id, "error": str(e)},
                exc_info=True,
            )
            result = UsageReportResult(
                action_id=action_id, outcome=UsageReportOutcome.FAILED, error=str(e)
            )

        track_usage_report(result.outcome.value)
        return result

    async def _report(self, user_id: str, action_id: str, quantity: int) -> UsageReportResult:
        action = await self.db.get_billable_action(action_id)
        if action is None:
            logger.warning(
                "Billable action not found",
                extra={"user_id": user_id, "action_id": action_id},
            )
            return UsageReportResult(
                action_id=action_id,
                outcome=UsageReportOutcome.NOT_FOUND,
                error="Billable action not found",
            )

        if action.usage_reported:
            logger.info("Usage already reported", extra={"action_id": action_id})
            return UsageReportResult(action_id=action_id, outcome=UsageReportOutcome.ALREADY_REPORTED)

        user = await self.db.get_user(action.user_id)
        subscription = await self.db.get_current_subscription(action.user_id)
        metered = (
            user is not None
            and user.tier == Tier.PAYG
            and subscription is not None
            and subscription.tier == Tier.PAYG
            and subscription.status == SubscriptionStatus.ACTIVE
        )
        if not metered:
            # Nothing to bill; settle so the sweep does not keep revisiting it
            await self.db.mark_action_reported(action_id)
            logger.info(
                "Usage not metered for user",
                extra={
                    "user_id": action.user_id,
                    "action_id": action_id,
                    "tier": user.tier.value if user else None,
                },
            )
            return UsageReportResult(action_id=action_id, outcome=UsageReportOutcome.NOT_METERED)

        item_id = subscription.provider_subscription_item_id
        if not item_id:
            logger.error(
                "Metered subscription has no subscription item id",
                extra={
                    "user_id": action.user_id,
                    "action_id": action_id,
                    "subscription_id": subscription.provider_subscription_id,
                },
            )
            return UsageReportResult(
                action_id=action_id,
                outcome=UsageReportOutcome.FAILED,
                error="Subscription item id missing",
            )

        stale_before = self._clock() - timedelta(seconds=self.claim_ttl_seconds)
        if not await self.db.claim_billable_action(action_id, stale_before):
            # Either another worker holds a live claim or it finished first
            current = await self.db.get_billable_action(action_id)
            outcome = (
                UsageReportOutcome.ALREADY_REPORTED
                if current is not None and current.usage_reported
                else UsageReportOutcome.IN_PROGRESS
            )
            return UsageReportResult(action_id=action_id, outcome=outcome)

        try:
            record = await self.client.create_usage_record(item_id, quantity=quantity)
        except ProviderError as e:
            await self.db.release_claim(action_id)
            logger.error(
                "Provider rejected usage report",
                extra={
                    "user_id": action.user_id,
                    "action_id": action_id,
                    "subscription_id": subscription.provider_subscription_id,
                    "subscription_item_id": item_id,
                    "status_code": e.status_code,
                    "error_body": e.body,
                    "error": str(e),
                },
            )
            return UsageReportResult(
                action_id=action_id, outcome=UsageReportOutcome.FAILED, error=str(e)
            )

        await self.db.mark_action_reported(action_id, usage_record_id=record.id)
        logger.info(
            "Usage reported",
            extra={
                "user_id": action.user_id,
                "action_id": action_id,
                "usage_record_id": record.id,
                "quantity": quantity,
            },
        )
        return UsageReportResult(
            action_id=action_id,
            outcome=UsageReportOutcome.REPORTED,
            usage_record_id=record.id,
        )

    async def sweep_unreported(self, limit: int = 100, grace_seconds: int = 300) -> dict[str, int]:
        """
        Retry unreported actions older than the grace period.

        Returns:
            dict: Count of actions per outcome
        """
        created_before = self._clock() - timedelta(seconds=grace_seconds)
        actions = await self.db.list_unreported_actions(created_before, limit=limit)

        outcomes: Counter[str] = Counter()
        for action in actions:
            result = await self.report_usage(action.user_id, action.action_id)
            outcomes[result.outcome.value] += 1

        logger.info(
            "Unreported usage sweep complete",
            extra={"scanned": len(actions), "outcomes": dict(outcomes)},
        )
        return dict(outcomes)
