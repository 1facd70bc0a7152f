"""
Budget-guarded execution of billable actions.

Wraps one paid inference call (or any cost-incurring action):
    check budget -> run action -> record spend
    -> persist billable action -> report usage (best effort)

Only the budget check and the action itself can fail the call. Spend
recording and usage reporting log their failures and move on.
"""

import logging
import sqlite3
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from tollgate.billing.cost_breaker import CostCircuitBreaker, ServiceOverloadedError
from tollgate.billing.usage_reporting import UsageReporter
from tollgate.models.billing import UsageReportResult
from tollgate.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ActionOutcome(BaseModel):
    """What a guarded action returns: an opaque result plus its cost."""

    result: Any
    cost_usd: float = 0.0


class GuardedActionResult(BaseModel, Generic[T]):
    action_id: str
    result: T
    cost_usd: float
    spend_recorded: bool
    usage: UsageReportResult | None = None


class GuardedActionRunner:
    """
    Runs billable actions behind the cost circuit breaker.

    Usage:
        runner = GuardedActionRunner(db, breaker, reporter)
        outcome = await runner.run(user_id, lambda: call_inference(prompt))
    """

    def __init__(
        self,
        db: BillingDatabase,
        breaker: CostCircuitBreaker,
        reporter: UsageReporter,
    ):
        self.db = db
        self.breaker = breaker
        self.reporter = reporter

    async def run(
        self,
        user_id: str,
        action: Callable[[], Awaitable[ActionOutcome]],
        action_id: str | None = None,
    ) -> GuardedActionResult:
        """
        Execute an action if budget allows.

        Raises:
            ServiceOverloadedError: Budget exhausted; nothing was executed
            Exception: Whatever the action itself raises (nothing is billed)
        """
        check = await self.breaker.check_budget(user_id)
        if not check.allowed:
            raise ServiceOverloadedError(check)

        outcome = await action()
        action_id = action_id or str(uuid.uuid4())

        spend_recorded = await self.breaker.record_spend(user_id, outcome.cost_usd)

        try:
            await self.db.record_billable_action(user_id, outcome.cost_usd, action_id=action_id)
        except sqlite3.Error as e:
            logger.error(
                "Failed to persist billable action; usage not reported",
                extra={"user_id": user_id, "action_id": action_id, "error": str(e)},
            )
            usage = None
        else:
            usage = await self.reporter.report_usage(user_id, action_id)

        if usage is not None and not usage.ok:
            logger.warning(
                "Usage report deferred to sweep",
                extra={"user_id": user_id, "action_id": action_id, "error": usage.error},
            )

        return GuardedActionResult(
            action_id=action_id,
            result=outcome.result,
            cost_usd=outcome.cost_usd,
            spend_recorded=spend_recorded,
            usage=usage,
        )
