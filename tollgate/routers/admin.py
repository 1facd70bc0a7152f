"""
Admin and scheduled-job endpoints.

- POST /admin/reconciliation/run: run reconciliation now (cron entry point)
- POST /admin/usage/sweep: retry unreported usage
- GET  /admin/cost-metrics: current spend vs cost breaker limits

Security:
- Bearer token must equal RECONCILIATION_CRON_SECRET (constant-time compare)
- Endpoints are disabled (503) when no secret is configured
"""

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel

from tollgate.billing.cost_breaker import CostCircuitBreaker
from tollgate.billing.reconciliation import ReconciliationEngine
from tollgate.billing.usage_reporting import UsageReporter
from tollgate.config import get_settings
from tollgate.models.billing import (
    OrphanedSubscription,
    ReconciliationIssue,
    UsageDiscrepancy,
)
from tollgate.storage.counters import CounterStoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


class ReconciliationResponse(BaseModel):
    success: bool
    timestamp: str
    summary: dict
    subscription_issues: list[ReconciliationIssue]
    usage_discrepancies: list[UsageDiscrepancy]
    orphaned_subscriptions: list[OrphanedSubscription]
    errors: list[str]


class SweepResponse(BaseModel):
    success: bool
    outcomes: dict[str, int]


async def verify_cron_secret(authorization: str | None = Header(default=None)) -> bool:
    """Verify the bearer token against the configured cron secret."""
    secret = get_settings().reconciliation.cron_secret
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints disabled: cron secret not configured",
        )

    token = ""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer ") :].strip()

    if not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        logger.warning("Rejected admin request with invalid bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing bearer token",
        )
    return True


# Service accessors read the globals initialized in the application lifespan


def get_reconciliation_engine() -> ReconciliationEngine:
    from tollgate import main

    if main.reconciliation_engine is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Reconciliation not initialized")
    return main.reconciliation_engine


def get_usage_reporter() -> UsageReporter:
    from tollgate import main

    if main.usage_reporter is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Usage reporter not initialized")
    return main.usage_reporter


def get_cost_breaker() -> CostCircuitBreaker:
    from tollgate import main

    if main.cost_breaker is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Cost breaker not initialized")
    return main.cost_breaker


@router.post(
    "/reconciliation/run",
    response_model=ReconciliationResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_reconciliation(
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ReconciliationResponse:
    """Run a full reconciliation pass and return the discrepancy report."""
    report = await engine.run()
    return ReconciliationResponse(
        success=True,
        timestamp=report.finished_at.isoformat(),
        summary=report.summary(),
        subscription_issues=report.subscription_issues,
        usage_discrepancies=report.usage_discrepancies,
        orphaned_subscriptions=report.orphaned_subscriptions,
        errors=report.errors,
    )


@router.post(
    "/usage/sweep",
    response_model=SweepResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def sweep_unreported_usage(
    limit: int = Query(default=100, ge=1, le=1000),
    reporter: UsageReporter = Depends(get_usage_reporter),
) -> SweepResponse:
    """Retry metering for billable actions that were never reported."""
    outcomes = await reporter.sweep_unreported(
        limit=limit,
        grace_seconds=get_settings().reconciliation.unreported_grace_seconds,
    )
    return SweepResponse(success=True, outcomes=outcomes)


@router.get("/cost-metrics", dependencies=[Depends(verify_cron_secret)])
async def cost_metrics(
    breaker: CostCircuitBreaker = Depends(get_cost_breaker),
) -> dict:
    """Current spend against the cost circuit breaker limits."""
    try:
        return await breaker.cost_snapshot()
    except CounterStoreError as e:
        logger.error("Cost metrics unavailable", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Counter store unavailable",
        ) from e
