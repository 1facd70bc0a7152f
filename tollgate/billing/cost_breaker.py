"""
Cost circuit breaker for the paid inference API.

Three rolling spend counters, checked in priority order:
1. Global daily   (cost:daily:{YYYY-MM-DD}, expires after 24h)
2. Global hourly  (cost:hourly:{YYYY-MM-DD}:{HH}, expires after 1h)
3. Per-user daily (cost:user:{user_id}:{YYYY-MM-DD}, expires after 24h)

A layer trips once its counter reaches the limit. check_budget() and
record_spend() are separate calls; concurrent callers just under a limit can
jointly overshoot it. That is acceptable for a soft spend guard.

When the counter store is unreachable the breaker fails open: availability
wins over a brief, bounded overspend.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from tollgate.config import CostLimitConfig
from tollgate.models.billing import BreakerLayer, BudgetCheck
from tollgate.observability.metrics import (
    track_breaker_fail_open,
    track_breaker_trip,
    track_breaker_warning,
    track_cost_record_failure,
    track_cost_recorded,
)
from tollgate.storage.counters import CounterStore, CounterStoreError

logger = logging.getLogger(__name__)

DAILY_TTL_SECONDS = 86400
HOURLY_TTL_SECONDS = 3600

DEFAULT_RETRY_AFTER_SECONDS = {
    BreakerLayer.DAILY: 3600,
    BreakerLayer.HOURLY: 600,
    BreakerLayer.USER: 3600,
}


class ServiceOverloadedError(Exception):
    """A billable action was denied by the cost circuit breaker (503)."""

    def __init__(self, check: BudgetCheck):
        super().__init__(check.reason or "Service temporarily overloaded")
        self.check = check

    @property
    def retry_after_seconds(self) -> int:
        return DEFAULT_RETRY_AFTER_SECONDS.get(self.check.layer, 600)


def daily_key(now: datetime) -> str:
    return f"cost:daily:{now:%Y-%m-%d}"


def hourly_key(now: datetime) -> str:
    return f"cost:hourly:{now:%Y-%m-%d}:{now:%H}"


def user_key(user_id: str, now: datetime) -> str:
    return f"cost:user:{user_id}:{now:%Y-%m-%d}"


class CostCircuitBreaker:
    """
    Layered spend guard over an injected counter store.

    Usage:
        check = await breaker.check_budget(user_id)
        if not check.allowed:
            raise ServiceOverloadedError(check)
        result, cost = await run_inference(...)
        await breaker.record_spend(user_id, cost)
    """

    def __init__(
        self,
        store: CounterStore,
        limits: CostLimitConfig,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = store
        self.limits = limits
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock().astimezone(UTC)

    async def check_budget(self, user_id: str) -> BudgetCheck:
        """
        Decide whether a new billable action may start.

        Never raises: counter store failures allow the request.
        """
        now = self._now()
        layers = [
            (BreakerLayer.DAILY, daily_key(now), self.limits.daily, "Daily cost limit reached"),
            (BreakerLayer.HOURLY, hourly_key(now), self.limits.hourly, "Hourly cost limit reached"),
            (
                BreakerLayer.USER,
                user_key(user_id, now),
                self.limits.user_daily,
                "Per-user daily cost limit reached",
            ),
        ]

        try:
            for layer, key, limit, reason in layers:
                current = await self.store.get_float(key)

                if current >= limit:
                    track_breaker_trip(layer.value)
                    logger.warning(
                        "Cost circuit breaker tripped",
                        extra={
                            "layer": layer.value,
                            "user_id": user_id,
                            "current_cost": current,
                            "limit": limit,
                        },
                    )
                    return BudgetCheck(
                        allowed=False,
                        reason=reason,
                        layer=layer,
                        current_cost=current,
                        limit=limit,
                    )

                if layer != BreakerLayer.USER and current >= limit * self.limits.warning_ratio:
                    track_breaker_warning(layer.value)
                    logger.warning(
                        "Cost approaching limit",
                        extra={
                            "layer": layer.value,
                            "current_cost": current,
                            "limit": limit,
                            "percent": round(current / limit * 100, 1),
                        },
                    )

        except Exception as e:
            # Any counter failure fails open
            track_breaker_fail_open()
            logger.error(
                "Counter store unavailable, failing open",
                extra={"user_id": user_id, "error": str(e), "error_type": type(e).__name__},
                exc_info=not isinstance(e, CounterStoreError),
            )
            return BudgetCheck(allowed=True, reason="counter store unavailable")

        return BudgetCheck(allowed=True)

    async def record_spend(self, user_id: str, amount_usd: float) -> bool:
        """
        Add completed spend to all three counters.

        Never raises: a lost increment under-counts but must not fail the
        action that already happened.

        Returns:
            bool: True if all three counters were incremented
        """
        if amount_usd <= 0:
            return True

        now = self._now()
        increments = [
            (daily_key(now), DAILY_TTL_SECONDS),
            (hourly_key(now), HOURLY_TTL_SECONDS),
            (user_key(user_id, now), DAILY_TTL_SECONDS),
        ]

        results = await asyncio.gather(
            *(self.store.incr_float(key, amount_usd, ttl) for key, ttl in increments),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            track_cost_record_failure()
            logger.error(
                "Failed to record spend",
                extra={
                    "user_id": user_id,
                    "amount_usd": amount_usd,
                    "failed_counters": len(failures),
                    "error": str(failures[0]),
                },
            )
            return False

        track_cost_recorded(amount_usd)
        return True

    async def cost_snapshot(self, top_users: int = 10) -> dict[str, Any]:
        """
        Current spend against limits, for the admin cost-metrics endpoint.

        Raises:
            CounterStoreError: If counters cannot be read
        """
        now = self._now()
        daily = await self.store.get_float(daily_key(now))
        hourly = await self.store.get_float(hourly_key(now))

        prefix = "cost:user:"
        suffix = f":{now:%Y-%m-%d}"
        user_keys = await self.store.scan_keys(f"{prefix}*{suffix}")
        user_costs = []
        for key in user_keys:
            user_id = key[len(prefix) : -len(suffix)]
            user_costs.append({"user_id": user_id, "cost": await self.store.get_float(key)})
        user_costs.sort(key=lambda entry: entry["cost"], reverse=True)

        return {
            "timestamp": now.isoformat(),
            "daily": {
                "current": round(daily, 6),
                "limit": self.limits.daily,
                "percent": round(daily / self.limits.daily * 100, 1),
            },
            "hourly": {
                "current": round(hourly, 6),
                "limit": self.limits.hourly,
                "percent": round(hourly / self.limits.hourly * 100, 1),
            },
            "user_daily_limit": self.limits.user_daily,
            "top_users": user_costs[:top_users],
        }
