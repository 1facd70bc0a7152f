"""
Billing integrity for Lemon Squeezy.

- signing: webhook signature verification
- webhooks / state_machine: exactly-once webhook application
- cost_breaker: layered spend guard for the paid inference API
- usage_reporting: exactly-once metered usage reports
- reconciliation: drift detection against the provider
- provider: Lemon Squeezy API client
"""

from tollgate.billing.cost_breaker import CostCircuitBreaker, ServiceOverloadedError
from tollgate.billing.guarded_actions import GuardedActionRunner
from tollgate.billing.provider import LemonSqueezyClient
from tollgate.billing.reconciliation import ReconciliationEngine
from tollgate.billing.signing import WebhookSignatureVerifier
from tollgate.billing.state_machine import SubscriptionStateMachine
from tollgate.billing.usage_reporting import UsageReporter
from tollgate.billing.webhooks import WebhookProcessor

__all__ = [
    "CostCircuitBreaker",
    "ServiceOverloadedError",
    "GuardedActionRunner",
    "LemonSqueezyClient",
    "ReconciliationEngine",
    "WebhookSignatureVerifier",
    "SubscriptionStateMachine",
    "UsageReporter",
    "WebhookProcessor",
]
