"""
Billing domain models.

Covers the Lemon Squeezy webhook envelope, local subscription/user/billable
action records, and the result objects returned by the best-effort billing
operations (budget checks, usage reports, reconciliation runs).
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Tier(str, Enum):
    """Entitlement level granted to a user."""

    TRIAL = "trial"
    PAYG = "payg"  # Pay-per-use, metered
    PRO = "pro"  # Flat-rate subscription
    CANCELLED = "cancelled"


class SubscriptionStatus(str, Enum):
    """Subscription status, using the provider's vocabulary."""

    ON_TRIAL = "on_trial"
    ACTIVE = "active"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @classmethod
    def parse(cls, value: str | None, default: "SubscriptionStatus") -> "SubscriptionStatus":
        if not value:
            return default
        try:
            return cls(value)
        except ValueError:
            return default

    @property
    def grants_entitlement(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.ON_TRIAL)


class EventType(str, Enum):
    """
    Closed set of webhook event types.

    Anything the provider sends outside this set parses to UNHANDLED and is
    acknowledged without a state change.
    """

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_UNPAUSED = "subscription_unpaused"
    SUBSCRIPTION_PAYMENT_SUCCESS = "subscription_payment_success"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
    SUBSCRIPTION_PAYMENT_RECOVERED = "subscription_payment_recovered"
    UNHANDLED = "unhandled"

    @classmethod
    def parse(cls, event_name: str) -> "EventType":
        try:
            return cls(event_name)
        except ValueError:
            return cls.UNHANDLED


# ============================================================================
# WEBHOOK ENVELOPE
# ============================================================================


class WebhookEnvelope(BaseModel):
    """
    Parsed Lemon Squeezy webhook delivery.

    Only the fields the state machine reads are lifted out; the full payload
    is kept in `payload` for storage.
    """

    event_id: str
    event_name: str
    event_type: EventType
    resource_id: str = Field(..., description="data.id of the delivered resource")
    resource_type: str = Field(default="subscriptions")
    attributes: dict[str, Any] = Field(default_factory=dict)
    custom_data: dict[str, Any] = Field(default_factory=dict)
    test_mode: bool = Field(default=False)
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "WebhookEnvelope":
        """
        Build an envelope from a decoded JSON body.

        The event id is meta.event_id when present. Otherwise it is derived
        from the event name, resource id and the resource's updated_at, so a
        redelivery of the same event maps to the same id while distinct event
        types for one subscription do not collide.

        Raises:
            ValueError: If the payload does not have the envelope shape
        """
        if not isinstance(payload, dict):
            raise ValueError("Webhook body must be a JSON object")

        meta = payload.get("meta")
        data = payload.get("data")
        if not isinstance(meta, dict) or not isinstance(data, dict):
            raise ValueError("Webhook body requires 'meta' and 'data' objects")

        event_name = meta.get("event_name")
        if not isinstance(event_name, str) or not event_name.strip():
            raise ValueError("meta.event_name is required")
        event_name = event_name.strip()

        resource_id = data.get("id")
        if resource_id is None or str(resource_id).strip() == "":
            raise ValueError("data.id is required")
        resource_id = str(resource_id)

        attributes = data.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise ValueError("data.attributes must be an object")

        custom_data = meta.get("custom_data") or {}
        if not isinstance(custom_data, dict):
            custom_data = {}

        event_id = meta.get("event_id") or meta.get("webhook_id")
        if not event_id:
            updated_at = attributes.get("updated_at") or attributes.get("created_at") or ""
            event_id = f"{event_name}:{resource_id}:{updated_at}"

        return cls(
            event_id=str(event_id),
            event_name=event_name,
            event_type=EventType.parse(event_name),
            resource_id=resource_id,
            resource_type=str(data.get("type") or "subscriptions"),
            attributes=attributes,
            custom_data=custom_data,
            test_mode=bool(meta.get("test_mode", False)),
            payload=payload,
        )

    @property
    def subscription_id(self) -> str:
        """
        Provider subscription id this event refers to.

        Invoice-style payloads (payment events) carry it in
        attributes.subscription_id; subscription payloads use data.id.
        """
        sub_id = self.attributes.get("subscription_id")
        if sub_id is not None and str(sub_id).strip():
            return str(sub_id)
        return self.resource_id

    @property
    def user_id(self) -> str | None:
        """Owning user from checkout custom data, if the provider echoed it."""
        candidates = [self.custom_data]
        item = self.attributes.get("first_subscription_item")
        if isinstance(item, dict) and isinstance(item.get("custom_data"), dict):
            candidates.append(item["custom_data"])
        if isinstance(self.attributes.get("custom_data"), dict):
            candidates.append(self.attributes["custom_data"])

        for source in candidates:
            value = source.get("user_id")
            if value is not None and str(value).strip():
                return str(value).strip()
        return None

    @property
    def subscription_item_id(self) -> str | None:
        item = self.attributes.get("first_subscription_item")
        if isinstance(item, dict) and item.get("id") is not None:
            return str(item["id"])
        return None


# ============================================================================
# LOCAL RECORDS
# ============================================================================


class User(BaseModel):
    """User/tier record. Tier mirrors the owning subscription's granted tier."""

    user_id: str
    email: str | None = None
    tier: Tier = Field(default=Tier.TRIAL)
    provider_customer_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Subscription(BaseModel):
    """Local copy of a provider subscription."""

    id: str
    user_id: str
    provider_subscription_id: str
    provider_subscription_item_id: str | None = None
    provider_customer_id: str | None = None
    provider_order_id: str | None = None
    provider_product_id: str | None = None
    provider_variant_id: str | None = None
    tier: Tier
    status: SubscriptionStatus
    renews_at: datetime | None = None
    ends_at: datetime | None = None
    trial_ends_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def effective_tier(self) -> Tier:
        """Tier this subscription entitles its owner to right now."""
        if self.status.grants_entitlement:
            return self.tier
        return Tier.TRIAL


class BillableAction(BaseModel):
    """One completed, cost-incurring action (e.g. an inference call)."""

    action_id: str
    user_id: str
    cost_usd: float = Field(default=0.0, ge=0.0)
    usage_reported: bool = False
    report_claimed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    reported_at: datetime | None = None


# ============================================================================
# OPERATION RESULTS
# ============================================================================


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class WebhookResult(BaseModel):
    """Result of admitting and applying one webhook event."""

    event_id: str
    event_type: EventType
    outcome: WebhookOutcome
    changes: list[str] = Field(default_factory=list)

    @property
    def duplicate(self) -> bool:
        return self.outcome == WebhookOutcome.DUPLICATE


class BreakerLayer(str, Enum):
    DAILY = "daily"
    HOURLY = "hourly"
    USER = "user"


class BudgetCheck(BaseModel):
    """Cost circuit breaker decision."""

    allowed: bool
    reason: str | None = None
    layer: BreakerLayer | None = None
    current_cost: float | None = None
    limit: float | None = None


class UsageReportOutcome(str, Enum):
    REPORTED = "reported"
    ALREADY_REPORTED = "already_reported"
    IN_PROGRESS = "in_progress"
    NOT_METERED = "not_metered"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class UsageReportResult(BaseModel):
    """Best-effort usage report result. Callers log it and move on."""

    action_id: str
    outcome: UsageReportOutcome
    error: str | None = None
    usage_record_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome not in (UsageReportOutcome.NOT_FOUND, UsageReportOutcome.FAILED)


# ============================================================================
# RECONCILIATION
# ============================================================================


class ReconciliationIssueType(str, Enum):
    MISSING_IN_LEMONSQUEEZY = "missing_in_lemonsqueezy"
    STATUS_MISMATCH = "status_mismatch"
    USER_TIER_MISMATCH = "user_tier_mismatch"
    RENEWAL_DATE_MISMATCH = "renewal_date_mismatch"
    API_ERROR = "api_error"


class ReconciliationIssue(BaseModel):
    issue_type: ReconciliationIssueType
    user_id: str
    subscription_id: str = Field(..., description="Provider subscription id")
    db_value: str | None = None
    lemonsqueezy_value: str | None = None
    details: str | None = None


class UsageDiscrepancy(BaseModel):
    """
    Local vs provider usage count for one metered subscription.

    difference = db_count - provider_count. Positive means under-reported
    (revenue risk); negative means over-reported (trust risk).
    """

    user_id: str
    subscription_id: str
    subscription_item_id: str
    db_count: int
    provider_count: int
    difference: int
    difference_percent: float | None = None

    @property
    def under_reported(self) -> bool:
        return self.difference > 0


class OrphanedSubscription(BaseModel):
    """Active provider subscription with no local row."""

    subscription_id: str
    status: str
    customer_id: str | None = None
    user_email: str | None = None
    variant_id: str | None = None


class ReconciliationReport(BaseModel):
    started_at: datetime
    finished_at: datetime
    subscriptions_checked: int = 0
    users_checked: int = 0
    subscription_issues: list[ReconciliationIssue] = Field(default_factory=list)
    usage_discrepancies: list[UsageDiscrepancy] = Field(default_factory=list)
    orphaned_subscriptions: list[OrphanedSubscription] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def has_issues(self) -> bool:
        return bool(
            self.subscription_issues or self.usage_discrepancies or self.orphaned_subscriptions
        )

    def summary(self) -> dict[str, Any]:
        return {
            "subscriptions_checked": self.subscriptions_checked,
            "users_checked": self.users_checked,
            "subscription_issues": len(self.subscription_issues),
            "usage_discrepancies": len(self.usage_discrepancies),
            "orphaned_subscriptions": len(self.orphaned_subscriptions),
            "errors": len(self.errors),
            "duration_seconds": round(
                (self.finished_at - self.started_at).total_seconds(), 3
            ),
        }
