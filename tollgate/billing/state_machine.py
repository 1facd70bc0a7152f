"""
Subscription state machine.

Maps one admitted webhook event onto subscription and user-tier writes. All
writes go through the connection of the caller's transaction, so a failure
anywhere rolls back the event admission with them.

Tier policy:
- created: tier granted by the variant (pro variant -> pro, otherwise payg)
- payment_success / payment_recovered / resumed / unpaused: restore granted tier
- payment_failed: past_due, user downgraded to trial until payment recovers
- cancelled / expired / paused: user reverts to trial
- updated: status and dates only
"""

import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime

from tollgate.models.billing import (
    EventType,
    Subscription,
    SubscriptionStatus,
    Tier,
    WebhookEnvelope,
)
from tollgate.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class StateTransitionError(Exception):
    """Base exception for events that cannot be applied."""

    pass


class MissingUserReferenceError(StateTransitionError):
    """Event carries no user id; the payload is unusable as sent."""

    pass


class SubscriptionNotFoundError(StateTransitionError):
    """Event refers to a subscription that has no local row (yet)."""

    pass


class UserNotFoundError(StateTransitionError):
    """Event refers to a user that has no local row."""

    pass


def _parse_datetime(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable provider timestamp", extra={"value": str(value)})
        return None


def _str_or_none(value) -> str | None:
    return None if value is None else str(value)


Handler = Callable[[sqlite3.Connection, WebhookEnvelope], list[str]]


class SubscriptionStateMachine:
    """
    Applies webhook events to local billing state.

    Every EventType has a handler; the mapping is checked at construction so
    a new event type cannot be added without deciding what it does.
    """

    def __init__(self, db: BillingDatabase, pro_variant_id: str | None):
        self.db = db
        self.pro_variant_id = _str_or_none(pro_variant_id)

        self._handlers: dict[EventType, Handler] = {
            EventType.SUBSCRIPTION_CREATED: self._on_created,
            EventType.SUBSCRIPTION_UPDATED: self._on_updated,
            EventType.SUBSCRIPTION_PAYMENT_SUCCESS: self._on_reactivated,
            EventType.SUBSCRIPTION_PAYMENT_RECOVERED: self._on_reactivated,
            EventType.SUBSCRIPTION_RESUMED: self._on_reactivated,
            EventType.SUBSCRIPTION_UNPAUSED: self._on_reactivated,
            EventType.SUBSCRIPTION_PAYMENT_FAILED: self._on_payment_failed,
            EventType.SUBSCRIPTION_CANCELLED: self._on_cancelled,
            EventType.SUBSCRIPTION_EXPIRED: self._on_expired,
            EventType.SUBSCRIPTION_PAUSED: self._on_paused,
            EventType.UNHANDLED: self._on_unhandled,
        }
        missing = set(EventType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No state transition for: {sorted(m.value for m in missing)}")

    def apply(self, conn: sqlite3.Connection, envelope: WebhookEnvelope) -> list[str]:
        """
        Apply an event inside the caller's transaction.

        Returns:
            list[str]: Human-readable description of each write

        Raises:
            StateTransitionError: Event cannot be applied; caller rolls back
        """
        return self._handlers[envelope.event_type](conn, envelope)

    def granted_tier(self, variant_id: str | None) -> Tier:
        if self.pro_variant_id and _str_or_none(variant_id) == self.pro_variant_id:
            return Tier.PRO
        return Tier.PAYG

    # ========================================================================
    # HANDLERS
    # ========================================================================

    def _on_created(self, conn: sqlite3.Connection, envelope: WebhookEnvelope) -> list[str]:
        user_id = envelope.user_id
        if not user_id:
            raise MissingUserReferenceError(
                f"subscription_created {envelope.resource_id} has no custom_data.user_id"
            )

        if self.db.fetch_user(conn, user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found")

        attrs = envelope.attributes
        tier = self.granted_tier(attrs.get("variant_id"))
        status = SubscriptionStatus.parse(attrs.get("status"), SubscriptionStatus.ACTIVE)
        existing = self.db.fetch_subscription(conn, envelope.resource_id)

        subscription = Subscription(
            id=existing.id if existing else str(uuid.uuid4()),
            user_id=user_id,
            provider_subscription_id=envelope.resource_id,
            provider_subscription_item_id=envelope.subscription_item_id,
            provider_customer_id=_str_or_none(attrs.get("customer_id")),
            provider_order_id=_str_or_none(attrs.get("order_id")),
            provider_product_id=_str_or_none(attrs.get("product_id")),
            provider_variant_id=_str_or_none(attrs.get("variant_id")),
            tier=tier,
            status=status,
            renews_at=_parse_datetime(attrs.get("renews_at")),
            ends_at=_parse_datetime(attrs.get("ends_at")),
            trial_ends_at=_parse_datetime(attrs.get("trial_ends_at")),
        )
        self.db.upsert_subscription(conn, subscription)
        self.db.update_user_tier(
            conn,
            user_id,
            subscription.effective_tier,
            provider_customer_id=subscription.provider_customer_id,
        )

        logger.info(
            "Subscription created",
            extra={
                "user_id": user_id,
                "subscription_id": envelope.resource_id,
                "tier": tier.value,
                "status": status.value,
            },
        )
        return [
            f"subscription {envelope.resource_id} upserted ({tier.value}, {status.value})",
            f"user {user_id} tier -> {subscription.effective_tier.value}",
        ]

    def _on_updated(self, conn: sqlite3.Connection, envelope: WebhookEnvelope) -> list[str]:
        subscription = self._require_subscription(conn, envelope)
        attrs = envelope.attributes
        status = SubscriptionStatus.parse(attrs.get("status"), subscription.status)

        self.db.update_subscription_state(
            conn,
            subscription.provider_subscription_id,
            status,
            renews_at=_parse_datetime(attrs.get("renews_at")),
            ends_at=_parse_datetime(attrs.get("ends_at")),
            trial_ends_at=_parse_datetime(attrs.get("trial_ends_at")),
        )
        return [f"subscription {subscription.provider_subscription_id} status -> {status.value}"]

    def _on_reactivated(self, conn: sqlite3.Connection, envelope: WebhookEnvelope) -> list[str]:
        subscription = self._require_subscription(conn, envelope)
        return self._transition(
            conn,
            envelope,
            subscription,
            SubscriptionStatus.ACTIVE,
            subscription.tier,
        )

    def _on_payment_failed(self, conn: sqlite3.Connection, envelope: WebhookEnvelope) -> list[str]:
        subscription = self._require_subscription(conn, envelope)
        logger.warning(
            "Subscription payment failed",
            extra={
                "user_id": subscription.user_id,
                "subscription_id": subscription.provider_subscription_id,
            },
        )
        return self._transition(conn, envelope, subscription, SubscriptionStatus.PAST_DUE, Tier.TRIAL)

    def _on_cancelled(self, conn: sqlite3.Connection, envelope: WebhookEnvelope) -> list[str]:
        subscription = self._require_subscription(conn, envelope)
        return self._transition(conn, envelope, subscription, SubscriptionStatus.CANCELLED, Tier.TRIAL)

    def _on_expired(self, conn: sqlite3.Connection, envelope: WebhookEnvelope) -> list[str]:
        subscription = self._require_subscription(conn, envelope)
        return self._transition(conn, envelope, subscription, SubscriptionStatus.EXPIRED, Tier.TRIAL)

    def _on_paused(self, conn: sqlite3.Connection, envelope: WebhookEnvelope) -> list[str]:
        subscription = self._require_subscription(conn, envelope)
        return self._transition(conn, envelope, subscription, SubscriptionStatus.PAUSED, Tier.TRIAL)

    def _on_unhandled(self, conn: sqlite3.Connection, envelope: WebhookEnvelope) -> list[str]:
        logger.warning(
            "Unhandled webhook event type",
            extra={"event_name": envelope.event_name, "event_id": envelope.event_id},
        )
        return []

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _require_subscription(
        self, conn: sqlite3.Connection, envelope: WebhookEnvelope
    ) -> Subscription:
        subscription = self.db.fetch_subscription(conn, envelope.subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {envelope.subscription_id} not found for {envelope.event_name}"
            )
        return subscription

    def _transition(
        self,
        conn: sqlite3.Connection,
        envelope: WebhookEnvelope,
        subscription: Subscription,
        status: SubscriptionStatus,
        user_tier: Tier,
    ) -> list[str]:
        # Payment events carry invoice attributes, so dates are only trusted
        # from subscription payloads.
        attrs = envelope.attributes if envelope.resource_type == "subscriptions" else {}

        self.db.update_subscription_state(
            conn,
            subscription.provider_subscription_id,
            status,
            renews_at=_parse_datetime(attrs.get("renews_at")),
            ends_at=_parse_datetime(attrs.get("ends_at")),
        )
        if not self.db.update_user_tier(conn, subscription.user_id, user_tier):
            raise UserNotFoundError(f"User {subscription.user_id} not found")

        logger.info(
            "Subscription transitioned",
            extra={
                "event_type": envelope.event_type.value,
                "user_id": subscription.user_id,
                "subscription_id": subscription.provider_subscription_id,
                "status": status.value,
                "tier": user_tier.value,
            },
        )
        return [
            f"subscription {subscription.provider_subscription_id} status -> {status.value}",
            f"user {subscription.user_id} tier -> {user_tier.value}",
        ]
