"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Test settings with provider credentials
- SQLite billing database under tmp_path
- Webhook payload builders and signing
- Mocked Lemon Squeezy client
"""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from tollgate.billing.provider import LemonSqueezyClient, UsageRecord
from tollgate.billing.signing import WebhookSignatureVerifier
from tollgate.billing.state_machine import SubscriptionStateMachine
from tollgate.billing.webhooks import WebhookProcessor
from tollgate.config import (
    CostLimitConfig,
    LemonSqueezyConfig,
    ReconciliationConfig,
    Settings,
)
from tollgate.models.billing import Subscription, SubscriptionStatus, Tier
from tollgate.storage.counters import InMemoryCounterStore
from tollgate.storage.database import BillingDatabase

WEBHOOK_SECRET = "whsec_test_0123456789abcdef0123456789"
PRO_VARIANT_ID = "111"
PAYG_VARIANT_ID = "222"


@pytest.fixture
def test_settings() -> Settings:
    """Settings with every required provider value present."""
    return Settings(
        lemonsqueezy=LemonSqueezyConfig(
            api_key="ls_test_key",
            store_id="9001",
            pro_variant_id=PRO_VARIANT_ID,
            payg_variant_id=PAYG_VARIANT_ID,
            webhook_secret=WEBHOOK_SECRET,
        ),
        cost_limits=CostLimitConfig(daily=50.0, hourly=5.0, user_daily=1.0),
        reconciliation=ReconciliationConfig(cron_secret="cron-secret-for-tests"),
    )


@pytest.fixture
async def billing_db(tmp_path):
    """Initialized billing database in a temp directory."""
    db = BillingDatabase(db_path=str(tmp_path / "billing.db"))
    await db.initialize()
    yield db
    db.close()


@pytest.fixture
def verifier() -> WebhookSignatureVerifier:
    return WebhookSignatureVerifier(WEBHOOK_SECRET)


@pytest.fixture
def processor(billing_db, verifier) -> WebhookProcessor:
    return WebhookProcessor(
        verifier=verifier,
        db=billing_db,
        state_machine=SubscriptionStateMachine(billing_db, PRO_VARIANT_ID),
    )


@pytest.fixture
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def mock_provider() -> AsyncMock:
    """Lemon Squeezy client double; metering succeeds by default."""
    client = AsyncMock(spec=LemonSqueezyClient)
    client.create_usage_record.return_value = UsageRecord(
        id="ur_1", subscription_item_id="item_1", quantity=1
    )
    client.get_subscription.return_value = None
    client.list_subscriptions.return_value = []
    client.list_usage_records.return_value = []
    return client


@pytest.fixture
def make_event():
    """
    Build a webhook payload dict.

    Subscription events carry the subscription in data; payment events
    carry an invoice whose attributes.subscription_id points back to it.
    """

    def _make(
        event_name: str,
        subscription_id: str = "sub_1",
        user_id: str | None = "user-1",
        variant_id: str = PAYG_VARIANT_ID,
        status: str = "active",
        updated_at: str = "2026-01-15T10:00:00.000000Z",
        renews_at: str | None = "2026-02-15T10:00:00.000000Z",
        item_id: str = "item_1",
        event_id: str | None = None,
    ) -> dict:
        meta: dict = {"event_name": event_name, "test_mode": True}
        if user_id is not None:
            meta["custom_data"] = {"user_id": user_id}
        if event_id is not None:
            meta["event_id"] = event_id

        if event_name.startswith("subscription_payment_"):
            data = {
                "type": "subscription-invoices",
                "id": f"inv_{subscription_id}_{updated_at}",
                "attributes": {
                    "subscription_id": subscription_id,
                    "status": "paid" if event_name != "subscription_payment_failed" else "pending",
                    "updated_at": updated_at,
                },
            }
        else:
            data = {
                "type": "subscriptions",
                "id": subscription_id,
                "attributes": {
                    "store_id": 9001,
                    "customer_id": 501,
                    "order_id": 601,
                    "product_id": 701,
                    "variant_id": int(variant_id),
                    "status": status,
                    "renews_at": renews_at,
                    "ends_at": None,
                    "trial_ends_at": None,
                    "updated_at": updated_at,
                    "first_subscription_item": {"id": item_id, "subscription_id": subscription_id},
                },
            }
        return {"meta": meta, "data": data}

    return _make


@pytest.fixture
def sign(verifier):
    """Serialize a payload and sign the exact bytes."""

    def _sign(payload: dict) -> tuple[bytes, str]:
        body = json.dumps(payload).encode("utf-8")
        return body, verifier.sign(body)

    return _sign


@pytest.fixture
def seed_subscription(billing_db):
    """Insert a user plus subscription directly, bypassing webhooks."""

    async def _seed(
        user_id: str = "user-1",
        subscription_id: str = "sub_1",
        tier: Tier = Tier.PAYG,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        user_tier: Tier | None = None,
        item_id: str | None = "item_1",
        renews_at: datetime | None = datetime(2026, 2, 15, 10, 0, tzinfo=UTC),
    ) -> Subscription:
        if await billing_db.get_user(user_id) is None:
            await billing_db.create_user(user_id, email=f"{user_id}@example.com")

        subscription = Subscription(
            id=f"local-{subscription_id}",
            user_id=user_id,
            provider_subscription_id=subscription_id,
            provider_subscription_item_id=item_id,
            provider_variant_id=PAYG_VARIANT_ID if tier == Tier.PAYG else PRO_VARIANT_ID,
            tier=tier,
            status=status,
            renews_at=renews_at,
        )
        with billing_db.transaction() as conn:
            billing_db.upsert_subscription(conn, subscription)
            billing_db.update_user_tier(
                conn, user_id, user_tier if user_tier is not None else subscription.effective_tier
            )
        return subscription

    return _seed
