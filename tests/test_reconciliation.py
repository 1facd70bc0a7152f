"""
Tests for the reconciliation engine.

The provider is mocked; local state is a real SQLite database.
"""

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from tollgate.billing.provider import (
    LemonSqueezyClient,
    ProviderError,
    ProviderSubscription,
    UsageRecord,
)
from tollgate.billing.reconciliation import (
    ReconciliationEngine,
    billing_period_start,
    usage_drift_exceeds,
)
from tollgate.config import ReconciliationConfig
from tollgate.models.billing import ReconciliationIssueType, Tier

NOW = datetime(2026, 1, 20, 12, 0, tzinfo=UTC)
RENEWS_AT = datetime(2026, 2, 15, 10, 0, tzinfo=UTC)


@pytest.fixture
def engine(billing_db, mock_provider):
    return ReconciliationEngine(
        billing_db, mock_provider, ReconciliationConfig(), clock=lambda: NOW
    )


def remote(subscription_id="sub_1", status="active", renews_at=RENEWS_AT, **kwargs):
    return ProviderSubscription(
        id=subscription_id, status=status, renews_at=renews_at, **kwargs
    )


async def record_actions(billing_db, user_id, count, created_at):
    for i in range(count):
        await billing_db.record_billable_action(
            user_id, 0.01, action_id=f"{user_id}-{i}", created_at=created_at
        )


class TestHelpers:
    def test_billing_period_starts_at_month_boundary(self):
        assert billing_period_start(NOW) == datetime(2026, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize(
        "db_count,provider_count,expected",
        [
            (100, 95, False),
            (100, 105, False),
            (10000, 9500, False),
            (10000, 9499, True),
            (100, 88, True),
            (0, 0, False),
            (0, 3, True),
        ],
    )
    def test_usage_drift_threshold(self, db_count, provider_count, expected):
        assert usage_drift_exceeds(db_count, provider_count, 5.0) is expected


class TestSubscriptionCheck:
    @pytest.mark.asyncio
    async def test_in_sync_subscription_has_no_issues(
        self, engine, mock_provider, seed_subscription
    ):
        await seed_subscription(user_id="u1", subscription_id="sub_1")
        mock_provider.get_subscription.return_value = remote()

        issues, checked = await engine.check_subscriptions()

        assert checked == 1
        assert issues == []

    @pytest.mark.asyncio
    async def test_status_mismatch(self, engine, mock_provider, seed_subscription):
        await seed_subscription(user_id="u1", subscription_id="sub_1")
        mock_provider.get_subscription.return_value = remote(status="cancelled")

        issues, _ = await engine.check_subscriptions()

        assert len(issues) == 1
        issue = issues[0]
        assert issue.issue_type == ReconciliationIssueType.STATUS_MISMATCH
        assert issue.subscription_id == "sub_1"
        assert issue.db_value == "active"
        assert issue.lemonsqueezy_value == "cancelled"

    @pytest.mark.asyncio
    async def test_missing_at_provider(self, engine, mock_provider, seed_subscription):
        await seed_subscription(user_id="u1", subscription_id="sub_gone")
        mock_provider.get_subscription.return_value = None

        issues, _ = await engine.check_subscriptions()

        assert [i.issue_type for i in issues] == [ReconciliationIssueType.MISSING_IN_LEMONSQUEEZY]

    @pytest.mark.asyncio
    async def test_provider_error_becomes_api_error_issue(
        self, engine, mock_provider, seed_subscription
    ):
        await seed_subscription(user_id="u1", subscription_id="sub_1")
        await seed_subscription(user_id="u2", subscription_id="sub_2")
        async def get_subscription(subscription_id):
            if subscription_id == "sub_1":
                raise ProviderError("GET /v1/subscriptions/sub_1 returned 500", status_code=500)
            return remote(subscription_id=subscription_id)

        mock_provider.get_subscription.side_effect = get_subscription

        issues, checked = await engine.check_subscriptions()

        assert checked == 2
        assert [i.issue_type for i in issues] == [ReconciliationIssueType.API_ERROR]
        assert issues[0].subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_user_tier_mismatch(self, engine, mock_provider, seed_subscription):
        await seed_subscription(user_id="u1", tier=Tier.PAYG, user_tier=Tier.TRIAL)
        mock_provider.get_subscription.return_value = remote()

        issues, _ = await engine.check_subscriptions()

        assert len(issues) == 1
        assert issues[0].issue_type == ReconciliationIssueType.USER_TIER_MISMATCH
        assert issues[0].db_value == "trial"
        assert issues[0].lemonsqueezy_value == "payg"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "drift,flagged",
        [
            (timedelta(hours=24, seconds=1), True),
            (timedelta(hours=23, minutes=59, seconds=59), False),
            (timedelta(hours=24), False),
            (-timedelta(days=3), True),
        ],
    )
    async def test_renewal_date_tolerance(
        self, engine, mock_provider, seed_subscription, drift, flagged
    ):
        await seed_subscription(user_id="u1", renews_at=RENEWS_AT)
        mock_provider.get_subscription.return_value = remote(renews_at=RENEWS_AT + drift)

        issues, _ = await engine.check_subscriptions()

        types = [i.issue_type for i in issues]
        assert (ReconciliationIssueType.RENEWAL_DATE_MISMATCH in types) is flagged

    @pytest.mark.asyncio
    async def test_renewal_not_compared_when_provider_has_none(
        self, engine, mock_provider, seed_subscription
    ):
        await seed_subscription(user_id="u1", renews_at=RENEWS_AT)
        mock_provider.get_subscription.return_value = remote(renews_at=None)

        issues, _ = await engine.check_subscriptions()

        assert issues == []


class TestUsageCheck:
    @pytest.mark.asyncio
    async def test_under_reported_usage_is_flagged(
        self, engine, billing_db, mock_provider, seed_subscription
    ):
        await seed_subscription(user_id="u1", tier=Tier.PAYG)
        await record_actions(billing_db, "u1", 100, created_at=datetime(2026, 1, 10, tzinfo=UTC))
        mock_provider.list_usage_records.return_value = [
            UsageRecord(id="ur_1", quantity=88, created_at=datetime(2026, 1, 12, tzinfo=UTC))
        ]

        discrepancies, checked, errors = await engine.check_usage()

        assert checked == 1
        assert errors == []
        assert len(discrepancies) == 1
        d = discrepancies[0]
        assert d.db_count == 100
        assert d.provider_count == 88
        assert d.difference == 12
        assert d.difference_percent == 12.0
        assert d.under_reported is True
        mock_provider.list_usage_records.assert_awaited_once_with("item_1")

    @pytest.mark.asyncio
    async def test_usage_within_tolerance_not_flagged(
        self, engine, billing_db, mock_provider, seed_subscription
    ):
        await seed_subscription(user_id="u1", tier=Tier.PAYG)
        await record_actions(billing_db, "u1", 20, created_at=datetime(2026, 1, 10, tzinfo=UTC))
        mock_provider.list_usage_records.return_value = [
            UsageRecord(id="ur_1", quantity=19, created_at=datetime(2026, 1, 12, tzinfo=UTC))
        ]

        discrepancies, _, _ = await engine.check_usage()

        # 1/20 is exactly 5%
        assert discrepancies == []

    @pytest.mark.asyncio
    async def test_previous_month_usage_excluded(
        self, engine, billing_db, mock_provider, seed_subscription
    ):
        await seed_subscription(user_id="u1", tier=Tier.PAYG)
        await record_actions(billing_db, "u1", 10, created_at=datetime(2025, 12, 28, tzinfo=UTC))
        mock_provider.list_usage_records.return_value = [
            UsageRecord(id="ur_old", quantity=10, created_at=datetime(2025, 12, 28, tzinfo=UTC))
        ]

        discrepancies, checked, _ = await engine.check_usage()

        assert checked == 1
        assert discrepancies == []

    @pytest.mark.asyncio
    async def test_pro_subscriptions_are_not_usage_checked(
        self, engine, mock_provider, seed_subscription
    ):
        await seed_subscription(user_id="u1", tier=Tier.PRO)

        discrepancies, checked, _ = await engine.check_usage()

        assert checked == 0
        assert discrepancies == []
        mock_provider.list_usage_records.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_usage_fetch_error_recorded(self, engine, mock_provider, seed_subscription):
        await seed_subscription(user_id="u1", tier=Tier.PAYG)
        mock_provider.list_usage_records.side_effect = ProviderError("timeout")

        discrepancies, checked, errors = await engine.check_usage()

        assert checked == 0
        assert discrepancies == []
        assert len(errors) == 1


class TestOrphans:
    @pytest.mark.asyncio
    async def test_only_active_unknown_subscriptions_are_orphans(
        self, engine, mock_provider, seed_subscription
    ):
        await seed_subscription(user_id="u1", subscription_id="sub_1")
        mock_provider.list_subscriptions.return_value = [
            remote(subscription_id="sub_1"),
            remote(subscription_id="sub_stray", user_email="stray@example.com"),
            remote(subscription_id="sub_old", status="cancelled"),
        ]

        orphans, errors = await engine.find_orphans()

        assert errors == []
        assert [o.subscription_id for o in orphans] == ["sub_stray"]
        assert orphans[0].user_email == "stray@example.com"

    @pytest.mark.asyncio
    async def test_list_failure_is_an_error_not_a_crash(self, engine, mock_provider):
        mock_provider.list_subscriptions.side_effect = ProviderError("boom", status_code=503)

        orphans, errors = await engine.find_orphans()

        assert orphans == []
        assert len(errors) == 1


class TestRun:
    @pytest.mark.asyncio
    async def test_clean_run(self, engine, mock_provider, seed_subscription):
        await seed_subscription(user_id="u1", tier=Tier.PRO)
        mock_provider.get_subscription.return_value = remote()
        mock_provider.list_subscriptions.return_value = [remote()]

        report = await engine.run()

        assert report.has_issues is False
        assert report.subscriptions_checked == 1
        assert report.summary()["subscription_issues"] == 0

    @pytest.mark.asyncio
    async def test_run_collects_all_issue_kinds(
        self, engine, billing_db, mock_provider, seed_subscription, caplog
    ):
        await seed_subscription(user_id="u1", tier=Tier.PAYG)
        await record_actions(billing_db, "u1", 10, created_at=datetime(2026, 1, 10, tzinfo=UTC))
        mock_provider.get_subscription.return_value = remote(status="cancelled")
        mock_provider.list_usage_records.return_value = []
        mock_provider.list_subscriptions.return_value = [
            remote(),
            remote(subscription_id="sub_stray"),
        ]

        with caplog.at_level("ERROR"):
            report = await engine.run()

        assert report.has_issues is True
        summary = report.summary()
        assert summary["subscription_issues"] == 1
        assert summary["usage_discrepancies"] == 1
        assert summary["orphaned_subscriptions"] == 1
        assert "Reconciliation found billing drift" in caplog.text

    @pytest.mark.asyncio
    async def test_run_does_not_modify_local_state(
        self, engine, billing_db, mock_provider, seed_subscription
    ):
        await seed_subscription(user_id="u1", tier=Tier.PAYG)
        mock_provider.get_subscription.return_value = remote(status="expired")

        await engine.run()

        subscription = await billing_db.get_subscription("sub_1")
        user = await billing_db.get_user("u1")
        assert subscription.status.value == "active"
        assert user.tier == Tier.PAYG

    @pytest.mark.asyncio
    async def test_malformed_provider_documents_are_reported_not_raised(
        self, billing_db, seed_subscription
    ):
        await seed_subscription(user_id="u1", subscription_id="sub_1", tier=Tier.PAYG)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/subscriptions/sub_1":
                return httpx.Response(200, json={"jsonapi": {"version": "1.0"}})
            if request.url.path == "/v1/usage-records":
                return httpx.Response(
                    200,
                    json={
                        "data": [
                            {"type": "usage-records", "id": "ur_1", "attributes": {"quantity": None}}
                        ],
                        "meta": {"page": {"lastPage": 1}},
                    },
                )
            return httpx.Response(200, json={"data": [], "meta": {"page": {"lastPage": 1}}})

        client = LemonSqueezyClient(
            api_key="ls_test_key",
            store_id="9001",
            base_url="https://api.test",
            retry_min_wait=0,
            retry_max_wait=0,
            transport=httpx.MockTransport(handler),
        )
        engine = ReconciliationEngine(billing_db, client, ReconciliationConfig(), clock=lambda: NOW)

        report = await engine.run()
        await client.aclose()

        assert [i.issue_type for i in report.subscription_issues] == [
            ReconciliationIssueType.API_ERROR
        ]
        assert len(report.errors) == 1
        assert "usage records for sub_1" in report.errors[0]
