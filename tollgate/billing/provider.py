"""
Lemon Squeezy API client (JSON:API over HTTPS).

Used for:
- Metering: POST /v1/usage-records (one call per billable unit, never retried here)
- Reconciliation reads: subscriptions and usage records, paginated

Read calls retry transient failures (timeouts, 429, 5xx) with exponential
backoff. A 404 on a single-resource read is "no record", not an error.
"""

import logging
from datetime import datetime
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tollgate.config import LemonSqueezyConfig

logger = logging.getLogger(__name__)

JSON_API = "application/vnd.api+json"


class ProviderError(Exception):
    """Base exception for provider API errors."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderNotFoundError(ProviderError):
    """Provider has no record of the requested resource."""

    pass


class ProviderTransientError(ProviderError):
    """Timeout, rate limit or server error; safe to retry reads."""

    pass


class ProviderSubscription(BaseModel):
    id: str
    status: str
    variant_id: str | None = None
    customer_id: str | None = None
    user_email: str | None = None
    subscription_item_id: str | None = None
    renews_at: datetime | None = None
    ends_at: datetime | None = None

    @classmethod
    def from_resource(cls, resource: dict[str, Any]) -> "ProviderSubscription":
        attrs = resource.get("attributes") or {}
        item = attrs.get("first_subscription_item") or {}
        return cls(
            id=str(resource["id"]),
            status=str(attrs.get("status", "")),
            variant_id=_str_or_none(attrs.get("variant_id")),
            customer_id=_str_or_none(attrs.get("customer_id")),
            user_email=attrs.get("user_email"),
            subscription_item_id=_str_or_none(item.get("id")),
            renews_at=attrs.get("renews_at"),
            ends_at=attrs.get("ends_at"),
        )


class UsageRecord(BaseModel):
    id: str
    subscription_item_id: str | None = None
    quantity: int
    created_at: datetime | None = None

    @classmethod
    def from_resource(cls, resource: dict[str, Any]) -> "UsageRecord":
        attrs = resource.get("attributes") or {}
        return cls(
            id=str(resource["id"]),
            subscription_item_id=_str_or_none(attrs.get("subscription_item_id")),
            quantity=int(attrs.get("quantity", 0)),
            created_at=attrs.get("created_at"),
        )


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


ResourceModel = TypeVar("ResourceModel", ProviderSubscription, UsageRecord)


def _parse_resource(model: type[ResourceModel], resource: Any, path: str) -> ResourceModel:
    """Build a model from one JSON:API resource; shape errors become ProviderError."""
    if not isinstance(resource, dict):
        raise ProviderError(f"{path} returned a resource that is not an object", body=str(resource))
    try:
        return model.from_resource(resource)
    except (KeyError, TypeError, ValueError) as e:
        raise ProviderError(f"{path} returned a malformed resource: {e}", body=str(resource)) from e


class LemonSqueezyClient:
    """
    Async client for the Lemon Squeezy REST API.

    Usage:
        client = LemonSqueezyClient.from_config(settings.lemonsqueezy)
        record = await client.create_usage_record(item_id, quantity=1)
        await client.aclose()
    """

    def __init__(
        self,
        api_key: str,
        store_id: str | None = None,
        base_url: str = "https://api.lemonsqueezy.com",
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        page_size: int = 100,
        retry_min_wait: float = 0.5,
        retry_max_wait: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store_id = store_id
        self.max_retries = max_retries
        self.page_size = page_size
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers={
                "Accept": JSON_API,
                "Content-Type": JSON_API,
                "Authorization": f"Bearer {api_key}",
            },
            transport=transport,
        )

    @classmethod
    def from_config(
        cls, config: LemonSqueezyConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> "LemonSqueezyClient":
        return cls(
            api_key=config.effective_api_key or "",
            store_id=config.effective_store_id,
            base_url=config.api_base_url,
            timeout_seconds=config.timeout_seconds,
            max_retries=config.max_retries,
            page_size=config.page_size,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ========================================================================
    # TRANSPORT
    # ========================================================================

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Single HTTP call mapped onto the ProviderError hierarchy."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"{method} {path} failed: {e}") from e

        if response.status_code == 404:
            raise ProviderNotFoundError(
                f"{method} {path} not found", status_code=404, body=response.text
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            document = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{method} {path} returned malformed JSON",
                status_code=response.status_code,
                body=response.text,
            ) from e
        if not isinstance(document, dict):
            raise ProviderError(
                f"{method} {path} returned unexpected document",
                status_code=response.status_code,
                body=response.text,
            )
        return document

    async def _get_with_retry(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(
                multiplier=self.retry_min_wait, min=self.retry_min_wait, max=self.retry_max_wait
            ),
            retry=retry_if_exception_type(ProviderTransientError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying provider read",
                        extra={"path": path, "attempt": attempt.retry_state.attempt_number},
                    )
                return await self._request("GET", path, params=params)
        raise AssertionError("unreachable")

    async def _paginate(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        resources: list[dict[str, Any]] = []
        page = 1
        while True:
            document = await self._get_with_retry(
                path, params={**params, "page[number]": page, "page[size]": self.page_size}
            )
            data = document.get("data")
            if not isinstance(data, list):
                raise ProviderError(f"GET {path} returned no data list", body=str(document))
            resources.extend(data)

            last_page = ((document.get("meta") or {}).get("page") or {}).get("lastPage", page)
            try:
                last_page = int(last_page)
            except (TypeError, ValueError) as e:
                raise ProviderError(
                    f"GET {path} returned invalid meta.page.lastPage", body=str(document)
                ) from e
            if page >= last_page:
                return resources
            page += 1

    # ========================================================================
    # METERING
    # ========================================================================

    async def create_usage_record(self, subscription_item_id: str, quantity: int = 1) -> UsageRecord:
        """
        Report metered usage for a subscription item.

        Not retried: a lost response could otherwise double-bill. Failed
        reports are picked up by the unreported-usage sweep.

        Raises:
            ProviderError: On any non-2xx response, timeout or malformed body
        """
        body = {
            "data": {
                "type": "usage-records",
                "attributes": {"quantity": quantity, "action": "increment"},
                "relationships": {
                    "subscription-item": {
                        "data": {"type": "subscription-items", "id": str(subscription_item_id)}
                    }
                },
            }
        }
        document = await self._request("POST", "/v1/usage-records", json=body)

        resource = document.get("data")
        if not isinstance(resource, dict) or "id" not in resource:
            raise ProviderError("Usage record response missing data.id", body=str(document))
        return _parse_resource(UsageRecord, resource, "POST /v1/usage-records")

    # ========================================================================
    # QUERIES (reconciliation)
    # ========================================================================

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription | None:
        """Fetch one subscription; None when the provider has no record."""
        try:
            document = await self._get_with_retry(f"/v1/subscriptions/{subscription_id}")
        except ProviderNotFoundError:
            return None
        path = f"GET /v1/subscriptions/{subscription_id}"
        if "data" not in document:
            raise ProviderError(f"{path} returned no data", body=str(document))
        return _parse_resource(ProviderSubscription, document["data"], path)

    async def list_subscriptions(self, store_id: str | None = None) -> list[ProviderSubscription]:
        """All subscriptions in the store, across every page."""
        params: dict[str, Any] = {}
        store = store_id or self.store_id
        if store:
            params["filter[store_id]"] = store
        resources = await self._paginate("/v1/subscriptions", params)
        return [_parse_resource(ProviderSubscription, r, "GET /v1/subscriptions") for r in resources]

    async def list_usage_records(self, subscription_item_id: str) -> list[UsageRecord]:
        """All usage records for a subscription item, across every page."""
        resources = await self._paginate(
            "/v1/usage-records", {"filter[subscription_item_id]": subscription_item_id}
        )
        records = [_parse_resource(UsageRecord, r, "GET /v1/usage-records") for r in resources]
        for record in records:
            if record.subscription_item_id is None:
                record.subscription_item_id = str(subscription_item_id)
        return records
