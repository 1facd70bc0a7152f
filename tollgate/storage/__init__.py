"""
Storage layer for billing state and cost counters.

SQLite holds subscriptions, users, webhook events and billable actions.
Redis (or an in-process fallback in development) holds cost counters.
"""

from tollgate.storage.counters import (
    CounterStore,
    CounterStoreError,
    InMemoryCounterStore,
    RedisCounterStore,
)
from tollgate.storage.database import BillingDatabase

__all__ = [
    "BillingDatabase",
    "CounterStore",
    "CounterStoreError",
    "InMemoryCounterStore",
    "RedisCounterStore",
]
