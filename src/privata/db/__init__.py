"""Adapter contracts and in-memory reference adapters."""

from privata.db.base import (
    AuditAdapter,
    CacheAdapter,
    StorageAdapter,
    StoreOptions,
    StoreQuery,
)
from privata.db.filters import AllOf, AnyOf, Condition, FilterNode, Not, all_of, any_of, equals
from privata.db.memory import InMemoryAuditStore, InMemoryCache, InMemoryStorage

__all__ = [
    # Contracts
    "AuditAdapter",
    "CacheAdapter",
    "StorageAdapter",
    "StoreOptions",
    "StoreQuery",
    # Filters
    "AllOf",
    "AnyOf",
    "Condition",
    "FilterNode",
    "Not",
    "all_of",
    "any_of",
    "equals",
    # In-memory adapters
    "InMemoryAuditStore",
    "InMemoryCache",
    "InMemoryStorage",
]
