"""Adapter contracts consumed by the engine.

Concrete database, cache and audit-index drivers live outside the engine and
only have to satisfy these protocols.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Literal, Protocol, runtime_checkable

from privata.db.filters import FilterNode
from privata.models.audit import AuditEvent, AuditFilter, AuditQueryOptions

Consistency = Literal["strong", "eventual"]


@dataclass(frozen=True)
class StoreOptions:
    """Per-call options passed to storage adapters."""

    model: str
    region: str | None = None
    consistency: Consistency = "eventual"
    fields: tuple[str, ...] | None = None
    transaction: Any = None

    def with_transaction(self, transaction: Any) -> "StoreOptions":
        return replace(self, transaction=transaction)


@dataclass(frozen=True)
class StoreQuery:
    """Filter, sort and pagination handed to ``find_many``/``count``."""

    where: FilterNode | None = None
    sort: tuple[tuple[str, Literal["asc", "desc"]], ...] = field(default_factory=tuple)
    limit: int | None = None
    offset: int = 0


@runtime_checkable
class StorageAdapter(Protocol):
    """Generic read/write/transaction store."""

    async def find_by_id(self, record_id: str, opts: StoreOptions) -> dict[str, Any] | None: ...

    async def find_many(self, query: StoreQuery, opts: StoreOptions) -> list[dict[str, Any]]: ...

    async def count(self, query: StoreQuery, opts: StoreOptions) -> int: ...

    async def create(self, data: dict[str, Any], opts: StoreOptions) -> dict[str, Any]: ...

    async def update(
        self, record_id: str, data: dict[str, Any], opts: StoreOptions
    ) -> dict[str, Any] | None: ...

    async def delete(self, record_id: str, opts: StoreOptions) -> None: ...

    async def begin(self, opts: StoreOptions) -> Any: ...

    async def commit(self, transaction: Any) -> None: ...

    async def rollback(self, transaction: Any) -> None: ...


@runtime_checkable
class CacheAdapter(Protocol):
    """Value-transparent, TTL-aware cache."""

    async def get(self, key: str) -> Any | None: ...

    async def get_many(self, keys: list[str]) -> dict[str, Any]: ...

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...

    async def set_many(self, items: dict[str, Any], ttl: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def invalidate(self, pattern: str) -> int: ...


@runtime_checkable
class AuditAdapter(Protocol):
    """Append-only audit store with keyset-paginated queries."""

    async def log(self, event: AuditEvent, opts: AuditQueryOptions | None = None) -> None: ...

    async def log_batch(
        self, events: list[AuditEvent], opts: AuditQueryOptions | None = None
    ) -> None: ...

    async def query(
        self, audit_filter: AuditFilter, opts: AuditQueryOptions
    ) -> list[AuditEvent]: ...
