"""In-memory adapters.

Reference implementations of the adapter protocols. They back the test suite
and local development; production deployments plug real drivers in instead.
"""

import asyncio
import copy
import fnmatch
import functools
import time
from typing import Any

import structlog

from privata.db.base import StoreOptions, StoreQuery
from privata.db.filters import MISSING, lookup
from privata.models.audit import AuditEvent, AuditFilter, AuditQueryOptions
from privata.models.base import new_id

logger = structlog.get_logger(__name__)


class _Transaction:
    """Writes staged until commit."""

    def __init__(self, model: str):
        self.id = new_id("tx")
        self.model = model
        self.operations: list[tuple[str, str, dict[str, Any] | None]] = []
        self.closed = False


def _compare(a: dict[str, Any], b: dict[str, Any], sort: tuple[tuple[str, str], ...]) -> int:
    for field, direction in sort:
        va, vb = lookup(a, field), lookup(b, field)
        a_missing = va is MISSING or va is None
        b_missing = vb is MISSING or vb is None
        # Missing values sort last in both directions.
        if a_missing or b_missing:
            if a_missing and b_missing:
                continue
            return 1 if a_missing else -1
        if va == vb:
            continue
        try:
            result = -1 if va < vb else 1
        except TypeError:
            result = -1 if str(va) < str(vb) else 1
        return -result if direction == "desc" else result
    return 0


class InMemoryStorage:
    """Dictionary-backed storage adapter with staged transactions."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _table(self, model: str) -> dict[str, dict[str, Any]]:
        return self._tables.setdefault(model, {})

    def _project(self, record: dict[str, Any], fields: tuple[str, ...] | None) -> dict[str, Any]:
        if fields is None:
            return copy.deepcopy(record)
        keep = set(fields) | {"id"}
        return {k: copy.deepcopy(v) for k, v in record.items() if k in keep}

    def _select(self, query: StoreQuery, opts: StoreOptions) -> list[dict[str, Any]]:
        records = [
            r for r in self._table(opts.model).values()
            if query.where is None or query.where.matches(r)
        ]
        if query.sort:
            records.sort(key=functools.cmp_to_key(lambda a, b: _compare(a, b, query.sort)))
        return records

    async def find_by_id(self, record_id: str, opts: StoreOptions) -> dict[str, Any] | None:
        record = self._table(opts.model).get(record_id)
        if record is None:
            return None
        return self._project(record, opts.fields)

    async def find_many(self, query: StoreQuery, opts: StoreOptions) -> list[dict[str, Any]]:
        records = self._select(query, opts)
        end = query.offset + query.limit if query.limit is not None else None
        return [self._project(r, opts.fields) for r in records[query.offset:end]]

    async def count(self, query: StoreQuery, opts: StoreOptions) -> int:
        return len(self._select(query, opts))

    async def create(self, data: dict[str, Any], opts: StoreOptions) -> dict[str, Any]:
        record = copy.deepcopy(data)
        record.setdefault("id", new_id())
        if opts.transaction is not None:
            self._stage(opts.transaction, "create", record["id"], record)
            return copy.deepcopy(record)
        async with self._lock:
            self._table(opts.model)[record["id"]] = record
        return copy.deepcopy(record)

    async def update(
        self, record_id: str, data: dict[str, Any], opts: StoreOptions
    ) -> dict[str, Any] | None:
        current = self._table(opts.model).get(record_id)
        if current is None:
            return None
        merged = {**copy.deepcopy(current), **copy.deepcopy(data), "id": record_id}
        if opts.transaction is not None:
            self._stage(opts.transaction, "update", record_id, merged)
            return copy.deepcopy(merged)
        async with self._lock:
            self._table(opts.model)[record_id] = merged
        return copy.deepcopy(merged)

    async def delete(self, record_id: str, opts: StoreOptions) -> None:
        if opts.transaction is not None:
            self._stage(opts.transaction, "delete", record_id, None)
            return
        async with self._lock:
            self._table(opts.model).pop(record_id, None)

    async def begin(self, opts: StoreOptions) -> _Transaction:
        return _Transaction(opts.model)

    async def commit(self, transaction: _Transaction) -> None:
        if transaction.closed:
            raise RuntimeError(f"Transaction {transaction.id} already closed")
        async with self._lock:
            table = self._table(transaction.model)
            for op, record_id, record in transaction.operations:
                if op == "delete":
                    table.pop(record_id, None)
                else:
                    table[record_id] = record
        transaction.closed = True

    async def rollback(self, transaction: _Transaction) -> None:
        transaction.operations.clear()
        transaction.closed = True
        logger.debug("Transaction rolled back", store=self.name, transaction=transaction.id)

    def _stage(
        self, transaction: _Transaction, op: str, record_id: str, record: dict[str, Any] | None
    ) -> None:
        if transaction.closed:
            raise RuntimeError(f"Transaction {transaction.id} already closed")
        transaction.operations.append((op, record_id, copy.deepcopy(record)))

    def dump(self, model: str) -> list[dict[str, Any]]:
        """Committed records of a model (test helper)."""
        return [copy.deepcopy(r) for r in self._table(model).values()]


class InMemoryCache:
    """TTL-aware dictionary cache."""

    def __init__(self, default_ttl: int | None = None):
        self.default_ttl = default_ttl
        self._entries: dict[str, tuple[Any, float | None]] = {}

    def _alive(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._entries[key]
            return False
        return True

    async def get(self, key: str) -> Any | None:
        if not self._alive(key):
            return None
        return copy.deepcopy(self._entries[key][0])

    async def get_many(self, keys: list[str]) -> dict[str, Any]:
        return {k: copy.deepcopy(self._entries[k][0]) for k in keys if self._alive(k)}

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl = ttl if ttl is not None else self.default_ttl
        expires_at = time.monotonic() + ttl if ttl else None
        self._entries[key] = (copy.deepcopy(value), expires_at)

    async def set_many(self, items: dict[str, Any], ttl: int | None = None) -> None:
        for key, value in items.items():
            await self.set(key, value, ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def invalidate(self, pattern: str) -> int:
        matched = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
        for key in matched:
            del self._entries[key]
        return len(matched)


class InMemoryAuditStore:
    """Append-only audit list with keyset pagination."""

    def __init__(self):
        self._events: list[AuditEvent] = []
        self._ids: set[str] = set()
        self._lock = asyncio.Lock()

    async def log(self, event: AuditEvent, opts: AuditQueryOptions | None = None) -> None:
        async with self._lock:
            self._append(event)

    async def log_batch(
        self, events: list[AuditEvent], opts: AuditQueryOptions | None = None
    ) -> None:
        async with self._lock:
            duplicates = [e.id for e in events if e.id in self._ids]
            if duplicates:
                raise ValueError(f"Duplicate audit event ids: {duplicates}")
            for event in events:
                self._append(event)

    def _append(self, event: AuditEvent) -> None:
        if event.id in self._ids:
            raise ValueError(f"Audit event {event.id} already recorded")
        self._ids.add(event.id)
        self._events.append(event.model_copy(deep=True))

    async def query(self, audit_filter: AuditFilter, opts: AuditQueryOptions) -> list[AuditEvent]:
        matching = sorted(
            (e for e in self._events if audit_filter.matches(e)),
            key=lambda e: (e.timestamp, e.id),
        )
        if opts.after is not None:
            position = (opts.after.timestamp, opts.after.id)
            matching = [e for e in matching if (e.timestamp, e.id) > position]
        return [e.model_copy(deep=True) for e in matching[: opts.limit]]

    def __len__(self) -> int:
        return len(self._events)
