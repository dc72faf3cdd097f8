"""Data access engine.

Every operation resolves the subject's region, asks the compliance gate, and
only then touches the regional store:

- Reads strip denied fields from the returned records.
- Writes reject denied fields from the input and persist the rest.
- Denied operations raise ``ComplianceDenied`` carrying the decision.

Writes are staged in a store transaction and committed only after their audit
event is durably recorded. A failed audit write or a timeout rolls the
transaction back, so no unaudited change is ever visible.

With an encryptor configured, PII/PHI values are sealed before they reach a
store or cache and opened again only after the gate has allowed the read.
Sealed fields cannot be filtered or sorted on.
"""

import asyncio
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import structlog

from privata.access.context import AccessContext, AccessResult, QueryResult
from privata.access.query import Query, QueryComplianceFilter
from privata.compliance.audit import AuditSink
from privata.compliance.classifier import ModelRegistry
from privata.compliance.encryption import AesGcmEncryptor, Encryptor, FieldEncryptor
from privata.compliance.gate import ComplianceGate
from privata.compliance.pseudonym import Pseudonymizer
from privata.compliance.region import RegionRouter
from privata.config import Settings, get_settings
from privata.core.resilience import run_with_timeout
from privata.db.base import CacheAdapter, StorageAdapter, StoreOptions, StoreQuery
from privata.db.filters import Condition, FilterNode, all_of, equals
from privata.exceptions import ComplianceDenied, RegionUndetermined, ResidencyViolation
from privata.models.audit import AuditAction, ComplianceFramework
from privata.models.base import new_id, utc_now
from privata.models.decision import (
    ComplianceDecision,
    DecisionOutcome,
    OperationAction,
    OperationRequest,
)
from privata.models.region import Region
from privata.models.schema import FieldClass, ModelSchema

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Bookkeeping fields maintained by the engine (METADATA unless declared).
SOFT_DELETE_FIELDS = ("is_deleted", "deleted_at")
NOT_DELETED = Condition("is_deleted", "ne", True)


class DataAccessEngine:
    """Compliance-enforcing CRUD over region-partitioned stores."""

    def __init__(
        self,
        registry: ModelRegistry,
        gate: ComplianceGate,
        router: RegionRouter,
        stores: Mapping[Region | str, StorageAdapter],
        audit: AuditSink,
        cache: CacheAdapter | None = None,
        pseudonymizer: Pseudonymizer | None = None,
        encryptor: Encryptor | None = None,
        settings: Settings | None = None,
    ):
        if not stores:
            raise ValueError("At least one regional store is required")
        self.settings = settings or get_settings()
        self.registry = registry
        self.gate = gate
        self.router = router
        self.stores = {Region(region): store for region, store in stores.items()}
        self.audit = audit
        self.cache = cache
        self.pseudonymizer = pseudonymizer or Pseudonymizer(settings=self.settings)
        if encryptor is None and self.settings.field_encryption_key:
            encryptor = AesGcmEncryptor(settings=self.settings)
        self.field_encryption = FieldEncryptor(encryptor) if encryptor is not None else None
        self.query_filter = QueryComplianceFilter(gate, settings=self.settings)

    # =========================================================================
    # Plumbing
    # =========================================================================

    async def _run(self, ctx: AccessContext, operation: str, awaitable: Awaitable[T]) -> T:
        timeout = ctx.timeout if ctx.timeout is not None else self.settings.operation_timeout_seconds
        return await run_with_timeout(awaitable, timeout, operation)

    def _store(self, region: Region) -> StorageAdapter:
        try:
            return self.stores[region]
        except KeyError:
            raise RegionUndetermined(
                f"No store configured for region {region.value}", signals=["store"]
            ) from None

    async def _resolve_region(
        self, ctx: AccessContext, data: dict[str, Any] | None = None
    ) -> Region:
        if ctx.region is not None:
            pinned = Region(ctx.region)
            if ctx.subject_id:
                mapped = await self.router.lookup(ctx.subject_id)
                if mapped is not None and mapped != pinned:
                    raise ResidencyViolation(ctx.subject_id, mapped.value, pinned.value)
            return pinned
        return await self.router.resolve(ctx.subject_id, data=data, context=ctx.request)

    async def _decide(
        self,
        schema: ModelSchema,
        fields: tuple[str, ...],
        ctx: AccessContext,
        action: OperationAction,
        region: Region | None,
    ) -> ComplianceDecision:
        decision = await self.gate.evaluate(
            OperationRequest(
                model=schema.name,
                fields=fields,
                purpose=ctx.purpose,
                subject_id=ctx.subject_id,
                legal_basis=ctx.legal_basis,
                action=action,
                region=region.value if region else None,
                mode=ctx.mode,
                require_consent=ctx.require_consent,
                actor_id=ctx.actor_id,
            ),
            timeout=ctx.timeout,
        )
        if decision.outcome == DecisionOutcome.DENIED:
            raise ComplianceDenied(decision)
        return decision

    @staticmethod
    def _framework(schema: ModelSchema, fields: list[str] | tuple[str, ...]) -> ComplianceFramework | None:
        roots = {f.split(".", 1)[0] for f in fields}
        if any(schema.fields.get(f) == FieldClass.PHI for f in roots):
            return ComplianceFramework.HIPAA
        return None

    @staticmethod
    def _strip(
        record: dict[str, Any],
        decision: ComplianceDecision,
        fields: tuple[str, ...] | None = None,
    ) -> dict[str, Any]:
        keep = None if fields is None else set(fields) | {"id"}
        return {
            k: v
            for k, v in record.items()
            if k not in decision.denied_fields and (keep is None or k in keep)
        }

    @staticmethod
    def _owned_by(record: dict[str, Any], schema: ModelSchema, subject_id: str | None) -> bool:
        return subject_id is None or record.get(schema.subject_field) == subject_id

    def _default_fields(self, schema: ModelSchema) -> tuple[str, ...]:
        return tuple(dict.fromkeys(("id", *schema.fields)))

    # Stores and caches only ever see sealed PII/PHI values.

    def _seal(self, schema: ModelSchema, record: dict[str, Any]) -> dict[str, Any]:
        return self.field_encryption.seal(schema, record) if self.field_encryption else record

    def _open(self, schema: ModelSchema, record: dict[str, Any] | None) -> dict[str, Any] | None:
        if record is None or self.field_encryption is None:
            return record
        return self.field_encryption.open(schema, record)

    async def _transaction(
        self,
        store: StorageAdapter,
        opts: StoreOptions,
        write: Callable[[StoreOptions], Awaitable[dict[str, Any] | None]],
        audit: Callable[[dict[str, Any]], Awaitable[Any]],
    ) -> dict[str, Any] | None:
        """Store write, then audit append, then commit. Anything else rolls back."""
        tx = await store.begin(opts)
        try:
            record = await write(opts.with_transaction(tx))
            if record is None:
                await store.rollback(tx)
                return None
            await audit(record)
        except BaseException:
            await store.rollback(tx)
            raise
        await store.commit(tx)
        return record

    # Cache access is best effort; the store stays authoritative.

    def _cache_key(self, model: str, region: Region, record_id: str) -> str:
        return f"record:{model}:{region.value}:{record_id}"

    async def _cache_get(self, key: str) -> dict[str, Any] | None:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.warning("Record cache read failed", key=key, error=str(e))
            return None

    async def _cache_set(self, key: str, record: dict[str, Any]) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(key, record, ttl=self.settings.record_cache_ttl_seconds)
        except Exception as e:
            logger.warning("Record cache write failed", key=key, error=str(e))

    async def _cache_delete(self, key: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.delete(key)
        except Exception as e:
            logger.warning("Record cache delete failed", key=key, error=str(e))

    async def _load(
        self, store: StorageAdapter, model: str, region: Region, record_id: str
    ) -> dict[str, Any] | None:
        key = self._cache_key(model, region, record_id)
        cached = await self._cache_get(key)
        if cached is not None:
            return cached
        record = await store.find_by_id(record_id, StoreOptions(model=model, region=region.value))
        if record is not None:
            await self._cache_set(key, record)
        return record

    async def _remember_region(self, subject_id: str | None, region: Region, actor_id: str | None) -> None:
        if subject_id and await self.router.lookup(subject_id) is None:
            await self.router.assign(subject_id, region, actor_id=actor_id)

    # =========================================================================
    # Reads
    # =========================================================================

    async def find_by_id(
        self,
        model: str,
        record_id: str,
        ctx: AccessContext,
        fields: tuple[str, ...] | None = None,
    ) -> AccessResult:
        """Read one record with denied fields stripped.

        ``data`` is None when the record does not exist, is soft-deleted or
        belongs to a different subject than ``ctx.subject_id``.
        """
        return await self._run(ctx, f"find_by_id ({model})", self._find_by_id(model, record_id, ctx, fields))

    async def _find_by_id(
        self,
        model: str,
        record_id: str,
        ctx: AccessContext,
        fields: tuple[str, ...] | None,
    ) -> AccessResult:
        schema = self.registry.get(model)
        region = await self._resolve_region(ctx)
        requested = tuple(fields) if fields else self._default_fields(schema)
        decision = await self._decide(schema, requested, ctx, OperationAction.READ, region)

        record = await self._load(self._store(region), model, region, record_id)
        if record is None or record.get("is_deleted") or not self._owned_by(record, schema, ctx.subject_id):
            return AccessResult(None, decision, tuple(sorted(decision.denied_fields)), region)

        record = self._open(schema, record)
        data = self._strip(record, decision, tuple(fields) if fields else None)
        await self.audit.record(
            AuditAction.READ,
            entity_type=schema.audit_entity_type,
            entity_id=record_id,
            subject_id=record.get(schema.subject_field),
            actor_id=ctx.actor_id,
            region=region.value,
            framework=self._framework(schema, list(data)),
            details={"fields": sorted(data), "purpose": ctx.purpose, "decision_id": decision.audit_event_id},
        )
        return AccessResult(data, decision, tuple(sorted(decision.denied_fields)), region)

    async def find_many(
        self,
        model: str,
        ctx: AccessContext,
        where: FilterNode | dict[str, Any] | None = None,
        fields: tuple[str, ...] | None = None,
        sort: tuple[tuple[str, str], ...] = (),
        limit: int | None = None,
        offset: int = 0,
    ) -> AccessResult:
        """Read matching records with denied fields stripped.

        ``where`` is a filter tree or a mapping of equality criteria.
        """
        query = Query(model=model, filters=equals(**where) if isinstance(where, dict) else where)
        if fields:
            query = query.select(*fields)
        for name, direction in sort:
            query = query.order_by(name, direction)
        if limit is not None:
            query = query.limit(limit)
        if offset:
            query = query.offset(offset)
        result = await self.query(query, ctx)
        return AccessResult(result.data, result.decision, result.dropped_fields or tuple(sorted(result.decision.denied_fields)))

    async def query(self, query: Query, ctx: AccessContext) -> QueryResult:
        """Run a query through the compliance filter.

        When ``ctx.subject_id`` is set, results are limited to that subject's
        records: consent of one subject never authorizes reading another's.
        """
        return await self._run(ctx, f"query ({query.model})", self._query(query, ctx))

    def _scope(self, schema: ModelSchema, ctx: AccessContext) -> FilterNode | None:
        subject = Condition(schema.subject_field, "eq", ctx.subject_id) if ctx.subject_id else None
        return all_of(subject, NOT_DELETED)

    async def _query(self, query: Query, ctx: AccessContext) -> QueryResult:
        started = time.perf_counter()
        schema = self.registry.get(query.model)
        if self.field_encryption is not None:
            sealed = (query.filter_fields | query.sort_fields) & set(schema.sensitive_fields)
            if sealed:
                raise ValueError(f"Cannot filter or sort on encrypted fields: {sorted(sealed)}")
        region = await self._resolve_region(ctx)
        plan = await self.query_filter.plan(query, ctx, region=region, scope=self._scope(schema, ctx))
        store = self._store(region)
        opts = StoreOptions(model=query.model, region=region.value, fields=plan.fields)

        rows, total = await asyncio.gather(
            store.find_many(plan.store_query, opts),
            store.count(StoreQuery(where=plan.store_query.where), opts),
        )
        data = [self._strip(self._open(schema, row), plan.decision) for row in rows]

        if data:
            returned = sorted({k for row in data for k in row})
            await self.audit.record(
                AuditAction.READ,
                entity_type=schema.audit_entity_type,
                entity_id=f"query:{plan.query_hash}",
                subject_id=ctx.subject_id,
                actor_id=ctx.actor_id,
                region=region.value,
                framework=self._framework(schema, returned),
                details={
                    "fields": returned,
                    "records": len(data),
                    "purpose": ctx.purpose,
                    "decision_id": plan.decision.audit_event_id,
                },
            )

        limit = query.max_results
        return QueryResult(
            data=data,
            total=total,
            page=query.page_number,
            limit=limit,
            has_next=limit is not None and query.skip + len(data) < total,
            has_prev=query.skip > 0,
            decision=plan.decision,
            compliance_score=plan.compliance_score,
            query_hash=plan.query_hash,
            execution_ms=round((time.perf_counter() - started) * 1000, 3),
            dropped_fields=plan.dropped_fields,
        )

    async def count(self, query: Query, ctx: AccessContext) -> int:
        result = await self.query(query.limit(1), ctx)
        return result.total

    async def exists(self, query: Query, ctx: AccessContext) -> bool:
        return await self.count(query, ctx) > 0

    async def find_one(self, query: Query, ctx: AccessContext) -> dict[str, Any] | None:
        result = await self.query(query.limit(1), ctx)
        return result.data[0] if result.data else None

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, model: str, data: dict[str, Any], ctx: AccessContext) -> AccessResult:
        """Create a record, rejecting fields the caller may not write."""
        return await self._run(ctx, f"create ({model})", self._create(model, data, ctx))

    async def _create(self, model: str, data: dict[str, Any], ctx: AccessContext) -> AccessResult:
        schema = self.registry.get(model)
        payload = dict(data)
        subject_id = payload.get(schema.subject_field) or ctx.subject_id
        if ctx.subject_id and subject_id != ctx.subject_id:
            raise ValueError(
                f"Record {schema.subject_field} does not match the subject of the operation"
            )
        if subject_id:
            payload[schema.subject_field] = subject_id
            ctx = replace(ctx, subject_id=subject_id)

        region = await self._resolve_region(ctx, data=payload)
        fields = tuple(k for k in payload if k != "id")
        decision = await self._decide(schema, fields, ctx, OperationAction.CREATE, region)

        rejected = tuple(sorted(k for k in payload if k in decision.denied_fields))
        now = utc_now()
        record = {k: v for k, v in payload.items() if k not in decision.denied_fields}
        record.setdefault("id", new_id(model))
        record.setdefault("created_at", now)
        record["updated_at"] = now
        record["is_deleted"] = False

        store = self._store(region)
        opts = StoreOptions(model=model, region=region.value, consistency="strong")

        async def write(tx_opts: StoreOptions) -> dict[str, Any] | None:
            return await store.create(self._seal(schema, record), tx_opts)

        async def audit(created: dict[str, Any]) -> None:
            await self.audit.record(
                AuditAction.CREATE,
                entity_type=schema.audit_entity_type,
                entity_id=created["id"],
                subject_id=subject_id,
                actor_id=ctx.actor_id,
                region=region.value,
                framework=self._framework(schema, list(created)),
                details={
                    "fields": sorted(created),
                    "rejected_fields": list(rejected),
                    "purpose": ctx.purpose,
                    "decision_id": decision.audit_event_id,
                },
            )
            # Mapping failures roll the record back with it.
            await self._remember_region(subject_id, region, ctx.actor_id)

        sealed = await self._transaction(store, opts, write, audit)
        await self._cache_set(self._cache_key(model, region, sealed["id"]), sealed)
        created = self._open(schema, sealed)

        logger.info(
            "Record created",
            model=model,
            record_id=created["id"],
            region=region.value,
            rejected_fields=list(rejected),
        )
        return AccessResult(created, decision, rejected, region)

    async def update(
        self,
        model: str,
        record_id: str,
        changes: dict[str, Any],
        ctx: AccessContext,
    ) -> AccessResult:
        """Apply permitted changes to a record. ``data`` is None if it is gone."""
        return await self._run(ctx, f"update ({model})", self._update(model, record_id, changes, ctx))

    async def _update(
        self,
        model: str,
        record_id: str,
        changes: dict[str, Any],
        ctx: AccessContext,
    ) -> AccessResult:
        schema = self.registry.get(model)
        changes = {k: v for k, v in changes.items() if k != "id"}
        if schema.subject_field in changes:
            raise ValueError(f"{schema.subject_field} cannot be changed through update")

        region = await self._resolve_region(ctx)
        decision = await self._decide(schema, tuple(changes), ctx, OperationAction.UPDATE, region)
        rejected = tuple(sorted(k for k in changes if k in decision.denied_fields))
        accepted = {k: v for k, v in changes.items() if k not in decision.denied_fields}

        store = self._store(region)
        opts = StoreOptions(model=model, region=region.value, consistency="strong")
        current = await store.find_by_id(record_id, opts)
        if current is None or current.get("is_deleted") or not self._owned_by(current, schema, ctx.subject_id):
            return AccessResult(None, decision, rejected, region)

        accepted["updated_at"] = utc_now()

        async def write(tx_opts: StoreOptions) -> dict[str, Any] | None:
            return await store.update(record_id, self._seal(schema, accepted), tx_opts)

        async def audit(updated: dict[str, Any]) -> None:
            await self.audit.record(
                AuditAction.UPDATE,
                entity_type=schema.audit_entity_type,
                entity_id=record_id,
                subject_id=current.get(schema.subject_field),
                actor_id=ctx.actor_id,
                region=region.value,
                framework=self._framework(schema, list(accepted)),
                details={
                    "fields": sorted(accepted),
                    "rejected_fields": list(rejected),
                    "purpose": ctx.purpose,
                    "decision_id": decision.audit_event_id,
                },
            )

        updated = await self._transaction(store, opts, write, audit)
        key = self._cache_key(model, region, record_id)
        if updated is None:
            await self._cache_delete(key)
        else:
            await self._cache_set(key, updated)
        return AccessResult(self._open(schema, updated), decision, rejected, region)

    async def soft_delete(self, model: str, record_id: str, ctx: AccessContext) -> AccessResult:
        """Mark a record deleted. Subsequent reads no longer return it."""
        return await self._run(ctx, f"soft_delete ({model})", self._soft_delete(model, record_id, ctx))

    async def _soft_delete(self, model: str, record_id: str, ctx: AccessContext) -> AccessResult:
        schema = self.registry.get(model)
        region = await self._resolve_region(ctx)
        decision = await self._decide(schema, SOFT_DELETE_FIELDS, ctx, OperationAction.DELETE, region)

        store = self._store(region)
        opts = StoreOptions(model=model, region=region.value, consistency="strong")
        current = await store.find_by_id(record_id, opts)
        if current is None or current.get("is_deleted") or not self._owned_by(current, schema, ctx.subject_id):
            return AccessResult(None, decision, (), region)

        marks = {"is_deleted": True, "deleted_at": utc_now()}

        async def write(tx_opts: StoreOptions) -> dict[str, Any] | None:
            return await store.update(record_id, marks, tx_opts)

        async def audit(deleted: dict[str, Any]) -> None:
            await self.audit.record(
                AuditAction.DELETE,
                entity_type=schema.audit_entity_type,
                entity_id=record_id,
                subject_id=current.get(schema.subject_field),
                actor_id=ctx.actor_id,
                region=region.value,
                details={
                    "fields": list(SOFT_DELETE_FIELDS),
                    "soft": True,
                    "purpose": ctx.purpose,
                    "decision_id": decision.audit_event_id,
                },
            )

        deleted = await self._transaction(store, opts, write, audit)
        await self._cache_delete(self._cache_key(model, region, record_id))
        logger.info("Record soft-deleted", model=model, record_id=record_id, region=region.value)
        return AccessResult(self._open(schema, deleted), decision, (), region)

    # =========================================================================
    # Rights helpers
    # =========================================================================

    async def _subject_stores(self, subject_id: str) -> list[tuple[Region, StorageAdapter]]:
        # Unmapped subjects may predate region mapping; search every region.
        region = await self.router.lookup(subject_id)
        if region is not None:
            return [(region, self._store(region))]
        return list(self.stores.items())

    def _rights_context(self, subject_id: str, actor_id: str | None) -> AccessContext:
        return AccessContext(
            purpose=self.settings.rights_purpose,
            subject_id=subject_id,
            legal_basis="legal-obligation",
            actor_id=actor_id,
        )

    async def collect_subject_records(
        self,
        model: str,
        subject_id: str,
        actor_id: str | None = None,
        include_deleted: bool = False,
    ) -> list[dict[str, Any]]:
        """Every record of a subject, for access and portability requests."""
        schema = self.registry.get(model)
        ctx = self._rights_context(subject_id, actor_id)
        await self._decide(schema, self._default_fields(schema), ctx, OperationAction.READ, None)

        where = Condition(schema.subject_field, "eq", subject_id)
        if not include_deleted:
            where = all_of(where, NOT_DELETED)

        records: list[dict[str, Any]] = []
        for region, store in await self._subject_stores(subject_id):
            rows = await store.find_many(
                StoreQuery(where=where, sort=(("created_at", "asc"),)),
                StoreOptions(model=model, region=region.value, consistency="strong"),
            )
            records.extend(self._open(schema, row) for row in rows)

        await self.audit.record(
            AuditAction.READ,
            entity_type=schema.audit_entity_type,
            entity_id=f"subject:{subject_id}",
            subject_id=subject_id,
            actor_id=actor_id,
            framework=self._framework(schema, list(schema.fields)),
            details={"records": len(records), "purpose": ctx.purpose},
        )
        return records

    async def erase_subject_fields(
        self,
        model: str,
        subject_id: str,
        categories: list[str] | None = None,
        actor_id: str | None = None,
    ) -> int:
        """Null a subject's PII/PHI and pseudonymize the subject link.

        With ``categories`` only fields of those data categories are erased
        and the subject link is kept. Records already erased are skipped, so
        the helper can be re-run safely. Audit events are never touched.

        Returns:
            Number of records modified
        """
        schema = self.registry.get(model)
        targets = [
            f for f in schema.sensitive_fields
            if categories is None or schema.category_of(f) in categories
        ]
        if not targets:
            return 0

        ctx = self._rights_context(subject_id, actor_id)
        await self._decide(schema, tuple(targets), ctx, OperationAction.UPDATE, None)
        pseudonym = self.pseudonymizer.pseudonymize(subject_id) if categories is None else None

        erased = 0
        for region, store in await self._subject_stores(subject_id):
            opts = StoreOptions(model=model, region=region.value, consistency="strong")
            rows = await store.find_many(
                StoreQuery(where=Condition(schema.subject_field, "eq", subject_id)), opts
            )
            pending = [
                row for row in rows
                if pseudonym is not None or any(row.get(f) is not None for f in targets)
            ]
            if not pending:
                continue

            now = utc_now()
            tx = await store.begin(opts)
            tx_opts = opts.with_transaction(tx)
            try:
                for row in pending:
                    changes: dict[str, Any] = {f: None for f in targets if f in row}
                    changes["erased_at"] = now
                    changes["updated_at"] = now
                    if pseudonym is not None:
                        changes[schema.subject_field] = pseudonym
                    await store.update(row["id"], changes, tx_opts)
                    await self.audit.record(
                        AuditAction.UPDATE,
                        entity_type=schema.audit_entity_type,
                        entity_id=row["id"],
                        subject_id=subject_id,
                        actor_id=actor_id,
                        region=region.value,
                        framework=self._framework(schema, targets),
                        details={
                            "erased_fields": sorted(f for f in targets if f in row),
                            "pseudonymized": pseudonym is not None,
                            "purpose": ctx.purpose,
                        },
                    )
            except BaseException:
                await store.rollback(tx)
                raise
            await store.commit(tx)

            for row in pending:
                await self._cache_delete(self._cache_key(model, region, row["id"]))
            erased += len(pending)

        logger.info("Subject fields erased", model=model, subject_id=subject_id, records=erased)
        return erased

    async def rectify(
        self,
        model: str,
        record_id: str,
        changes: dict[str, Any],
        subject_id: str,
        actor_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Apply a subject's corrections under the rights-fulfilment purpose."""
        ctx = self._rights_context(subject_id, actor_id)
        result = await self.update(model, record_id, changes, ctx)
        return result.data
