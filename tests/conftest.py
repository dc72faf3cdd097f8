"""Pytest configuration and fixtures."""

import asyncio
from dataclasses import dataclass
from typing import Any

import pytest

from privata.access import DataAccessEngine
from privata.compliance import (
    AuditSink,
    ComplianceGate,
    ConsentLedger,
    Encryptor,
    FieldClassifier,
    ModelRegistry,
    RegionRouter,
    RestrictionRegistry,
)
from privata.config import Settings
from privata.core.resilience import RetryConfig, RetryWithBackoff
from privata.db import InMemoryAuditStore, InMemoryCache, InMemoryStorage, StoreOptions
from privata.exceptions import StoreUnavailable
from privata.models import (
    AuditAction,
    AuditEvent,
    AuditFilter,
    FieldClass,
    ModelSchema,
    Region,
)
from privata.rights import RightsWorkflowEngine

PATIENT = ModelSchema(
    name="patient",
    fields={
        "subject_id": FieldClass.METADATA,
        "name": FieldClass.PII,
        "email": FieldClass.PII,
        "phone": FieldClass.PII,
        "diagnosis": FieldClass.PHI,
        "status": FieldClass.METADATA,
    },
    categories={
        "name": "identity",
        "email": "contact",
        "phone": "contact",
        "diagnosis": "health",
    },
)

NOTE = ModelSchema(
    name="note",
    fields={
        "subject_id": FieldClass.METADATA,
        "body": FieldClass.PHI,
        "author": FieldClass.METADATA,
    },
    categories={"body": "health"},
)


@pytest.fixture
def settings():
    """Get test settings."""
    return Settings(
        _env_file=None,
        compliance_mode="strict",
        pseudonym_secret="test-pseudonym-secret",
        operation_timeout_seconds=5.0,
        rights_max_retries=2,
        rights_retry_initial_delay=0.0,
        rights_retry_max_delay=0.0,
    )


@pytest.fixture
def retry_config():
    """Create retry config for testing."""
    return RetryConfig(
        max_retries=3,
        initial_delay=0.01,
        max_delay=0.1,
    )


@pytest.fixture
def registry():
    return ModelRegistry([PATIENT, NOTE])


@pytest.fixture
def audit_store():
    return InMemoryAuditStore()


@pytest.fixture
def audit(audit_store, settings):
    return AuditSink(audit_store, settings=settings)


# =============================================================================
# Failing adapters
# =============================================================================


class FailingAuditStore(InMemoryAuditStore):
    """Audit store that rejects selected actions."""

    def __init__(self, fail_on: set[AuditAction] | None = None):
        super().__init__()
        self.fail_on = fail_on or set()

    async def log(self, event: AuditEvent, opts=None) -> None:
        if event.action in self.fail_on:
            raise ConnectionError("audit index unreachable")
        await super().log(event, opts)


class UnavailableStorage(InMemoryStorage):
    """Storage whose reads fail."""

    async def find_many(self, query, opts):
        raise StoreUnavailable("consent store unreachable")


class SlowStorage(InMemoryStorage):
    """Storage whose reads hang longer than any test timeout."""

    async def find_many(self, query, opts):
        await asyncio.sleep(5)
        return await super().find_many(query, opts)


class FakeGeoLocator:
    """Static IP to country table that counts lookups."""

    def __init__(self, table: dict[str, str]):
        self.table = table
        self.calls = 0

    async def country_for(self, ip_address: str) -> str | None:
        self.calls += 1
        return self.table.get(ip_address)


# =============================================================================
# Wired engine
# =============================================================================


@dataclass
class Stack:
    """Fully wired engine over in-memory adapters."""

    settings: Settings
    registry: ModelRegistry
    audit_store: InMemoryAuditStore
    audit: AuditSink
    consent: ConsentLedger
    restrictions: RestrictionRegistry
    gate: ComplianceGate
    router: RegionRouter
    region_cache: InMemoryCache
    stores: dict[Region, InMemoryStorage]
    engine: DataAccessEngine
    rights: RightsWorkflowEngine

    async def events(self, action: AuditAction, **criteria: Any) -> list[AuditEvent]:
        return await self.audit.query(AuditFilter(action=action, **criteria), limit=10_000)

    async def seed(
        self,
        model: str,
        record: dict[str, Any],
        region: Region = Region.EU,
    ) -> dict[str, Any]:
        """Write a record straight to a regional store and map its subject."""
        row = {"is_deleted": False, **record}
        created = await self.stores[region].create(row, StoreOptions(model=model))
        subject_id = row.get("subject_id")
        if subject_id and await self.router.lookup(subject_id) is None:
            await self.router.assign(subject_id, region)
        return created

    def stored(self, model: str, region: Region = Region.EU) -> dict[str, dict[str, Any]]:
        return {row["id"]: row for row in self.stores[region].dump(model)}


def build_stack(
    settings: Settings,
    audit_store: InMemoryAuditStore | None = None,
    encryptor: Encryptor | None = None,
) -> Stack:
    registry = ModelRegistry([PATIENT, NOTE])
    audit_store = audit_store if audit_store is not None else InMemoryAuditStore()
    audit = AuditSink(audit_store, settings=settings)
    consent = ConsentLedger(InMemoryStorage("consent"), audit, settings=settings)
    restrictions = RestrictionRegistry(InMemoryStorage("restrictions"), settings=settings)
    gate = ComplianceGate(FieldClassifier(registry), consent, audit, restrictions, settings=settings)
    region_cache = InMemoryCache()
    router = RegionRouter(InMemoryStorage("regions"), audit, cache=region_cache, settings=settings)
    stores = {region: InMemoryStorage(region.value) for region in Region}
    engine = DataAccessEngine(
        registry,
        gate,
        router,
        stores,
        audit,
        cache=InMemoryCache(),
        encryptor=encryptor,
        settings=settings,
    )
    rights = RightsWorkflowEngine(
        engine,
        consent,
        restrictions,
        audit,
        InMemoryStorage("rights"),
        retry=RetryWithBackoff(RetryConfig(max_retries=2, initial_delay=0.0, max_delay=0.0, jitter=0.0)),
        settings=settings,
    )
    return Stack(
        settings=settings,
        registry=registry,
        audit_store=audit_store,
        audit=audit,
        consent=consent,
        restrictions=restrictions,
        gate=gate,
        router=router,
        region_cache=region_cache,
        stores=stores,
        engine=engine,
        rights=rights,
    )


@pytest.fixture
def stack(settings):
    """Get a wired engine with empty stores."""
    return build_stack(settings)
