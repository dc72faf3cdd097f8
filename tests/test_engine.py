"""Tests for the data access engine."""

import asyncio

import pytest

from privata.access import AccessContext, Query
from privata.exceptions import (
    AuditWriteFailed,
    ComplianceDenied,
    OperationTimedOut,
    RegionUndetermined,
    ResidencyViolation,
)
from privata.models import AuditAction, ComplianceFramework, DecisionOutcome, Region, RestrictionRecord

from conftest import FailingAuditStore, build_stack

PATIENT_RECORD = {
    "id": "rec-1",
    "subject_id": "user-123",
    "name": "Anna Schmidt",
    "email": "anna@example.de",
    "phone": "+49 30 1234567",
    "diagnosis": "hypertension",
    "status": "active",
}


def _ctx(subject_id="user-123", purpose="analytics", **kwargs) -> AccessContext:
    return AccessContext(purpose=purpose, subject_id=subject_id, **kwargs)


class TestReads:
    """Tests for compliance-filtered reads."""

    @pytest.mark.asyncio
    async def test_sensitive_fields_stripped_without_consent(self, stack):
        await stack.seed("patient", PATIENT_RECORD)

        result = await stack.engine.find_by_id("patient", "rec-1", _ctx())

        assert result.partial
        assert result.region == Region.EU
        assert result.data["status"] == "active"
        for field_name in ("name", "email", "phone", "diagnosis"):
            assert field_name not in result.data
        assert set(result.rejected_fields) == {"name", "email", "phone", "diagnosis"}

    @pytest.mark.asyncio
    async def test_consent_returns_full_record(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        await stack.consent.grant("user-123", "analytics")

        result = await stack.engine.find_by_id("patient", "rec-1", _ctx())

        assert result.decision.outcome == DecisionOutcome.ALLOWED
        assert result.data["name"] == "Anna Schmidt"
        assert result.data["diagnosis"] == "hypertension"

    @pytest.mark.asyncio
    async def test_read_is_audited_as_hipaa_when_phi_returned(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        await stack.consent.grant("user-123", "analytics")

        await stack.engine.find_by_id("patient", "rec-1", _ctx())

        reads = await stack.events(AuditAction.READ)
        assert len(reads) == 1
        assert reads[0].compliance_framework == ComplianceFramework.HIPAA
        assert reads[0].subject_id == "user-123"
        assert reads[0].region == "EU"

    @pytest.mark.asyncio
    async def test_requested_fields(self, stack):
        await stack.seed("patient", PATIENT_RECORD)

        result = await stack.engine.find_by_id("patient", "rec-1", _ctx(), fields=("status",))

        assert result.decision.outcome == DecisionOutcome.ALLOWED
        assert result.data == {"id": "rec-1", "status": "active"}

    @pytest.mark.asyncio
    async def test_other_subjects_record_reads_as_missing(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        await stack.router.assign("user-456", Region.EU)
        await stack.consent.grant("user-456", "analytics")

        result = await stack.engine.find_by_id("patient", "rec-1", _ctx(subject_id="user-456"))

        assert result.data is None

    @pytest.mark.asyncio
    async def test_restricted_subject_denied(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        await stack.consent.grant("user-123", "analytics")
        await stack.restrictions.save(RestrictionRecord(subject_id="user-123"))

        with pytest.raises(ComplianceDenied) as exc_info:
            await stack.engine.find_by_id("patient", "rec-1", _ctx())

        assert exc_info.value.decision.outcome == DecisionOutcome.DENIED
        assert await stack.events(AuditAction.READ) == []

    @pytest.mark.asyncio
    async def test_unknown_region_fails(self, stack):
        with pytest.raises(RegionUndetermined):
            await stack.engine.find_by_id("patient", "rec-1", _ctx(subject_id="nobody"))

    @pytest.mark.asyncio
    async def test_pinned_region_must_match_mapping(self, stack):
        await stack.seed("patient", PATIENT_RECORD)

        with pytest.raises(ResidencyViolation):
            await stack.engine.find_by_id("patient", "rec-1", _ctx(region=Region.US))


class TestQuery:
    """Tests for queries through the engine."""

    @pytest.mark.asyncio
    async def test_results_scoped_to_subject(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        await stack.seed("patient", {**PATIENT_RECORD, "id": "rec-2", "status": "closed"})
        await stack.seed("patient", {**PATIENT_RECORD, "id": "rec-3", "subject_id": "user-456"})
        await stack.consent.grant("user-123", "analytics")

        result = await stack.engine.query(Query("patient").order_by("id"), _ctx())

        assert [r["id"] for r in result.data] == ["rec-1", "rec-2"]
        assert result.total == 2
        assert result.decision.outcome == DecisionOutcome.ALLOWED

    @pytest.mark.asyncio
    async def test_pagination_metadata(self, stack):
        for i in range(5):
            await stack.seed("patient", {**PATIENT_RECORD, "id": f"rec-{i}"})

        result = await stack.engine.query(Query("patient").select("status").order_by("id").page(2, 2), _ctx())

        assert [r["id"] for r in result.data] == ["rec-2", "rec-3"]
        assert result.total == 5
        assert result.page == 2
        assert result.has_next and result.has_prev

    @pytest.mark.asyncio
    async def test_denied_fields_dropped_from_results(self, stack):
        await stack.seed("patient", PATIENT_RECORD)

        result = await stack.engine.query(Query("patient"), _ctx())

        assert "name" not in result.data[0]
        assert result.data[0]["status"] == "active"
        assert result.compliance_score == 90

    @pytest.mark.asyncio
    async def test_filter_on_denied_field_rejected(self, stack):
        await stack.seed("patient", PATIENT_RECORD)

        with pytest.raises(ComplianceDenied):
            await stack.engine.query(Query("patient").select("status").where("diagnosis", "hypertension"), _ctx())

    @pytest.mark.asyncio
    async def test_find_many_with_mapping(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        await stack.seed("patient", {**PATIENT_RECORD, "id": "rec-2", "status": "closed"})

        result = await stack.engine.find_many("patient", _ctx(), where={"status": "closed"}, fields=("status",))

        assert result.data == [{"id": "rec-2", "status": "closed"}]

    @pytest.mark.asyncio
    async def test_count_exists_find_one(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        query = Query("patient").select("status")

        assert await stack.engine.count(query, _ctx()) == 1
        assert await stack.engine.exists(query.where("status", "closed"), _ctx()) is False
        assert (await stack.engine.find_one(query, _ctx()))["id"] == "rec-1"


class TestWrites:
    """Tests for compliance-filtered writes."""

    @pytest.mark.asyncio
    async def test_read_your_writes(self, stack):
        await stack.consent.grant("user-1", "care")
        ctx = _ctx(subject_id="user-1", purpose="care")

        created = await stack.engine.create(
            "patient", {"name": "Jean Dupont", "email": "jean@example.fr", "status": "active"}, ctx
        )
        read = await stack.engine.find_by_id("patient", created.data["id"], ctx)

        assert created.region == Region.EU
        assert read.data["name"] == "Jean Dupont"
        assert read.data["subject_id"] == "user-1"
        assert await stack.router.lookup("user-1") == Region.EU

    @pytest.mark.asyncio
    async def test_create_rejects_denied_fields(self, stack):
        ctx = _ctx(subject_id="user-1", purpose="care", region=Region.US)

        created = await stack.engine.create("patient", {"name": "Joe", "status": "new"}, ctx)

        assert created.rejected_fields == ("name",)
        stored = stack.stored("patient", Region.US)[created.data["id"]]
        assert "name" not in stored
        assert stored["status"] == "new"

    @pytest.mark.asyncio
    async def test_create_subject_mismatch(self, stack):
        with pytest.raises(ValueError):
            await stack.engine.create("patient", {"subject_id": "user-2"}, _ctx(subject_id="user-1", region=Region.EU))

    @pytest.mark.asyncio
    async def test_audit_failure_rolls_back_create(self, settings):
        stack = build_stack(settings, FailingAuditStore({AuditAction.CREATE}))
        await stack.consent.grant("user-1", "care")

        with pytest.raises(AuditWriteFailed):
            await stack.engine.create(
                "patient", {"name": "Joe", "country": "DE"}, _ctx(subject_id="user-1", purpose="care")
            )

        assert stack.stores[Region.EU].dump("patient") == []
        assert await stack.router.lookup("user-1") is None

    @pytest.mark.asyncio
    async def test_update(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        await stack.consent.grant("user-123", "care")

        result = await stack.engine.update("patient", "rec-1", {"status": "closed", "email": "a@b.de"}, _ctx(purpose="care"))

        assert result.data["status"] == "closed"
        assert stack.stored("patient")["rec-1"]["email"] == "a@b.de"
        assert len(await stack.events(AuditAction.UPDATE)) == 1

    @pytest.mark.asyncio
    async def test_update_rejects_denied_fields(self, stack):
        await stack.seed("patient", PATIENT_RECORD)

        result = await stack.engine.update("patient", "rec-1", {"status": "closed", "name": "X"}, _ctx())

        assert result.rejected_fields == ("name",)
        assert stack.stored("patient")["rec-1"]["name"] == "Anna Schmidt"

    @pytest.mark.asyncio
    async def test_update_cannot_relink_subject(self, stack):
        await stack.seed("patient", PATIENT_RECORD)

        with pytest.raises(ValueError):
            await stack.engine.update("patient", "rec-1", {"subject_id": "user-9"}, _ctx())

    @pytest.mark.asyncio
    async def test_update_invalidates_cache(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        await stack.consent.grant("user-123", "care")
        ctx = _ctx(purpose="care")

        await stack.engine.find_by_id("patient", "rec-1", ctx)
        await stack.engine.update("patient", "rec-1", {"status": "closed"}, ctx)
        read = await stack.engine.find_by_id("patient", "rec-1", ctx)

        assert read.data["status"] == "closed"

    @pytest.mark.asyncio
    async def test_soft_delete_hides_record(self, stack):
        await stack.seed("patient", PATIENT_RECORD)

        deleted = await stack.engine.soft_delete("patient", "rec-1", _ctx())

        assert deleted.data["is_deleted"] is True
        assert (await stack.engine.find_by_id("patient", "rec-1", _ctx())).data is None
        assert (await stack.engine.query(Query("patient").select("status"), _ctx())).data == []
        assert "rec-1" in stack.stored("patient")
        assert len(await stack.events(AuditAction.DELETE)) == 1

    @pytest.mark.asyncio
    async def test_timeout_rolls_back(self, stack, monkeypatch):
        await stack.consent.grant("user-1", "care")
        original = stack.audit.record

        async def slow_record(action, **kwargs):
            if action == AuditAction.CREATE:
                await asyncio.sleep(5)
            return await original(action, **kwargs)

        monkeypatch.setattr(stack.audit, "record", slow_record)

        with pytest.raises(OperationTimedOut):
            await stack.engine.create(
                "patient", {"name": "Joe"}, _ctx(subject_id="user-1", purpose="care", region=Region.EU, timeout=0.2)
            )

        assert stack.stores[Region.EU].dump("patient") == []

    @pytest.mark.asyncio
    async def test_region_assignment_audit_failure_rolls_back_create(self, settings):
        stack = build_stack(settings, FailingAuditStore({AuditAction.REGION_ASSIGNED}))
        await stack.consent.grant("user-1", "care")

        with pytest.raises(AuditWriteFailed):
            await stack.engine.create(
                "patient", {"name": "Joe"}, _ctx(subject_id="user-1", purpose="care", region=Region.EU)
            )

        assert stack.stores[Region.EU].dump("patient") == []
        assert await stack.router.lookup("user-1") is None

    @pytest.mark.asyncio
    async def test_region_assignment_timeout_rolls_back_create(self, stack, monkeypatch):
        await stack.consent.grant("user-1", "care")
        original = stack.audit.record

        async def slow_record(action, **kwargs):
            if action == AuditAction.REGION_ASSIGNED:
                await asyncio.sleep(5)
            return await original(action, **kwargs)

        monkeypatch.setattr(stack.audit, "record", slow_record)

        with pytest.raises(OperationTimedOut):
            await stack.engine.create(
                "patient", {"name": "Joe"}, _ctx(subject_id="user-1", purpose="care", region=Region.EU, timeout=0.2)
            )

        assert stack.stores[Region.EU].dump("patient") == []
        assert await stack.router.lookup("user-1") is None


class TestErasure:
    """Tests for the erasure helper."""

    @pytest.mark.asyncio
    async def test_erasure_nulls_fields_and_keeps_audit(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        await stack.consent.grant("user-123", "analytics")
        await stack.engine.find_by_id("patient", "rec-1", _ctx())
        before = {e.id for e in await stack.audit.query(limit=10_000)}

        erased = await stack.engine.erase_subject_fields("patient", "user-123")

        record = stack.stored("patient")["rec-1"]
        assert erased == 1
        for field_name in ("name", "email", "phone", "diagnosis"):
            assert record[field_name] is None
        assert record["subject_id"] == stack.engine.pseudonymizer.pseudonymize("user-123")
        assert record["erased_at"] is not None
        assert record["status"] == "active"

        after = {e.id for e in await stack.audit.query(limit=10_000)}
        assert before <= after
        reads = await stack.events(AuditAction.READ, subject_id="user-123")
        assert reads

    @pytest.mark.asyncio
    async def test_category_erasure_keeps_subject_link(self, stack):
        await stack.seed("patient", PATIENT_RECORD)

        await stack.engine.erase_subject_fields("patient", "user-123", categories=["contact"])

        record = stack.stored("patient")["rec-1"]
        assert record["email"] is None and record["phone"] is None
        assert record["name"] == "Anna Schmidt"
        assert record["subject_id"] == "user-123"

    @pytest.mark.asyncio
    async def test_collect_subject_records(self, stack):
        await stack.seed("patient", PATIENT_RECORD)
        await stack.seed("patient", {**PATIENT_RECORD, "id": "rec-2", "is_deleted": True})
        await stack.restrictions.save(RestrictionRecord(subject_id="user-123"))

        active = await stack.engine.collect_subject_records("patient", "user-123")
        everything = await stack.engine.collect_subject_records("patient", "user-123", include_deleted=True)

        assert [r["id"] for r in active] == ["rec-1"]
        assert len(everything) == 2
        assert active[0]["name"] == "Anna Schmidt"
