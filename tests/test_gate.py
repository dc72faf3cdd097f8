"""Tests for the compliance gate."""

import pytest

from privata.compliance import (
    AuditSink,
    ComplianceGate,
    ConsentLedger,
    FieldClassifier,
    RestrictionRegistry,
)
from privata.compliance.gate import FILTER_ON_DENIED, NO_CONSENT, RESTRICTED, RESTRICTED_ALL
from privata.db import InMemoryStorage
from privata.exceptions import ConsentCheckFailed, OperationTimedOut, UnknownModel
from privata.models import (
    AuditAction,
    AuditFilter,
    ComplianceFramework,
    DecisionOutcome,
    OperationRequest,
    RestrictionException,
    RestrictionRecord,
    RestrictionScope,
)

from conftest import SlowStorage, UnavailableStorage

ALL_FIELDS = ("id", "subject_id", "name", "email", "diagnosis", "status")


@pytest.fixture
def ledger(audit, settings):
    return ConsentLedger(InMemoryStorage("consent"), audit, settings=settings)


@pytest.fixture
def restrictions(settings):
    return RestrictionRegistry(InMemoryStorage("restrictions"), settings=settings)


@pytest.fixture
def gate(registry, ledger, audit, restrictions, settings):
    return ComplianceGate(FieldClassifier(registry), ledger, audit, restrictions, settings=settings)


def _op(purpose="analytics", subject_id="user-1", fields=ALL_FIELDS, **kwargs) -> OperationRequest:
    return OperationRequest(model="patient", fields=fields, purpose=purpose, subject_id=subject_id, **kwargs)


async def _decisions(audit: AuditSink):
    return await audit.query(AuditFilter(action=AuditAction.COMPLIANCE_DECISION))


class TestConsent:
    """Tests for consent-driven decisions."""

    @pytest.mark.asyncio
    async def test_strict_without_consent_strips_sensitive_fields(self, gate):
        decision = await gate.evaluate(_op())

        assert decision.outcome == DecisionOutcome.PARTIALLY_ALLOWED
        assert decision.denied_fields == {"name", "email", "diagnosis"}
        assert decision.allowed_fields == {"id", "subject_id", "status"}
        assert decision.field_reasons["name"] == NO_CONSENT

    @pytest.mark.asyncio
    async def test_consent_allows_everything(self, gate, ledger):
        await ledger.grant("user-1", "analytics")

        decision = await gate.evaluate(_op())

        assert decision.outcome == DecisionOutcome.ALLOWED
        assert decision.denied_fields == frozenset()

    @pytest.mark.asyncio
    async def test_only_sensitive_fields_without_consent_denied(self, gate):
        decision = await gate.evaluate(_op(fields=("name", "email")))

        assert decision.outcome == DecisionOutcome.DENIED
        assert not decision.allowed

    @pytest.mark.asyncio
    async def test_metadata_needs_no_consent(self, gate):
        decision = await gate.evaluate(_op(fields=("id", "status")))
        assert decision.outcome == DecisionOutcome.ALLOWED

    @pytest.mark.asyncio
    async def test_relaxed_mode_permits_without_consent(self, gate):
        decision = await gate.evaluate(_op(mode="relaxed"))

        assert decision.outcome == DecisionOutcome.ALLOWED
        assert decision.mode == "relaxed"

    @pytest.mark.asyncio
    async def test_relaxed_mode_honours_require_consent(self, gate):
        decision = await gate.evaluate(_op(mode="relaxed", require_consent=True))
        assert decision.denied_fields == {"name", "email", "diagnosis"}

    @pytest.mark.asyncio
    async def test_disabled_mode_skips_checks(self, gate, restrictions):
        await restrictions.save(RestrictionRecord(subject_id="user-1"))

        decision = await gate.evaluate(_op(mode="disabled"))

        assert decision.outcome == DecisionOutcome.ALLOWED

    @pytest.mark.asyncio
    async def test_missing_subject_denies_sensitive_fields(self, gate):
        decision = await gate.evaluate(_op(subject_id=None))
        assert decision.denied_fields == {"name", "email", "diagnosis"}

    @pytest.mark.asyncio
    async def test_phi_treatment_carve_out(self, gate, ledger):
        decision = await gate.evaluate(_op(purpose="treatment", fields=("diagnosis", "status")))
        assert decision.outcome == DecisionOutcome.ALLOWED

        # PII still needs consent for treatment
        decision = await gate.evaluate(_op(purpose="treatment", fields=("name", "diagnosis")))
        assert decision.denied_fields == {"name"}

    @pytest.mark.asyncio
    async def test_rights_purpose_is_consent_exempt(self, gate, settings):
        decision = await gate.evaluate(_op(purpose=settings.rights_purpose))
        assert decision.outcome == DecisionOutcome.ALLOWED


class TestRestrictions:
    """Tests for restrictions and objections."""

    @pytest.mark.asyncio
    async def test_all_personal_data_denies_until_lifted(self, gate, ledger, restrictions):
        await ledger.grant("user-1", "analytics")
        record = await restrictions.save(RestrictionRecord(subject_id="user-1"))

        denied = await gate.evaluate(_op())
        assert denied.outcome == DecisionOutcome.DENIED
        assert denied.field_reasons["status"] == RESTRICTED_ALL

        await restrictions.lift(record.id)

        allowed = await gate.evaluate(_op())
        assert allowed.outcome == DecisionOutcome.ALLOWED

    @pytest.mark.asyncio
    async def test_all_personal_data_ignores_metadata_only_operations(self, gate, restrictions):
        await restrictions.save(RestrictionRecord(subject_id="user-1"))

        decision = await gate.evaluate(_op(fields=("id", "status")))

        assert decision.outcome == DecisionOutcome.ALLOWED

    @pytest.mark.asyncio
    async def test_specific_categories(self, gate, ledger, restrictions):
        await ledger.grant("user-1", "analytics")
        await restrictions.save(
            RestrictionRecord(
                subject_id="user-1",
                scope=RestrictionScope.SPECIFIC_CATEGORIES,
                data_categories=["health"],
            )
        )

        decision = await gate.evaluate(_op())

        assert decision.denied_fields == {"diagnosis"}
        assert decision.field_reasons["diagnosis"] == RESTRICTED

    @pytest.mark.asyncio
    async def test_exception_applies_for_legal_basis(self, gate, ledger, restrictions):
        await ledger.grant("user-1", "analytics")
        await restrictions.save(
            RestrictionRecord(
                subject_id="user-1",
                exceptions_applied=[RestrictionException.LEGAL_OBLIGATION],
            )
        )

        assert (await gate.evaluate(_op())).outcome == DecisionOutcome.DENIED
        assert (await gate.evaluate(_op(legal_basis="legal-obligation"))).outcome == DecisionOutcome.ALLOWED

    @pytest.mark.asyncio
    async def test_objection_limited_to_purposes(self, gate, ledger, restrictions):
        await ledger.grant("user-1", "marketing")
        await ledger.grant("user-1", "analytics")
        await restrictions.save(RestrictionRecord(subject_id="user-1", purposes=["marketing"]))

        assert (await gate.evaluate(_op(purpose="marketing"))).outcome == DecisionOutcome.DENIED
        assert (await gate.evaluate(_op(purpose="analytics"))).outcome == DecisionOutcome.ALLOWED

    @pytest.mark.asyncio
    async def test_rights_purpose_bypasses_restrictions(self, gate, restrictions, settings):
        await restrictions.save(RestrictionRecord(subject_id="user-1"))

        decision = await gate.evaluate(_op(purpose=settings.rights_purpose))

        assert decision.outcome == DecisionOutcome.ALLOWED


class TestFilterFields:
    """Tests for filters and sorts on sensitive fields."""

    @pytest.mark.asyncio
    async def test_filter_on_denied_field_denies_all(self, gate):
        decision = await gate.evaluate(_op(fields=("id", "status"), filter_fields=("diagnosis",)))

        assert decision.outcome == DecisionOutcome.DENIED
        assert decision.field_reasons["status"] == FILTER_ON_DENIED

    @pytest.mark.asyncio
    async def test_filter_on_metadata_keeps_partial(self, gate):
        decision = await gate.evaluate(_op(filter_fields=("status",)))
        assert decision.outcome == DecisionOutcome.PARTIALLY_ALLOWED


class TestAuditing:
    """Tests for decision events."""

    @pytest.mark.asyncio
    async def test_one_event_per_evaluation(self, gate, ledger, restrictions, audit):
        await gate.evaluate(_op())
        await ledger.grant("user-1", "analytics")
        await gate.evaluate(_op())
        await restrictions.save(RestrictionRecord(subject_id="user-1"))
        await gate.evaluate(_op())

        events = await _decisions(audit)

        assert [e.details["outcome"] for e in events] == ["partially_allowed", "allowed", "denied"]
        assert [e.success for e in events] == [True, True, False]

    @pytest.mark.asyncio
    async def test_decision_references_its_event(self, gate, audit):
        decision = await gate.evaluate(_op())
        events = await _decisions(audit)

        assert decision.audit_event_id == events[0].id

    @pytest.mark.asyncio
    async def test_phi_decisions_are_hipaa(self, gate, audit):
        await gate.evaluate(_op(fields=("diagnosis",), purpose="treatment"))
        await gate.evaluate(_op(fields=("name",)))

        frameworks = [e.compliance_framework for e in await _decisions(audit)]
        assert frameworks == [ComplianceFramework.HIPAA, ComplianceFramework.GDPR]


class TestEvaluationErrors:
    """Tests for failures that must not produce a decision."""

    @pytest.mark.asyncio
    async def test_ledger_unavailable(self, registry, audit, settings):
        ledger = ConsentLedger(UnavailableStorage(), audit, settings=settings)
        gate = ComplianceGate(FieldClassifier(registry), ledger, audit, settings=settings)

        with pytest.raises(ConsentCheckFailed):
            await gate.evaluate(_op())

        assert await _decisions(audit) == []

    @pytest.mark.asyncio
    async def test_timeout_fails_closed(self, registry, audit, settings):
        ledger = ConsentLedger(SlowStorage(), audit, settings=settings)
        gate = ComplianceGate(FieldClassifier(registry), ledger, audit, settings=settings)

        with pytest.raises(OperationTimedOut):
            await gate.evaluate(_op(), timeout=0.05)

        assert await _decisions(audit) == []

    @pytest.mark.asyncio
    async def test_unknown_model(self, gate):
        with pytest.raises(UnknownModel):
            await gate.evaluate(OperationRequest(model="invoice", fields=("total",), purpose="billing"))
