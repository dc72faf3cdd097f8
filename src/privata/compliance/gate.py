"""Compliance gate: the policy decision point.

Each evaluation goes ``Evaluating -> Allowed | Denied | PartiallyAllowed``:

1. Classify the requested fields.
2. PII needs consent for the purpose (blocking in strict mode, logged in
   relaxed mode, skipped when disabled).
3. PHI needs consent too unless the purpose is a HIPAA carve-out
   (treatment, payment, healthcare operations).
4. Active restrictions deny the categories they cover, or the whole
   operation for ``all-personal-data``, unless the legal basis is one of the
   record's exceptions.
5. Outcome from the allowed/denied split. Denial wins per field.
6. One ``COMPLIANCE_DECISION`` audit event per evaluation, whatever the
   outcome.

Evaluation errors (ledger down, unknown model, timeout) raise instead of
producing a decision.
"""

import dataclasses

import structlog

from privata.compliance.audit import AuditSink
from privata.compliance.classifier import FieldClassifier
from privata.compliance.consent import ConsentLedger
from privata.compliance.restriction import RestrictionRegistry
from privata.config import Settings, get_settings
from privata.core.resilience import run_with_timeout
from privata.exceptions import ConsentCheckFailed
from privata.models.audit import AuditAction, ComplianceFramework
from privata.models.decision import (
    ComplianceDecision,
    DecisionOutcome,
    OperationRequest,
)
from privata.models.rights import RestrictionRecord, RestrictionScope
from privata.models.schema import FieldClass

logger = structlog.get_logger(__name__)

# Per-field denial reasons
NO_CONSENT = "consent-missing"
NO_SUBJECT = "subject-unknown"
RESTRICTED = "restricted"
RESTRICTED_ALL = "restricted-all-personal-data"
FILTER_ON_DENIED = "filter-on-denied-field"


class ComplianceGate:
    """Decide which requested fields an operation may touch."""

    def __init__(
        self,
        classifier: FieldClassifier,
        consent: ConsentLedger,
        audit: AuditSink,
        restrictions: RestrictionRegistry | None = None,
        settings: Settings | None = None,
    ):
        self.classifier = classifier
        self.consent = consent
        self.audit = audit
        self.restrictions = restrictions
        self.settings = settings or get_settings()

    async def evaluate(
        self,
        op: OperationRequest,
        timeout: float | None = None,
    ) -> ComplianceDecision:
        """Evaluate an operation.

        Args:
            op: Operation descriptor
            timeout: Seconds before failing closed, defaults to
                ``operation_timeout_seconds``

        Returns:
            The decision, already recorded in the audit trail

        Raises:
            UnknownModel: Model not registered
            ConsentCheckFailed: Consent ledger could not answer
            OperationTimedOut: Evaluation exceeded the timeout
            AuditWriteFailed: Decision event could not be stored
        """
        if timeout is None:
            timeout = self.settings.operation_timeout_seconds
        return await run_with_timeout(self._evaluate(op), timeout, f"compliance evaluation ({op.model})")

    async def _evaluate(self, op: OperationRequest) -> ComplianceDecision:
        mode = op.mode or self.settings.compliance_mode
        schema = self.classifier.registry.get(op.model)
        classes = self.classifier.classify(op.model, dict.fromkeys((*op.fields, *op.filter_fields)))
        requested = frozenset(op.fields) | frozenset(op.filter_fields)

        pii = [f for f, c in classes.items() if c == FieldClass.PII]
        phi = [f for f, c in classes.items() if c == FieldClass.PHI]
        rights_fulfilment = op.purpose == self.settings.rights_purpose
        denied: dict[str, list[str]] = {}

        # Steps 2 and 3: consent
        if mode != "disabled" and not rights_fulfilment:
            needs_consent = pii + [
                f for f in phi if op.purpose not in self.settings.phi_consent_exempt_purposes
            ]
            if needs_consent:
                consented = await self._has_consent(op)
                if not consented:
                    if mode == "strict" or op.require_consent:
                        reason = NO_CONSENT if op.subject_id else NO_SUBJECT
                        for name in needs_consent:
                            denied.setdefault(name, []).append(reason)
                    else:
                        logger.warning(
                            "Processing without consent permitted in relaxed mode",
                            model=op.model,
                            purpose=op.purpose,
                            subject_id=op.subject_id,
                            fields=sorted(needs_consent),
                        )

        # Step 4: restrictions and objections
        if mode != "disabled" and not rights_fulfilment and op.subject_id:
            for restriction in await self._restrictions_for(op):
                if restriction.scope == RestrictionScope.ALL_PERSONAL_DATA:
                    if pii or phi:
                        for name in requested:
                            denied.setdefault(name, []).append(RESTRICTED_ALL)
                    continue
                for name in requested:
                    if restriction.covers_category(schema.category_of(name.split(".", 1)[0])):
                        denied.setdefault(name, []).append(RESTRICTED)

        # Filtering on a denied field would leak it through the result set.
        leaked = sorted(set(op.filter_fields) & set(denied))
        if leaked:
            for name in requested:
                denied.setdefault(name, []).append(FILTER_ON_DENIED)

        # Step 5: outcome
        denied_fields = frozenset(denied)
        allowed_fields = requested - denied_fields
        if not allowed_fields:
            outcome = DecisionOutcome.DENIED
        elif allowed_fields == requested:
            outcome = DecisionOutcome.ALLOWED
        else:
            outcome = DecisionOutcome.PARTIALLY_ALLOWED

        decision = ComplianceDecision(
            outcome=outcome,
            allowed_fields=allowed_fields,
            denied_fields=denied_fields,
            reason=self._reason(outcome, requested, denied, op),
            purpose=op.purpose,
            legal_basis=op.legal_basis,
            mode=mode,
            field_classes=classes,
            field_reasons={name: ",".join(dict.fromkeys(r)) for name, r in denied.items()},
        )

        # Step 6: audit, regardless of outcome
        framework = ComplianceFramework.HIPAA if phi else self.settings.default_framework
        event = await self.audit.record(
            AuditAction.COMPLIANCE_DECISION,
            entity_type=schema.audit_entity_type,
            entity_id=op.subject_id or op.model,
            subject_id=op.subject_id,
            actor_id=op.actor_id,
            region=op.region,
            framework=framework,
            success=decision.allowed,
            details={
                **decision.to_dict(),
                "action": op.action.value,
                "require_consent": op.require_consent,
                "pii_fields": sorted(pii),
                "phi_fields": sorted(phi),
            },
        )
        decision = dataclasses.replace(decision, audit_event_id=event.id)

        logger.info(
            "Compliance decision",
            model=op.model,
            action=op.action.value,
            purpose=op.purpose,
            subject_id=op.subject_id,
            outcome=outcome.value,
            denied_fields=sorted(denied_fields),
            mode=mode,
        )
        return decision

    async def _has_consent(self, op: OperationRequest) -> bool:
        if not op.subject_id:
            return False
        try:
            return await self.consent.check(op.subject_id, op.purpose, consistency="strong")
        except Exception as e:
            logger.error(
                "Consent check failed",
                subject_id=op.subject_id,
                purpose=op.purpose,
                error=str(e),
            )
            raise ConsentCheckFailed(op.subject_id, op.purpose, e) from e

    async def _restrictions_for(self, op: OperationRequest) -> list[RestrictionRecord]:
        if self.restrictions is None:
            return []
        applicable = []
        for restriction in await self.restrictions.active_for(op.subject_id):
            if not restriction.covers_purpose(op.purpose):
                continue
            if restriction.exception_applies(op.legal_basis):
                logger.info(
                    "Restriction exception applied",
                    restriction_id=restriction.id,
                    subject_id=op.subject_id,
                    legal_basis=op.legal_basis,
                )
                continue
            applicable.append(restriction)
        return applicable

    @staticmethod
    def _reason(
        outcome: DecisionOutcome,
        requested: frozenset[str],
        denied: dict[str, list[str]],
        op: OperationRequest,
    ) -> str:
        if not requested:
            return "no fields requested"
        if outcome == DecisionOutcome.ALLOWED:
            return "all requested fields permitted"

        causes = {reason for reasons in denied.values() for reason in reasons}
        parts = []
        if RESTRICTED_ALL in causes:
            parts.append("processing of personal data is restricted for this subject")
        if RESTRICTED in causes:
            parts.append("restricted data categories requested")
        if NO_CONSENT in causes:
            parts.append(f"no active consent for purpose '{op.purpose}'")
        if NO_SUBJECT in causes:
            parts.append("consent cannot be verified without a subject")
        if FILTER_ON_DENIED in causes:
            parts.append("filter or sort references a denied field")
        summary = "; ".join(parts)
        if outcome == DecisionOutcome.PARTIALLY_ALLOWED:
            return f"{len(denied)} of {len(requested)} fields denied: {summary}"
        return summary
