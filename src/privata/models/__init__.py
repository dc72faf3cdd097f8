"""Engine data model."""

from privata.models.audit import (
    AuditAction,
    AuditCursor,
    AuditEvent,
    AuditFilter,
    AuditQueryOptions,
    ComplianceFramework,
    ExportFormat,
)
from privata.models.base import new_id, utc_now
from privata.models.consent import ConsentRecord
from privata.models.decision import (
    ComplianceDecision,
    DecisionOutcome,
    OperationAction,
    OperationRequest,
)
from privata.models.region import Region, RequestContext
from privata.models.rights import (
    RestrictionException,
    RestrictionRecord,
    RestrictionScope,
    RightsKind,
    RightsRequest,
    RightsStatus,
    RightsStep,
    StepStatus,
    VerificationMethod,
)
from privata.models.schema import FieldClass, ModelSchema

__all__ = [
    # Audit
    "AuditAction",
    "AuditCursor",
    "AuditEvent",
    "AuditFilter",
    "AuditQueryOptions",
    "ComplianceFramework",
    "ExportFormat",
    # Consent
    "ConsentRecord",
    # Decisions
    "ComplianceDecision",
    "DecisionOutcome",
    "OperationAction",
    "OperationRequest",
    # Residency
    "Region",
    "RequestContext",
    # Rights
    "RestrictionException",
    "RestrictionRecord",
    "RestrictionScope",
    "RightsKind",
    "RightsRequest",
    "RightsStatus",
    "RightsStep",
    "StepStatus",
    "VerificationMethod",
    # Schema
    "FieldClass",
    "ModelSchema",
    # Helpers
    "new_id",
    "utc_now",
]
