"""Audit event types."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from privata.models.base import new_id, utc_now


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    # Data operations
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    EXPORT = "EXPORT"
    ERASURE = "ERASURE"

    # Policy decisions
    COMPLIANCE_DECISION = "COMPLIANCE_DECISION"

    # Consent
    CONSENT_GRANTED = "CONSENT_GRANTED"
    CONSENT_WITHDRAWN = "CONSENT_WITHDRAWN"
    CONSENT_WITHDRAWAL_ATTEMPTED = "CONSENT_WITHDRAWAL_ATTEMPTED"

    # Residency
    REGION_ASSIGNED = "REGION_ASSIGNED"

    # Data subject rights
    DATA_SUBJECT_REQUEST = "DATA_SUBJECT_REQUEST"
    RIGHTS_VERIFICATION_FAILED = "RIGHTS_VERIFICATION_FAILED"
    RIGHTS_STEP_COMPLETED = "RIGHTS_STEP_COMPLETED"
    RIGHTS_STEP_FAILED = "RIGHTS_STEP_FAILED"
    DATA_ACCESS_COMPLETED = "DATA_ACCESS_COMPLETED"
    DATA_PORTABILITY_COMPLETED = "DATA_PORTABILITY_COMPLETED"
    DATA_RECTIFICATION_COMPLETED = "DATA_RECTIFICATION_COMPLETED"
    DATA_RESTRICTION = "DATA_RESTRICTION"
    RESTRICTION_LIFTED = "RESTRICTION_LIFTED"
    DATA_OBJECTION = "DATA_OBJECTION"


class ComplianceFramework(str, Enum):
    GDPR = "GDPR"
    HIPAA = "HIPAA"
    CCPA = "CCPA"


class ExportFormat(str, Enum):
    JSON = "JSON"
    CSV = "CSV"
    XML = "XML"
    PDF = "PDF"


class AuditEvent(BaseModel):
    """One append-only audit record.

    ``retention_date`` is fixed when the event is written and never recomputed.
    """

    id: str = Field(default_factory=lambda: new_id("audit"))
    timestamp: datetime = Field(default_factory=utc_now)
    action: AuditAction
    entity_type: str
    entity_id: str
    subject_id: str | None = None
    actor_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    region: str | None = None
    compliance_framework: ComplianceFramework = ComplianceFramework.GDPR
    retention_date: datetime
    success: bool = True
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation."""
        return self.model_dump(mode="json")


class AuditFilter(BaseModel):
    """Equality filters plus an inclusive timestamp range."""

    subject_id: str | None = None
    actor_id: str | None = None
    action: AuditAction | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    region: str | None = None
    framework: ComplianceFramework | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    def matches(self, event: AuditEvent) -> bool:
        if self.subject_id is not None and event.subject_id != self.subject_id:
            return False
        if self.actor_id is not None and event.actor_id != self.actor_id:
            return False
        if self.action is not None and event.action != self.action:
            return False
        if self.entity_type is not None and event.entity_type != self.entity_type:
            return False
        if self.entity_id is not None and event.entity_id != self.entity_id:
            return False
        if self.region is not None and event.region != self.region:
            return False
        if self.framework is not None and event.compliance_framework != self.framework:
            return False
        if self.start_date is not None and event.timestamp < self.start_date:
            return False
        if self.end_date is not None and event.timestamp > self.end_date:
            return False
        return True


class AuditCursor(BaseModel):
    """Keyset position: events strictly after (timestamp, id)."""

    timestamp: datetime
    id: str

    @classmethod
    def after(cls, event: AuditEvent) -> "AuditCursor":
        return cls(timestamp=event.timestamp, id=event.id)


class AuditQueryOptions(BaseModel):
    limit: int = Field(default=1000, ge=1)
    after: AuditCursor | None = None
    retention_days: int | None = None
    region: str | None = None
