"""Data subject rights requests and restriction records."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from privata.models.base import new_id, utc_now


class RightsKind(str, Enum):
    """GDPR rights handled by the workflow engine."""

    ACCESS = "access"  # Art. 15
    RECTIFICATION = "rectification"  # Art. 16
    ERASURE = "erasure"  # Art. 17
    RESTRICTION = "restriction"  # Art. 18
    PORTABILITY = "portability"  # Art. 20
    OBJECTION = "objection"  # Art. 21


class RightsStatus(str, Enum):
    PENDING = "pending"
    VERIFYING = "verifying"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_COMPLETED = "partially-completed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RightsStatus.COMPLETED,
            RightsStatus.FAILED,
            RightsStatus.PARTIALLY_COMPLETED,
        )


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class VerificationMethod(str, Enum):
    EMAIL_CONFIRMATION = "email-confirmation"
    PHONE_VERIFICATION = "phone-verification"
    DOCUMENT_VERIFICATION = "document-verification"
    IN_PERSON = "in-person"


class RightsStep(BaseModel):
    name: str
    status: StepStatus = StepStatus.PENDING
    timestamp: datetime | None = None
    attempts: int = 0
    error: str | None = None
    output: dict[str, Any] = Field(default_factory=dict)


class RightsRequest(BaseModel):
    """A data subject request and its step-by-step progress."""

    id: str = Field(default_factory=lambda: new_id("dsr"))
    subject_id: str = Field(min_length=1)
    kind: RightsKind
    status: RightsStatus = RightsStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    due_date: datetime | None = None
    completed_at: datetime | None = None
    verification_method: VerificationMethod | None = None
    verified_at: datetime | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    steps: list[RightsStep] = Field(default_factory=list)
    result: dict[str, Any] = Field(default_factory=dict)

    def step(self, name: str) -> RightsStep | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def failed_step(self) -> RightsStep | None:
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump()


class RestrictionScope(str, Enum):
    ALL_PERSONAL_DATA = "all-personal-data"
    SPECIFIC_CATEGORIES = "specific-categories"


class RestrictionException(str, Enum):
    """Legal bases under which restricted data may still be processed."""

    LEGAL_OBLIGATION = "legal-obligation"
    VITAL_INTERESTS = "vital-interests"
    PUBLIC_INTEREST = "public-interest"
    LEGITIMATE_INTERESTS = "legitimate-interests"
    DEFENSE_OF_LEGAL_CLAIMS = "defense-of-legal-claims"
    FREEDOM_OF_EXPRESSION = "freedom-of-expression"
    ARCHIVING_RESEARCH = "archiving-research"


class RestrictionRecord(BaseModel):
    """Restriction of processing (Art. 18) or objection (Art. 21).

    ``purposes`` empty means every purpose is covered; objections list the
    purposes objected to.
    """

    id: str = Field(default_factory=lambda: new_id("restriction"))
    subject_id: str = Field(min_length=1)
    scope: RestrictionScope = RestrictionScope.ALL_PERSONAL_DATA
    data_categories: list[str] = Field(default_factory=list)
    exceptions_applied: list[RestrictionException] = Field(default_factory=list)
    purposes: list[str] = Field(default_factory=list)
    reason: str = ""
    active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    lifted_at: datetime | None = None

    def covers_purpose(self, purpose: str) -> bool:
        return not self.purposes or purpose in self.purposes

    def covers_category(self, category: str) -> bool:
        if self.scope == RestrictionScope.ALL_PERSONAL_DATA:
            return True
        return category in self.data_categories

    def exception_applies(self, legal_basis: str) -> bool:
        return legal_basis in {e.value for e in self.exceptions_applied}

    def to_record(self) -> dict[str, Any]:
        return self.model_dump()
