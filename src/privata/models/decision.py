"""Compliance gate input and output."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from privata.models.schema import FieldClass


class OperationAction(str, Enum):
    READ = "read"
    QUERY = "query"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def is_write(self) -> bool:
        return self in (OperationAction.CREATE, OperationAction.UPDATE, OperationAction.DELETE)


class DecisionOutcome(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    PARTIALLY_ALLOWED = "partially_allowed"


@dataclass(frozen=True)
class OperationRequest:
    """Descriptor of one operation the gate is asked to approve."""

    model: str
    fields: tuple[str, ...]
    purpose: str
    subject_id: str | None = None
    legal_basis: str = "consent"
    action: OperationAction = OperationAction.READ
    region: str | None = None
    mode: str | None = None
    require_consent: bool = False
    actor_id: str | None = None
    # Fields used to filter or sort; denying any of them denies the operation.
    filter_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class ComplianceDecision:
    """Outcome of one gate evaluation. Logged, never persisted directly."""

    outcome: DecisionOutcome
    allowed_fields: frozenset[str]
    denied_fields: frozenset[str]
    reason: str
    purpose: str
    legal_basis: str
    mode: str
    field_classes: dict[str, FieldClass] = field(default_factory=dict)
    field_reasons: dict[str, str] = field(default_factory=dict)
    audit_event_id: str | None = None

    @property
    def allowed(self) -> bool:
        """True unless the whole operation was denied."""
        return self.outcome != DecisionOutcome.DENIED

    @property
    def is_partial(self) -> bool:
        return self.outcome == DecisionOutcome.PARTIALLY_ALLOWED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "allowed_fields": sorted(self.allowed_fields),
            "denied_fields": sorted(self.denied_fields),
            "field_reasons": dict(sorted(self.field_reasons.items())),
            "reason": self.reason,
            "purpose": self.purpose,
            "legal_basis": self.legal_basis,
            "mode": self.mode,
        }
