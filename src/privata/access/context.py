"""Caller context and results of data access operations."""

from dataclasses import dataclass, field
from typing import Any

from privata.config import ComplianceMode
from privata.models.decision import ComplianceDecision
from privata.models.region import Region, RequestContext


@dataclass(frozen=True)
class AccessContext:
    """Who is processing whose data, and why.

    ``subject_id`` is the data subject the operation concerns; consent and
    restrictions are evaluated for that subject. ``region`` pins the
    regional store explicitly instead of resolving it.
    """

    purpose: str
    subject_id: str | None = None
    legal_basis: str = "consent"
    mode: ComplianceMode | None = None
    request: RequestContext | None = None
    actor_id: str | None = None
    timeout: float | None = None
    require_consent: bool = False
    region: Region | None = None


@dataclass
class AccessResult:
    """Outcome of an allowed or partially allowed operation."""

    data: Any
    decision: ComplianceDecision
    rejected_fields: tuple[str, ...] = ()
    region: Region | None = None

    @property
    def partial(self) -> bool:
        return self.decision.is_partial


@dataclass
class QueryResult:
    """Page of query results with compliance diagnostics."""

    data: list[dict[str, Any]]
    total: int
    page: int
    limit: int | None
    has_next: bool
    has_prev: bool
    decision: ComplianceDecision
    compliance_score: int
    query_hash: str
    execution_ms: float
    dropped_fields: tuple[str, ...] = field(default_factory=tuple)
