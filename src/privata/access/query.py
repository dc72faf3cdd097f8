"""Immutable query builder and its compliance filter.

Every builder call returns a new ``Query``, so a partially built query can be
shared between concurrent callers safely.

Before execution ``QueryComplianceFilter`` classifies every field referenced
by filters, sorts and the select list, and asks the gate for one decision over
all of them. Denied select fields are dropped. A denied filter or sort field
denies the whole query, since filtering on it would reveal its value through
the result set.
"""

import hashlib
import json
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Literal

import structlog

from privata.access.context import AccessContext
from privata.compliance.gate import ComplianceGate
from privata.config import Settings, get_settings
from privata.db.base import StoreQuery
from privata.db.filters import (
    AllOf,
    AnyOf,
    Condition,
    FilterNode,
    Not,
    all_of,
    any_of,
)
from privata.exceptions import ComplianceDenied
from privata.models.decision import (
    ComplianceDecision,
    DecisionOutcome,
    OperationAction,
    OperationRequest,
)
from privata.models.region import Region
from privata.models.schema import FieldClass, ModelSchema

logger = structlog.get_logger(__name__)

Direction = Literal["asc", "desc"]

_UNSET = object()


def _condition(field_name: str, op_or_value: Any, value: Any = _UNSET) -> Condition:
    # where("status", "active") is shorthand for where("status", "eq", "active")
    if value is _UNSET:
        return Condition(field_name, "eq", op_or_value)
    return Condition(field_name, op_or_value, value)


def filter_to_dict(node: FilterNode | None) -> Any:
    """Canonical, JSON-serializable form of a filter tree."""
    if node is None:
        return None
    if isinstance(node, Condition):
        value = list(node.value) if isinstance(node.value, (set, frozenset, tuple)) else node.value
        return {"field": node.field, "op": node.op, "value": value}
    if isinstance(node, AllOf):
        return {"and": [filter_to_dict(n) for n in node.nodes]}
    if isinstance(node, AnyOf):
        return {"or": [filter_to_dict(n) for n in node.nodes]}
    if isinstance(node, Not):
        return {"not": filter_to_dict(node.node)}
    raise TypeError(f"Unknown filter node: {type(node).__name__}")


@dataclass(frozen=True)
class Query:
    """Filter, sort, projection and pagination for one model."""

    model: str
    filters: FilterNode | None = None
    sorting: tuple[tuple[str, Direction], ...] = ()
    selected: tuple[str, ...] = ()
    excluded: tuple[str, ...] = ()
    max_results: int | None = None
    skip: int = 0
    consent_required: bool = False

    # Filters

    def where(self, field_name: str, op_or_value: Any, value: Any = _UNSET) -> "Query":
        """AND a condition onto the filter."""
        return replace(self, filters=all_of(self.filters, _condition(field_name, op_or_value, value)))

    def and_where(self, field_name: str, op_or_value: Any, value: Any = _UNSET) -> "Query":
        return self.where(field_name, op_or_value, value)

    def or_where(self, field_name: str, op_or_value: Any, value: Any = _UNSET) -> "Query":
        """OR a condition with everything filtered so far."""
        return replace(self, filters=any_of(self.filters, _condition(field_name, op_or_value, value)))

    def where_any(self, *conditions: Condition | tuple) -> "Query":
        """AND a group of alternatives: ``(a OR b OR ...)``."""
        nodes = [c if isinstance(c, Condition) else _condition(*c) for c in conditions]
        return replace(self, filters=all_of(self.filters, any_of(*nodes)))

    def where_not(self, field_name: str, op_or_value: Any, value: Any = _UNSET) -> "Query":
        return replace(self, filters=all_of(self.filters, Not(_condition(field_name, op_or_value, value))))

    def between(self, field_name: str, low: Any, high: Any) -> "Query":
        return self.where(field_name, "gte", low).where(field_name, "lte", high)

    def in_(self, field_name: str, values: Iterable[Any]) -> "Query":
        return self.where(field_name, "in", tuple(values))

    def not_in(self, field_name: str, values: Iterable[Any]) -> "Query":
        return self.where(field_name, "nin", tuple(values))

    def like(self, field_name: str, pattern: str) -> "Query":
        return self.where(field_name, "like", pattern)

    def regex(self, field_name: str, pattern: str) -> "Query":
        return self.where(field_name, "regex", pattern)

    def exists(self, field_name: str, present: bool = True) -> "Query":
        return self.where(field_name, "exists", present)

    def is_null(self, field_name: str, null: bool = True) -> "Query":
        return self.where(field_name, "null", null)

    # Sort, projection, pagination

    def order_by(self, field_name: str, direction: Direction = "asc") -> "Query":
        if direction not in ("asc", "desc"):
            raise ValueError(f"Invalid sort direction: {direction}")
        return replace(self, sorting=(*self.sorting, (field_name, direction)))

    def select(self, *fields: str) -> "Query":
        return replace(self, selected=tuple(dict.fromkeys((*self.selected, *fields))))

    def exclude(self, *fields: str) -> "Query":
        return replace(self, excluded=tuple(dict.fromkeys((*self.excluded, *fields))))

    def limit(self, count: int) -> "Query":
        if count < 1:
            raise ValueError("limit must be positive")
        return replace(self, max_results=count)

    def offset(self, count: int) -> "Query":
        if count < 0:
            raise ValueError("offset must not be negative")
        return replace(self, skip=count)

    def page(self, number: int, size: int) -> "Query":
        """1-based page of ``size`` results."""
        if number < 1:
            raise ValueError("page numbers start at 1")
        return self.limit(size).offset((number - 1) * size)

    def require_consent(self, required: bool = True) -> "Query":
        return replace(self, consent_required=required)

    # Introspection

    @property
    def filter_fields(self) -> set[str]:
        return self.filters.fields() if self.filters is not None else set()

    @property
    def sort_fields(self) -> set[str]:
        return {name.split(".", 1)[0] for name, _ in self.sorting}

    def projection(self, schema: ModelSchema) -> tuple[str, ...]:
        """Fields the caller wants back: the select list, else every declared field."""
        fields = self.selected or ("id", *schema.fields)
        return tuple(f for f in dict.fromkeys(fields) if f not in self.excluded)

    @property
    def page_number(self) -> int:
        if not self.max_results:
            return 1
        return self.skip // self.max_results + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "filters": filter_to_dict(self.filters),
            "sort": [list(s) for s in self.sorting],
            "select": list(self.selected),
            "exclude": list(self.excluded),
            "limit": self.max_results,
            "offset": self.skip,
            "require_consent": self.consent_required,
        }

    def hash(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()[:16]


@dataclass
class QueryPlan:
    """Approved query ready to run against a store."""

    query: Query
    decision: ComplianceDecision
    store_query: StoreQuery
    fields: tuple[str, ...] | None
    dropped_fields: tuple[str, ...]
    compliance_score: int
    query_hash: str
    field_classes: dict[str, FieldClass] = field(default_factory=dict)


GENERIC_PURPOSE = "data-access"


def compliance_score(
    field_classes: dict[str, FieldClass],
    mode: str,
    consent_required: bool,
    purpose: str | None = None,
    legal_basis: str | None = None,
) -> int:
    """Diagnostic 0-100 score of how conservatively a query is configured.

    Generic purposes ("data-access") and "legitimate-interest" cost points;
    a specific purpose earns them back.
    """
    classes = set(field_classes.values())
    score = 100
    if FieldClass.PII in classes and not consent_required:
        score -= 10
    if FieldClass.PHI in classes and not consent_required:
        score -= 15
    if mode == "disabled":
        score -= 50
    if mode == "strict":
        score += 10
    if not purpose or purpose == GENERIC_PURPOSE:
        score -= 5
    if not legal_basis or legal_basis == "legitimate-interest":
        score -= 5
    if consent_required:
        score += 15
    if purpose and purpose != GENERIC_PURPOSE:
        score += 5
    return max(0, min(100, score))


class QueryComplianceFilter:
    """Approve or rewrite queries through the compliance gate."""

    def __init__(
        self,
        gate: ComplianceGate,
        settings: Settings | None = None,
    ):
        self.gate = gate
        self.settings = settings or get_settings()

    async def plan(
        self,
        query: Query,
        ctx: AccessContext,
        region: Region | None = None,
        scope: FilterNode | None = None,
    ) -> QueryPlan:
        """Evaluate a query and build the store query.

        Args:
            query: Query to approve
            ctx: Caller context
            region: Resolved region, recorded with the decision
            scope: Extra conditions ANDed by the engine (subject scoping,
                soft-delete exclusion); not classified

        Returns:
            Approved plan with denied select fields removed

        Raises:
            ComplianceDenied: Whole query denied, including any denied
                filter or sort field
        """
        schema = self.gate.classifier.registry.get(query.model)
        projection = query.projection(schema)
        filter_fields = tuple(sorted(query.filter_fields | query.sort_fields))
        consent_required = query.consent_required or ctx.require_consent

        decision = await self.gate.evaluate(
            OperationRequest(
                model=query.model,
                fields=projection,
                purpose=ctx.purpose,
                subject_id=ctx.subject_id,
                legal_basis=ctx.legal_basis,
                action=OperationAction.QUERY,
                region=region.value if region else None,
                mode=ctx.mode,
                require_consent=consent_required,
                actor_id=ctx.actor_id,
                filter_fields=filter_fields,
            ),
            timeout=ctx.timeout,
        )
        if decision.outcome == DecisionOutcome.DENIED:
            logger.info(
                "Query denied",
                model=query.model,
                purpose=ctx.purpose,
                reason=decision.reason,
            )
            raise ComplianceDenied(decision)

        dropped = tuple(f for f in projection if f in decision.denied_fields)
        fields = tuple(f for f in projection if f not in decision.denied_fields)
        if dropped:
            logger.info("Denied fields dropped from query", model=query.model, fields=list(dropped))

        return QueryPlan(
            query=query,
            decision=decision,
            store_query=StoreQuery(
                where=all_of(query.filters, scope),
                sort=query.sorting,
                limit=query.max_results,
                offset=query.skip,
            ),
            # Without an explicit select every stored field comes back and
            # denied ones are stripped afterwards.
            fields=fields if query.selected else None,
            dropped_fields=dropped,
            compliance_score=compliance_score(
                decision.field_classes,
                decision.mode,
                consent_required,
                purpose=ctx.purpose,
                legal_basis=ctx.legal_basis,
            ),
            query_hash=query.hash(),
            field_classes=dict(decision.field_classes),
        )
