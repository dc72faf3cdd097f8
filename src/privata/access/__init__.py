"""Compliance-enforcing data access."""

from privata.access.context import AccessContext, AccessResult, QueryResult
from privata.access.engine import DataAccessEngine
from privata.access.query import (
    Query,
    QueryComplianceFilter,
    QueryPlan,
    compliance_score,
)

__all__ = [
    "AccessContext",
    "AccessResult",
    "DataAccessEngine",
    "Query",
    "QueryComplianceFilter",
    "QueryPlan",
    "QueryResult",
    "compliance_score",
]
