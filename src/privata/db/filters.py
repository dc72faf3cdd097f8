"""Filter trees shared by the query builder and storage adapters."""

import re
from dataclasses import dataclass
from typing import Any, Literal, Union

Operator = Literal[
    "eq", "ne", "gt", "gte", "lt", "lte", "in", "nin", "like", "regex", "exists", "null"
]

OPERATORS: frozenset[str] = frozenset(
    {"eq", "ne", "gt", "gte", "lt", "lte", "in", "nin", "like", "regex", "exists", "null"}
)

MISSING = object()


def lookup(record: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path, returning MISSING for absent keys."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return MISSING
        current = current[part]
    return current


def _like_to_regex(pattern: str) -> re.Pattern[str]:
    escaped = re.escape(pattern).replace("%", ".*").replace("_", ".")
    return re.compile(f"^{escaped}$", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class Condition:
    field: str
    op: Operator
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported operator: {self.op}")

    def fields(self) -> set[str]:
        return {self.field.split(".")[0]}

    def matches(self, record: dict[str, Any]) -> bool:
        actual = lookup(record, self.field)

        if self.op == "exists":
            return (actual is not MISSING) == bool(self.value)
        if self.op == "null":
            return (actual is MISSING or actual is None) == bool(self.value)
        if actual is MISSING:
            # Missing values only satisfy negative operators.
            return self.op in ("ne", "nin")

        try:
            if self.op == "eq":
                return actual == self.value
            if self.op == "ne":
                return actual != self.value
            if self.op == "gt":
                return actual is not None and actual > self.value
            if self.op == "gte":
                return actual is not None and actual >= self.value
            if self.op == "lt":
                return actual is not None and actual < self.value
            if self.op == "lte":
                return actual is not None and actual <= self.value
        except TypeError:
            return False

        if self.op == "in":
            return actual in self.value
        if self.op == "nin":
            return actual not in self.value
        if self.op == "like":
            return isinstance(actual, str) and bool(_like_to_regex(self.value).match(actual))
        if self.op == "regex":
            return isinstance(actual, str) and re.search(self.value, actual) is not None
        return False


@dataclass(frozen=True)
class AllOf:
    nodes: tuple["FilterNode", ...]

    def fields(self) -> set[str]:
        return set().union(*(n.fields() for n in self.nodes)) if self.nodes else set()

    def matches(self, record: dict[str, Any]) -> bool:
        return all(node.matches(record) for node in self.nodes)


@dataclass(frozen=True)
class AnyOf:
    nodes: tuple["FilterNode", ...]

    def fields(self) -> set[str]:
        return set().union(*(n.fields() for n in self.nodes)) if self.nodes else set()

    def matches(self, record: dict[str, Any]) -> bool:
        return any(node.matches(record) for node in self.nodes)


@dataclass(frozen=True)
class Not:
    node: "FilterNode"

    def fields(self) -> set[str]:
        return self.node.fields()

    def matches(self, record: dict[str, Any]) -> bool:
        return not self.node.matches(record)


FilterNode = Union[Condition, AllOf, AnyOf, Not]


def all_of(*nodes: FilterNode | None) -> FilterNode | None:
    """AND nodes together, flattening nested AllOf and dropping Nones."""
    flat: list[FilterNode] = []
    for node in nodes:
        if node is None:
            continue
        if isinstance(node, AllOf):
            flat.extend(node.nodes)
        else:
            flat.append(node)
    if not flat:
        return None
    if len(flat) == 1:
        return flat[0]
    return AllOf(tuple(flat))


def any_of(*nodes: FilterNode | None) -> FilterNode | None:
    """OR nodes together, flattening nested AnyOf and dropping Nones."""
    flat: list[FilterNode] = []
    for node in nodes:
        if node is None:
            continue
        if isinstance(node, AnyOf):
            flat.extend(node.nodes)
        else:
            flat.append(node)
    if not flat:
        return None
    if len(flat) == 1:
        return flat[0]
    return AnyOf(tuple(flat))


def equals(**criteria: Any) -> FilterNode | None:
    """Shorthand for an AND of equality conditions."""
    return all_of(*(Condition(k, "eq", v) for k, v in criteria.items()))
