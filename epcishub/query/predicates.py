"""
Predicate nodes produced by the query compiler.

A PredicateSpec is a frozen, hashable value: two compilations of the same
parameters compare equal, which keeps scheduled re-executions idempotent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from epcishub.core.clock import to_iso


class Op(str, Enum):
    """Predicate operators."""

    GE = "GE"
    LT = "LT"
    EQ_SET = "EQ_SET"
    MATCH_ANY = "MATCH_ANY"
    EXISTS = "EXISTS"


class SortDirection(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


@dataclass(frozen=True)
class Predicate:
    """
    One filter node: ``field`` is a logical column name.

    ``value`` is a UTC datetime for GE/LT, a sorted tuple of strings for
    EQ_SET/MATCH_ANY and a bool for EXISTS.
    """

    field: str
    op: Op
    value: datetime | tuple[str, ...] | bool

    @property
    def is_empty_set(self) -> bool:
        return self.op in (Op.EQ_SET, Op.MATCH_ANY) and len(self.value) == 0  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, Any]:
        value: Any = self.value
        if isinstance(value, datetime):
            value = to_iso(value)
        elif isinstance(value, tuple):
            value = list(value)
        return {"field": self.field, "op": self.op.value, "value": value}


@dataclass(frozen=True)
class OrderSpec:
    field: str = "eventTime"
    direction: SortDirection = SortDirection.DESC
    tie_breaker: str = "eventID"


@dataclass(frozen=True)
class PageSpec:
    size: int
    offset: int = 0

    @property
    def next_offset(self) -> int:
        return self.offset + self.size


@dataclass(frozen=True)
class PredicateSpec:
    """Filter, order and pagination triple executable against an event store."""

    predicates: tuple[Predicate, ...] = ()
    order: OrderSpec = field(default_factory=OrderSpec)
    page: PageSpec = field(default_factory=lambda: PageSpec(size=100))

    @property
    def unsatisfiable(self) -> bool:
        """True when an empty value set makes this PredicateSpec match nothing."""
        return any(p.is_empty_set for p in self.predicates)

    def with_page(self, page: PageSpec) -> PredicateSpec:
        return PredicateSpec(predicates=self.predicates, order=self.order, page=page)

    def to_dict(self) -> dict[str, Any]:
        return {
            "predicates": [p.to_dict() for p in self.predicates],
            "order": {
                "field": self.order.field,
                "direction": self.order.direction.value,
                "tieBreaker": self.order.tie_breaker,
            },
            "page": {"size": self.page.size, "offset": self.page.offset},
        }
