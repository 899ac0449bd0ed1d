"""
Render a PredicateSpec as a parameterised ClickHouse SELECT.

Values never appear in the statement text: every value is bound through a
ClickHouse query parameter (``{p0:Array(String)}``) sent as ``param_p0``.
"""

from datetime import datetime
from typing import Any

from epcishub.core.clock import to_clickhouse
from epcishub.query.columns import SORTABLE_COLUMNS, ColumnKind, get_column
from epcishub.query.predicates import Op, Predicate, PredicateSpec

EVENTS_TABLE = "epcis_events"

_TIME_TYPE = "DateTime64(3, 'UTC')"


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def format_param(value: Any) -> str:
    """Encode a value in ClickHouse's text format for HTTP query parameters."""
    if isinstance(value, datetime):
        return to_clickhouse(value)
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (list, tuple)):
        escaped = (str(v).replace("\\", "\\\\").replace("'", "\\'") for v in value)
        return "[" + ",".join(f"'{v}'" for v in escaped) + "]"
    return str(value)


def render_predicate(predicate: Predicate, name: str) -> tuple[str, Any | None]:
    """
    Render one predicate as a SQL condition bound to parameter ``name``.

    Returns:
        (condition, parameter value or None when no parameter is needed)
    """
    column = get_column(predicate.field)
    ident = quote_identifier(column.name)

    if predicate.op is Op.GE:
        return f"{ident} >= {{{name}:{_TIME_TYPE}}}", predicate.value
    if predicate.op is Op.LT:
        return f"{ident} < {{{name}:{_TIME_TYPE}}}", predicate.value
    if predicate.op in (Op.EQ_SET, Op.MATCH_ANY):
        if predicate.is_empty_set:
            return "0", None
        if column.kind is ColumnKind.ARRAY:
            return f"hasAny({ident}, {{{name}:Array(String)}})", predicate.value
        return f"{ident} IN {{{name}:Array(String)}}", predicate.value
    if predicate.op is Op.EXISTS:
        return f"{ident} = {1 if predicate.value else 0}", None
    raise ValueError(f"Unsupported operator: {predicate.op}")


def render_select(spec: PredicateSpec, limit: int, offset: int) -> tuple[str, dict[str, str]]:
    """
    Build the SELECT for one page of a spec.

    Args:
        spec: Compiled spec
        limit: Rows to fetch (may exceed the page size to probe for a next page)
        offset: Rows to skip

    Returns:
        (statement, HTTP query parameters without the ``param_`` prefix)
    """
    conditions = []
    params: dict[str, str] = {}
    for index, predicate in enumerate(spec.predicates):
        name = f"p{index}"
        condition, value = render_predicate(predicate, name)
        conditions.append(condition)
        if value is not None:
            params[name] = format_param(value)

    if spec.order.field not in SORTABLE_COLUMNS:
        raise ValueError(f"Column is not sortable: {spec.order.field}")

    where = " AND ".join(conditions) if conditions else "1"
    order = (
        f"{quote_identifier(spec.order.field)} {spec.order.direction.value}, "
        f"{quote_identifier(spec.order.tie_breaker)} ASC"
    )
    params["limit"] = str(limit)
    params["offset"] = str(offset)

    statement = (
        f"SELECT payload FROM {EVENTS_TABLE} WHERE {where} "
        f"ORDER BY {order} LIMIT {{limit:UInt32}} OFFSET {{offset:UInt32}}"
    )
    return statement, params
