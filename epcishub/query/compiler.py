"""
Query Predicate Compiler - turns EPCIS query parameters into a PredicateSpec.

Families (all combined with AND):
- Range: GE_/LT_ on time columns (inclusive lower, exclusive upper)
- Equality-set: EQ_ fields and eventTypes ("IN")
- Containment: MATCH_ fields (any element of a list column in the set)
- Existence: EXISTS_errorDeclaration

Compilation is a pure function. Predicates are emitted in a fixed order with
sorted values, so the same parameters always yield an equal spec.

Example:
    >>> spec = compile_query({"EQ_action": ["OBSERVE"], "perPage": 10})
    >>> spec.predicates
    (Predicate(field='action', op=<Op.EQ_SET: 'EQ_SET'>, value=('OBSERVE',)),)
    >>> spec.page
    PageSpec(size=10, offset=0)
"""

from enum import Enum
import logging
from typing import Any

from epcishub.core.clock import parse_instant
from epcishub.core.exceptions import ValidationException
from epcishub.query.models import QueryParams
from epcishub.query.predicates import (
    Op,
    OrderSpec,
    PageSpec,
    Predicate,
    PredicateSpec,
    SortDirection,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
SERVER_MAX_PAGE_SIZE = 1000

# (QueryParams attribute, column, operator); order fixes predicate order in the PredicateSpec
_RANGE_FILTERS: tuple[tuple[str, str, Op], ...] = (
    ("ge_event_time", "eventTime", Op.GE),
    ("lt_event_time", "eventTime", Op.LT),
    ("ge_record_time", "recordTime", Op.GE),
    ("lt_record_time", "recordTime", Op.LT),
    ("ge_error_declaration_time", "errorDeclarationTime", Op.GE),
    ("lt_error_declaration_time", "errorDeclarationTime", Op.LT),
)

_SET_FILTERS: tuple[tuple[str, str, Op], ...] = (
    ("event_types", "type", Op.EQ_SET),
    ("eq_event_id", "eventID", Op.EQ_SET),
    ("eq_action", "action", Op.EQ_SET),
    ("eq_biz_step", "bizStep", Op.EQ_SET),
    ("eq_disposition", "disposition", Op.EQ_SET),
    ("eq_read_point", "readPoint", Op.EQ_SET),
    ("eq_biz_location", "bizLocation", Op.EQ_SET),
    ("eq_tenant_id", "tenantId", Op.EQ_SET),
    ("eq_transformation_id", "transformationID", Op.EQ_SET),
    ("eq_error_reason", "errorReason", Op.EQ_SET),
    ("eq_device_id", "deviceID", Op.EQ_SET),
    ("eq_data_processing_method", "dataProcessingMethod", Op.EQ_SET),
    ("match_epc", "epcList", Op.MATCH_ANY),
    ("match_parent_id", "parentID", Op.MATCH_ANY),
    ("match_input_epc", "inputEPCList", Op.MATCH_ANY),
    ("match_output_epc", "outputEPCList", Op.MATCH_ANY),
    ("match_any_epc", "anyEPC", Op.MATCH_ANY),
    ("match_epc_class", "epcClass", Op.MATCH_ANY),
    ("match_any_epc_class", "anyEPCClass", Op.MATCH_ANY),
)


def _value_set(values: list[Any]) -> tuple[str, ...]:
    return tuple(sorted({v.value if isinstance(v, Enum) else str(v) for v in values}))


def parse_page_token(token: str | None) -> int:
    """
    Decode an opaque page token (the decimal offset of the next row).

    Raises:
        ValidationException: If the token is not a non-negative decimal
    """
    if token is None or token == "":
        return 0
    if not (token.isascii() and token.isdigit()):
        raise ValidationException(f"nextPageToken: invalid page token {token!r}")
    return int(token)


def compile_query(
    params: QueryParams | dict[str, Any] | None,
    *,
    default_page_size: int = DEFAULT_PAGE_SIZE,
    max_page_size: int = SERVER_MAX_PAGE_SIZE,
) -> PredicateSpec:
    """
    Compile query parameters into a filter/order/pagination spec.

    Args:
        params: QueryParams or raw EPCIS parameter mapping
        default_page_size: Page size when the request names none
        max_page_size: Server maximum page size

    Returns:
        Deterministic PredicateSpec

    Raises:
        ValidationException: On unknown parameters or malformed values
    """
    query = QueryParams.parse(params)
    predicates: list[Predicate] = []

    for attribute, column, op in _RANGE_FILTERS:
        value = getattr(query, attribute)
        if value is not None:
            predicates.append(Predicate(column, op, parse_instant(value)))

    for attribute, column, op in _SET_FILTERS:
        values = getattr(query, attribute)
        if values is not None:
            predicates.append(Predicate(column, op, _value_set(values)))

    if query.exists_error_declaration is not None:
        predicates.append(Predicate("errorDeclaration", Op.EXISTS, query.exists_error_declaration))

    order = OrderSpec(
        field=query.order_by or "eventTime",
        direction=SortDirection(query.order_direction or "DESC"),
    )

    requested = query.per_page or query.event_count_limit or default_page_size
    ceiling = min(query.max_event_count or max_page_size, max_page_size)
    page = PageSpec(size=min(requested, ceiling), offset=parse_page_token(query.next_page_token))

    spec = PredicateSpec(predicates=tuple(predicates), order=order, page=page)
    if spec.unsatisfiable:
        logger.debug("Compiled query contains an empty value set and matches nothing")
    return spec
