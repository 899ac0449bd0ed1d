"""
Logical event columns.

Every filterable attribute of a stored event document is described once here:
how to extract it from the JSON-LD document (used by the in-memory store and
to build ClickHouse rows) and which ClickHouse type it is stored as.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import json
from typing import Any

from epcishub.core.clock import parse_instant, to_clickhouse
from epcishub.query.predicates import Op, Predicate


class ColumnKind(str, Enum):
    TIME = "time"
    SCALAR = "scalar"
    ARRAY = "array"
    FLAG = "flag"


@dataclass(frozen=True)
class Column:
    name: str
    kind: ColumnKind
    clickhouse_type: str
    extract: Callable[[dict[str, Any]], Any]


def _instant(value: Any) -> datetime | None:
    if value is None:
        return None
    return parse_instant(value)


def _ref_id(event: dict[str, Any], key: str) -> str | None:
    ref = event.get(key)
    return ref.get("id") if isinstance(ref, dict) else None


def _strings(event: dict[str, Any], *keys: str) -> list[str]:
    values: list[str] = []
    for key in keys:
        values.extend(v for v in event.get(key) or () if isinstance(v, str))
    return values


def _epc_classes(event: dict[str, Any], *keys: str) -> list[str]:
    return [
        element["epcClass"]
        for key in keys
        for element in event.get(key) or ()
        if isinstance(element, dict) and element.get("epcClass")
    ]


def _sensor_values(event: dict[str, Any], attribute: str) -> list[str]:
    values = []
    for element in event.get("sensorElementList") or ():
        for report in element.get("sensorReport") or ():
            value = report.get(attribute)
            if value:
                values.append(value)
    return values


def _error_declaration(event: dict[str, Any]) -> dict[str, Any]:
    declaration = event.get("errorDeclaration")
    return declaration if isinstance(declaration, dict) else {}


def _any_epc(event: dict[str, Any]) -> list[str]:
    values = _strings(event, "epcList", "childEPCs", "inputEPCList", "outputEPCList")
    if event.get("parentID"):
        values.append(event["parentID"])
    return values


_QUANTITY_KEYS = ("quantityList", "childQuantityList")
_ALL_QUANTITY_KEYS = (*_QUANTITY_KEYS, "inputQuantityList", "outputQuantityList")

_COLUMN_LIST = [
    Column(
        "eventTime",
        ColumnKind.TIME,
        "DateTime64(3, 'UTC')",
        lambda e: _instant(e.get("eventTime")),
    ),
    Column(
        "recordTime",
        ColumnKind.TIME,
        "DateTime64(3, 'UTC')",
        lambda e: _instant(e.get("recordTime")),
    ),
    Column(
        "errorDeclarationTime",
        ColumnKind.TIME,
        "Nullable(DateTime64(3, 'UTC'))",
        lambda e: _instant(_error_declaration(e).get("declarationTime")),
    ),
    Column("eventID", ColumnKind.SCALAR, "String", lambda e: e.get("eventID")),
    Column("type", ColumnKind.SCALAR, "LowCardinality(String)", lambda e: e.get("type")),
    Column("action", ColumnKind.SCALAR, "Nullable(String)", lambda e: e.get("action")),
    Column("bizStep", ColumnKind.SCALAR, "Nullable(String)", lambda e: e.get("bizStep")),
    Column("disposition", ColumnKind.SCALAR, "Nullable(String)", lambda e: e.get("disposition")),
    Column("readPoint", ColumnKind.SCALAR, "Nullable(String)", lambda e: _ref_id(e, "readPoint")),
    Column(
        "bizLocation", ColumnKind.SCALAR, "Nullable(String)", lambda e: _ref_id(e, "bizLocation")
    ),
    Column("tenantId", ColumnKind.SCALAR, "String", lambda e: e.get("tenantId")),
    Column(
        "transformationID",
        ColumnKind.SCALAR,
        "Nullable(String)",
        lambda e: e.get("transformationID"),
    ),
    Column("parentID", ColumnKind.SCALAR, "Nullable(String)", lambda e: e.get("parentID")),
    Column(
        "errorReason",
        ColumnKind.SCALAR,
        "Nullable(String)",
        lambda e: _error_declaration(e).get("reason"),
    ),
    Column(
        "epcList", ColumnKind.ARRAY, "Array(String)", lambda e: _strings(e, "epcList", "childEPCs")
    ),
    Column("inputEPCList", ColumnKind.ARRAY, "Array(String)", lambda e: _strings(e, "inputEPCList")),
    Column(
        "outputEPCList", ColumnKind.ARRAY, "Array(String)", lambda e: _strings(e, "outputEPCList")
    ),
    Column("anyEPC", ColumnKind.ARRAY, "Array(String)", _any_epc),
    Column(
        "epcClass", ColumnKind.ARRAY, "Array(String)", lambda e: _epc_classes(e, *_QUANTITY_KEYS)
    ),
    Column(
        "anyEPCClass",
        ColumnKind.ARRAY,
        "Array(String)",
        lambda e: _epc_classes(e, *_ALL_QUANTITY_KEYS),
    ),
    Column("deviceID", ColumnKind.ARRAY, "Array(String)", lambda e: _sensor_values(e, "deviceID")),
    Column(
        "dataProcessingMethod",
        ColumnKind.ARRAY,
        "Array(String)",
        lambda e: _sensor_values(e, "dataProcessingMethod"),
    ),
    Column("errorDeclaration", ColumnKind.FLAG, "UInt8", lambda e: bool(_error_declaration(e))),
]

COLUMNS: dict[str, Column] = {column.name: column for column in _COLUMN_LIST}

SORTABLE_COLUMNS = ("eventTime", "recordTime")


def get_column(name: str) -> Column:
    try:
        return COLUMNS[name]
    except KeyError:
        raise KeyError(f"Unknown event column: {name}") from None


def _as_values(value: Any) -> Iterable[Any]:
    if value is None:
        return ()
    if isinstance(value, list):
        return value
    return (value,)


def evaluate(event: dict[str, Any], predicate: Predicate) -> bool:
    """Evaluate one predicate node against a stored event document."""
    column = get_column(predicate.field)
    actual = column.extract(event)

    if predicate.op is Op.GE:
        return actual is not None and actual >= predicate.value
    if predicate.op is Op.LT:
        return actual is not None and actual < predicate.value
    if predicate.op in (Op.EQ_SET, Op.MATCH_ANY):
        accepted = set(predicate.value)  # type: ignore[arg-type]
        return any(v in accepted for v in _as_values(actual))
    if predicate.op is Op.EXISTS:
        return bool(actual) is predicate.value
    raise ValueError(f"Unsupported operator: {predicate.op}")


def to_row(event: dict[str, Any]) -> dict[str, Any]:
    """
    Flatten an event document into a ClickHouse ``epcis_events`` row.

    The full document is kept in ``payload``; the logical columns are derived
    copies used only for filtering and ordering.
    """
    row: dict[str, Any] = {}
    for column in _COLUMN_LIST:
        value = column.extract(event)
        if column.kind is ColumnKind.TIME:
            value = to_clickhouse(value) if value is not None else None
        elif column.kind is ColumnKind.FLAG:
            value = 1 if value else 0
        row[column.name] = value
    row["captureID"] = event.get("captureID") or ""
    row["payload"] = json.dumps(event, separators=(",", ":"), sort_keys=True)
    return row
