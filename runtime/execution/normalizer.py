"""Result normalizer — map native BigQuery values onto generic JSON kinds.

Every declared field type has exactly one mapping.  A type without one, or
a value whose Python type disagrees with its declared type, is a
``NormalizationError``; nothing is silently coerced or dropped.
"""

from __future__ import annotations

import base64
import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Callable, Sequence

from contracts.errors import NormalizationError
from contracts.execution import ColumnSchema

logger = logging.getLogger(__name__)


class _Mismatch(Exception):
    pass


# ── scalar converters ───────────────────────────────────────────────


def _string(value: Any) -> str:
    if not isinstance(value, str):
        raise _Mismatch
    return value


def _bytes(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, str):  # REST payloads arrive already base64-encoded
        return value
    raise _Mismatch


def _integer(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _Mismatch
    return value


def _float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _Mismatch
    return float(value)


def _numeric(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (Decimal, int)):
        raise _Mismatch
    text = format(Decimal(value), "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


def _boolean(value: Any) -> bool:
    if not isinstance(value, bool):
        raise _Mismatch
    return value


def _timestamp(value: Any) -> str:
    if not isinstance(value, dt.datetime):
        raise _Mismatch
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat()


def _datetime(value: Any) -> str:
    if not isinstance(value, dt.datetime):
        raise _Mismatch
    return value.isoformat()


def _date(value: Any) -> str:
    if isinstance(value, dt.datetime) or not isinstance(value, dt.date):
        raise _Mismatch
    return value.isoformat()


def _time(value: Any) -> str:
    if not isinstance(value, dt.time):
        raise _Mismatch
    return value.isoformat()


def _interval(value: Any) -> str:
    if isinstance(value, str):
        return value
    # dateutil.relativedelta, as returned by the client library
    try:
        years, months, days = value.years, value.months, value.days
        hours, minutes, seconds = value.hours, value.minutes, value.seconds
        micros = value.microseconds
    except AttributeError:
        raise _Mismatch from None
    frac = f".{abs(micros):06d}" if micros else ""
    return f"{years}-{months} {days} {hours}:{minutes}:{seconds}{frac}"


def _json_value(value: Any) -> Any:
    # Backends hand JSON columns over already decoded.
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, dict):
        return {str(k): _json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_value(v) for v in value]
    raise _Mismatch


_SCALARS: dict[str, Callable[[Any], Any]] = {
    "STRING": _string,
    "GEOGRAPHY": _string,
    "BYTES": _bytes,
    "INTEGER": _integer,
    "INT64": _integer,
    "FLOAT": _float,
    "FLOAT64": _float,
    "NUMERIC": _numeric,
    "BIGNUMERIC": _numeric,
    "BOOLEAN": _boolean,
    "BOOL": _boolean,
    "TIMESTAMP": _timestamp,
    "DATETIME": _datetime,
    "DATE": _date,
    "TIME": _time,
    "INTERVAL": _interval,
    "JSON": _json_value,
}

_RECORD_TYPES = frozenset({"RECORD", "STRUCT"})


# ── public API ──────────────────────────────────────────────────────


def normalize_row(columns: Sequence[ColumnSchema], values: Sequence[Any]) -> dict[str, Any]:
    """Return one row as a mapping whose keys follow the declared column order."""
    if len(columns) != len(values):
        raise NormalizationError(
            f"Row has {len(values)} values for {len(columns)} declared columns",
            column="",
            type_name="ROW",
        )
    return {col.name: normalize_value(col, value) for col, value in zip(columns, values)}


def normalize_rows(
    columns: Sequence[ColumnSchema], rows: Sequence[Sequence[Any]]
) -> list[dict[str, Any]]:
    return [normalize_row(columns, row) for row in rows]


def normalize_value(column: ColumnSchema, value: Any, path: str = "") -> Any:
    name = f"{path}.{column.name}" if path else column.name
    if value is None:
        return None
    if column.repeated:
        if not isinstance(value, (list, tuple)):
            _fail(name, f"REPEATED {column.field_type}", value)
        element = column.model_copy(update={"mode": "NULLABLE"})
        return [normalize_value(element, item, path) for item in value]
    return _normalize_single(column, value, name)


def _normalize_single(column: ColumnSchema, value: Any, name: str) -> Any:
    field_type = column.field_type.upper()

    if field_type in _RECORD_TYPES:
        if not isinstance(value, dict):
            _fail(name, field_type, value)
        return {
            sub.name: normalize_value(sub, value.get(sub.name), name)
            for sub in column.fields
        }

    if field_type == "RANGE":
        if not isinstance(value, dict):
            _fail(name, field_type, value)
        bound = ColumnSchema(name="bound", field_type=column.range_element_type or "")
        return {
            key: None if value.get(key) is None else _normalize_single(bound, value[key], f"{name}.{key}")
            for key in ("start", "end")
        }

    convert = _SCALARS.get(field_type)
    if convert is None:
        logger.error("No generic mapping for column %r of type %s", name, field_type)
        raise NormalizationError(
            f"Column '{name}' has unsupported type {field_type}",
            column=name,
            type_name=field_type,
        )
    try:
        return convert(value)
    except _Mismatch:
        _fail(name, field_type, value)


def _fail(name: str, type_name: str, value: Any) -> None:
    logger.error(
        "Column %r declared %s holds a %s value", name, type_name, type(value).__name__
    )
    raise NormalizationError(
        f"Column '{name}' declared {type_name} holds a {type(value).__name__} value",
        column=name,
        type_name=type_name,
    )
