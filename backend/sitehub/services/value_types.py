"""Value type inference and typed coercion for EAV attribute values.

Shapefile fields arrive untyped. The first non-empty sample of a field picks
its storage type with this precedence:

    boolean            -> "int" (stored as 0/1)
    integer            -> "int"
    float or decimal   -> "num" (even when whole, e.g. 100.0)
    "YYYY-MM-DD..." string that is a real date -> "ts"
    anything else      -> "txt"

Once a type is fixed, every value of the field is coerced into exactly one
of the tagged variants below (IntValue, NumValue, TxtValue, TsValue), which
maps onto exactly one typed column of ``sat_site_attributes``. Numbers are
read leniently from their leading digits, so ``"12abc"`` is 12 and an int
attribute truncates ``12.75`` to 12. Values with no usable number or date
coerce to None and are dropped.
"""

from __future__ import annotations

import dataclasses
import datetime
import decimal
import numbers
import re
from typing import Any

from sitehub.db import models as db_models

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")
_INT_PREFIX = re.compile(r"\s*[+-]?\d+")
_NUMBER_PREFIX = re.compile(r"\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")

AttributeColumns = tuple[
    str | None, int | None, decimal.Decimal | None, datetime.datetime | None
]


@dataclasses.dataclass(frozen=True)
class IntValue:
    value: int


@dataclasses.dataclass(frozen=True)
class NumValue:
    value: decimal.Decimal


@dataclasses.dataclass(frozen=True)
class TxtValue:
    value: str


@dataclasses.dataclass(frozen=True)
class TsValue:
    value: datetime.datetime


TypedValue = IntValue | NumValue | TxtValue | TsValue


def is_empty(value: Any) -> bool:
    """True for the values that never produce an attribute row."""
    return value is None or value == ""


def _leading_date(text: str) -> datetime.date | None:
    if not _DATE_PREFIX.match(text):
        return None
    try:
        return datetime.date.fromisoformat(text[:10])
    except ValueError:
        return None


def infer_value_type(value: Any) -> db_models.ValueType | None:
    """Infer the storage type for a field from one sample value.

    Args:
        value: A raw property value from a decoded feature.

    Returns:
        One of "int", "num", "ts", "txt", or None for an empty sample.
    """
    if is_empty(value):
        return None
    if isinstance(value, bool):
        return "int"
    if isinstance(value, numbers.Integral):
        return "int"
    if isinstance(value, numbers.Real | decimal.Decimal):
        return "num"
    if isinstance(value, datetime.date):
        return "ts"
    if isinstance(value, str) and _leading_date(value) is not None:
        return "ts"
    return "txt"


def _to_decimal(value: Any) -> decimal.Decimal | None:
    if isinstance(value, bool):
        return decimal.Decimal(int(value))
    if isinstance(value, numbers.Real | decimal.Decimal):
        try:
            number = decimal.Decimal(str(value))
        except decimal.InvalidOperation:
            return None
    elif isinstance(value, str):
        match = _NUMBER_PREFIX.match(value)
        if match is None:
            return None
        number = decimal.Decimal(match.group().strip())
    else:
        return None
    return number if number.is_finite() else None


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool | numbers.Integral):
        return int(value)
    if isinstance(value, str):
        match = _INT_PREFIX.match(value)
        return int(match.group()) if match else None
    number = _to_decimal(value)
    # truncates toward zero
    return int(number) if number is not None else None


def _to_timestamp(value: Any) -> datetime.datetime | None:
    if isinstance(value, datetime.datetime):
        moment = value
    elif isinstance(value, datetime.date):
        moment = datetime.datetime.combine(value, datetime.time())
    elif isinstance(value, str):
        text = value.strip()
        try:
            moment = datetime.datetime.fromisoformat(text)
        except ValueError:
            day = _leading_date(text)
            if day is None:
                return None
            moment = datetime.datetime.combine(day, datetime.time())
    else:
        return None

    if moment.tzinfo is not None:
        moment = moment.astimezone(datetime.UTC).replace(tzinfo=None)
    return moment


def coerce_value(
    value: Any,
    value_type: db_models.ValueType,
) -> TypedValue | None:
    """Parse ``value`` under ``value_type``.

    Returns:
        The tagged value, or None when the value is empty, doesn't parse,
        or the type isn't stored in the generic value table.
    """
    if is_empty(value):
        return None
    if value_type == "int":
        number = _to_int(value)
        return IntValue(number) if number is not None else None
    if value_type == "num":
        decimal_value = _to_decimal(value)
        return NumValue(decimal_value) if decimal_value is not None else None
    if value_type == "ts":
        moment = _to_timestamp(value)
        return TsValue(moment) if moment is not None else None
    if value_type == "txt":
        return TxtValue(value if isinstance(value, str) else str(value))
    return None


def to_columns(typed: TypedValue) -> AttributeColumns:
    """Spread a tagged value over (text, int, number, ts) columns.

    Exactly one element of the result is not None.
    """
    match typed:
        case IntValue(value):
            return (None, value, None, None)
        case NumValue(value):
            return (None, None, value, None)
        case TsValue(value):
            return (None, None, None, value)
        case TxtValue(value):
            return (value, None, None, None)
    raise TypeError(f"Unsupported typed value: {typed!r}")


def format_value(value_type: str, raw: Any) -> str | None:
    """Render a stored value for display; None for missing values."""
    if raw is None:
        return None
    if value_type == "ts" and isinstance(raw, datetime.date):
        return (
            raw.date().isoformat()
            if isinstance(raw, datetime.datetime)
            else raw.isoformat()
        )
    if isinstance(raw, decimal.Decimal):
        return format(raw, "f")
    text = str(raw)
    return text or None
