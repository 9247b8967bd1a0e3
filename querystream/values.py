"""
Row value typing for querystream.

Row values arrive from the driver as plain Python objects. Each one is
classified into a closed set of scalar kinds, and JSON conversion dispatches
on that kind. Anything the driver hands back outside this set is rejected
with UnsupportedValueError instead of being stringified blindly.

Conversions:
    null       -> null
    boolean    -> true / false
    integer    -> number
    float      -> number ("NaN", "Infinity", "-Infinity" as strings)
    decimal    -> string with the exact digits
    text       -> string
    bytes      -> base64 string
    date, time, timestamp -> ISO 8601 string
    interval   -> total seconds as a number
    uuid       -> canonical string
    array      -> list of converted elements
    json       -> object with converted values
    range      -> {"lower", "upper", "bounds", "empty"} object
"""

import base64
import math
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Sequence

from psycopg2.extras import Range


class UnsupportedValueError(TypeError):
    """The driver produced a value outside the known scalar kinds."""

    def __init__(self, value: Any):
        super().__init__(f"Unsupported value of type {type(value).__name__}")
        self.value = value


class ScalarKind(str, Enum):
    """Every kind of value a row cell can hold."""
    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    TEXT = "text"
    BYTES = "bytes"
    DATE = "date"
    TIME = "time"
    TIMESTAMP = "timestamp"
    INTERVAL = "interval"
    UUID = "uuid"
    ARRAY = "array"
    JSON = "json"
    RANGE = "range"


def classify(value: Any) -> ScalarKind:
    """Return the scalar kind of a driver value."""
    if value is None:
        return ScalarKind.NULL
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return ScalarKind.BOOLEAN
    if isinstance(value, int):
        return ScalarKind.INTEGER
    if isinstance(value, float):
        return ScalarKind.FLOAT
    if isinstance(value, Decimal):
        return ScalarKind.DECIMAL
    if isinstance(value, str):
        return ScalarKind.TEXT
    if isinstance(value, (bytes, bytearray, memoryview)):
        return ScalarKind.BYTES
    # datetime before date: datetime is a date subclass
    if isinstance(value, datetime):
        return ScalarKind.TIMESTAMP
    if isinstance(value, date):
        return ScalarKind.DATE
    if isinstance(value, time):
        return ScalarKind.TIME
    if isinstance(value, timedelta):
        return ScalarKind.INTERVAL
    if isinstance(value, uuid.UUID):
        return ScalarKind.UUID
    if isinstance(value, (list, tuple)):
        return ScalarKind.ARRAY
    if isinstance(value, dict):
        return ScalarKind.JSON
    if isinstance(value, Range):
        return ScalarKind.RANGE
    raise UnsupportedValueError(value)


def _float(value: float):
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    return value


def _decimal(value: Decimal) -> str:
    if value.is_nan():
        return "NaN"
    if value.is_infinite():
        return "Infinity" if value > 0 else "-Infinity"
    return str(value)


def _bytes(value) -> str:
    return base64.b64encode(bytes(value)).decode("ascii")


def _array(value: Sequence[Any]) -> list:
    return [to_json_value(item) for item in value]


def _json(value: Dict[Any, Any]) -> dict:
    return {str(key): to_json_value(item) for key, item in value.items()}


def _range(value: Range) -> dict:
    if value.isempty:
        return {"lower": None, "upper": None, "bounds": None, "empty": True}
    return {
        "lower": to_json_value(value.lower),
        "upper": to_json_value(value.upper),
        "bounds": ("[" if value.lower_inc else "(") + ("]" if value.upper_inc else ")"),
        "empty": False,
    }


_CONVERTERS: Dict[ScalarKind, Callable[[Any], Any]] = {
    ScalarKind.NULL: lambda value: None,
    ScalarKind.BOOLEAN: bool,
    ScalarKind.INTEGER: int,
    ScalarKind.FLOAT: _float,
    ScalarKind.DECIMAL: _decimal,
    ScalarKind.TEXT: str,
    ScalarKind.BYTES: _bytes,
    ScalarKind.DATE: lambda value: value.isoformat(),
    ScalarKind.TIME: lambda value: value.isoformat(),
    ScalarKind.TIMESTAMP: lambda value: value.isoformat(),
    ScalarKind.INTERVAL: lambda value: value.total_seconds(),
    ScalarKind.UUID: str,
    ScalarKind.ARRAY: _array,
    ScalarKind.JSON: _json,
    ScalarKind.RANGE: _range,
}


def to_json_value(value: Any) -> Any:
    """Convert one driver value into a JSON-serializable value."""
    return _CONVERTERS[classify(value)](value)


def row_to_json(row: Sequence[Any]) -> list:
    """Convert a row tuple into a JSON array, preserving column order."""
    return [to_json_value(value) for value in row]
