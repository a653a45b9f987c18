"""JSON tagging for values JSON cannot carry natively.

``datetime``, ``date`` and ``Decimal`` values are written as single-key
objects (``{"$dt": "..."}``, ``{"$date": "..."}``, ``{"$dec": "..."}``) so
they come back with their original type.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any


def to_json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$dt": value.isoformat()}
    if isinstance(value, date):
        return {"$date": value.isoformat()}
    if isinstance(value, Decimal):
        return {"$dec": str(value)}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    return value


def from_json_value(value: Any) -> Any:
    """Inverse of ``to_json_value``.

    Raises:
        ValueError: For a tagged object with an unknown tag or a bad payload
    """
    if isinstance(value, dict):
        if "$dt" in value:
            return datetime.fromisoformat(value["$dt"])
        if "$date" in value:
            return date.fromisoformat(value["$date"])
        if "$dec" in value:
            return Decimal(value["$dec"])
        raise ValueError(f"Unknown tagged value: {sorted(value)}")
    if isinstance(value, list):
        return [from_json_value(v) for v in value]
    return value
