"""JSON serialization utilities."""

from __future__ import annotations

import dataclasses
import datetime
import decimal
import enum
from pathlib import PurePath


def json_default(obj: object) -> object:
    """``default=`` hook for ``json.dumps`` over audit and CLI payloads."""
    if isinstance(obj, (datetime.date, datetime.datetime)):
        return obj.isoformat()
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, decimal.Decimal):
        return int(obj) if obj == obj.to_integral_value() else str(obj)
    if isinstance(obj, PurePath):
        return str(obj)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return sorted(obj, key=str) if isinstance(obj, (set, frozenset)) else list(obj)
    return str(obj)
