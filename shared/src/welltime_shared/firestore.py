"""Firestore serialization helpers.

Handles conversion between Python snake_case and Firestore camelCase.
"""

import re
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


def to_camel(string: str) -> str:
    """Convert snake_case to camelCase."""
    components = string.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


def to_snake(string: str) -> str:
    """Convert camelCase to snake_case."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", string).lower()


def model_to_firestore(model: BaseModel) -> dict[str, Any]:
    """Convert a pydantic model to Firestore document format.

    - Converts field names from snake_case to camelCase
    - Keeps datetimes as native Firestore timestamps
    - Stores calendar dates as YYYY-MM-DD strings
    - Converts enums to their string values and tuples/sets to lists
    """
    data = model.model_dump(mode="python")
    return _convert_keys_to_camel(data)


def _convert_value(value: Any) -> Any:
    if isinstance(value, dict):
        return _convert_keys_to_camel(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        value = sorted(value)
    if isinstance(value, (list, tuple)):
        return [_convert_value(item) for item in value]
    return value


def _convert_keys_to_camel(data: dict[str, Any]) -> dict[str, Any]:
    return {to_camel(key): _convert_value(value) for key, value in data.items()}


def firestore_to_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Convert Firestore document to snake_case dict for pydantic parsing."""
    return _convert_keys_to_snake(data)


def _convert_keys_to_snake(data: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in data.items():
        snake_key = to_snake(key)
        if isinstance(value, dict):
            result[snake_key] = _convert_keys_to_snake(value)
        else:
            result[snake_key] = value
    return result


def document_id(*parts: object) -> str:
    """Build a deterministic document id for a keyed row.

    Firestore ids may not contain "/", so it is replaced.
    """
    return "_".join(str(part).replace("/", "-") for part in parts)
