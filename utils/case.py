"""
Shared case conversion and value encoding for API responses.
Uses Pydantic's alias_generators for consistency with schema validation.
Money leaves the API as fixed-scale decimal strings so clients never see float rounding.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic.alias_generators import to_camel


def to_camel_key(s: str) -> str:
    """Convert a single snake_case key to camelCase (first letter lower)."""
    return to_camel(s)


def encode_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def dict_keys_to_camel(obj: Any) -> Any:
    """Recursively convert dict keys to camelCase and encode Decimal/datetime values for JSON."""
    if isinstance(obj, dict):
        return {to_camel_key(k): dict_keys_to_camel(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [dict_keys_to_camel(x) for x in obj]
    return encode_value(obj)


def money(value: Optional[Decimal]) -> Optional[str]:
    """Two-place string for a persisted money value."""
    if value is None:
        return None
    return format(Decimal(value).quantize(Decimal("0.01")), "f")
