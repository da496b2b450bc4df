from __future__ import annotations

from typing import Any

from .services.exceptions import ValidationError


# Maximum price: 9,999,999.99 (999,999,999 cents)
# Guards against overflow and nonsensical prices
MAX_PRICE_CENTS = 999_999_999


def require_json_object(payload: Any) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("JSON object body required")
    return payload


def coerce_int(name: str, value: Any, *, required: bool = True, minimum: int | None = None) -> int | None:
    """
    Strict integer coercion for JSON input.

    Accepts ints and plain-digit strings. Rejects bools, floats, decimals
    and scientific notation ("1e3").
    """
    if value is None:
        if required:
            raise ValidationError(f"{name} is required")
        return None

    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    else:
        raise ValidationError(f"{name} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{name} must be >= {minimum}")
    return result


def coerce_str(name: str, value: Any, *, required: bool = True, max_length: int | None = None) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{name} is required")
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValidationError(f"{name} must be a string")
    text = str(value).strip()
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{name} must be at most {max_length} characters")
    return text


def coerce_list(name: str, value: Any, *, required: bool = True) -> list:
    if value is None:
        if required:
            raise ValidationError(f"{name} is required")
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{name} must be a list")
    if required and not value:
        raise ValidationError(f"{name} must not be empty")
    return value
