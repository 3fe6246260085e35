from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .exceptions import ValidationError


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Request-body policy for a model:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required when partial=False
    """
    writable_fields: set[str]
    required_on_create: set[str] | None = None


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    return {c.key: c for c in model.__mapper__.columns}


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for JSON input.

    ints pass; plain digit strings are converted; bools, floats, decimals and
    scientific notation are rejected so amounts never go through binary floats.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def _coerce_value(col, value: Any):
    if value is None:
        return None
    coltype = col.type
    if isinstance(coltype, Integer):
        return coerce_int(value, col.key)
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be true or false")
    if isinstance(coltype, (String, Text)):
        return str(value).strip()
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against SQLAlchemy column metadata
    (nullable, type, String length) and the policy allowlist.

    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(f for f in (policy.required_on_create or set()) if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)
    for key in payload:
        if key not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {key}")
        if key not in cols:
            raise ValidationError(f"Unknown field: {key}")

    patch: dict = {}
    for key, raw in payload.items():
        col = cols[key]
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{key} cannot be null")
            patch[key] = None
            continue

        val = _coerce_value(col, raw)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{key} exceeds max length {col.type.length}")
        patch[key] = val

    return patch


def require_fields(payload: dict, *names: str) -> None:
    missing = [n for n in names if payload.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def optional_str(payload: dict, key: str, max_len: int | None = None) -> str | None:
    raw = payload.get(key)
    if raw is None:
        return None
    value = str(raw).strip()
    if not value:
        return None
    if max_len is not None and len(value) > max_len:
        raise ValidationError(f"{key} exceeds max length {max_len}")
    return value


def optional_timeout(payload: dict) -> float | None:
    """Per-request deadline in seconds ("timeout"), bounded to (0, 60]."""
    raw = payload.get("timeout")
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValidationError("timeout must be a number of seconds")
    if not 0 < raw <= 60:
        raise ValidationError("timeout must be between 0 and 60 seconds")
    return float(raw)
