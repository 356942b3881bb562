"""
Shared validation helpers for TrainerGate services.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Optional, Sequence

from core.config import (
    DB_BACKEND_EFFECTIVE,
    MAX_METADATA_BYTES,
    MAX_PAYLOAD_BYTES,
)
from core.errors import ValidationIssue


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_positive_int(value, field: str, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    floor = 0 if allow_zero else 1
    if value < floor:
        raise ValidationIssue(
            f"{field} must be {'non-negative' if allow_zero else 'a positive integer'}",
            field=field,
            error_type="out_of_range",
        )
    return value


def validate_list(values: Optional[Sequence], field: str, max_items: int) -> None:
    if values is None:
        return
    if len(values) > max_items:
        raise ValidationIssue(f"{field} exceeds max items {max_items}", field=field, error_type="max_items")


def _json_size(value, field: str) -> int:
    try:
        return len(json.dumps(value))
    except (TypeError, ValueError) as exc:
        raise ValidationIssue(f"{field} must be JSON-serializable", field=field, error_type="invalid_type") from exc


def validate_metadata(metadata: Optional[dict], field: str) -> None:
    if metadata is None:
        return
    if not isinstance(metadata, dict):
        raise ValidationIssue(f"{field} must be an object", field=field, error_type="invalid_type")
    if _json_size(metadata, field) > MAX_METADATA_BYTES:
        raise ValidationIssue(
            f"{field} exceeds max size {MAX_METADATA_BYTES} bytes",
            field=field,
            error_type="max_bytes",
        )


def validate_json_document(document, field: str) -> None:
    if not isinstance(document, dict):
        raise ValidationIssue(f"{field} must be a JSON object", field=field, error_type="invalid_type")
    if _json_size(document, field) > MAX_PAYLOAD_BYTES:
        raise ValidationIssue(
            f"{field} exceeds max size {MAX_PAYLOAD_BYTES} bytes",
            field=field,
            error_type="max_bytes",
        )


def validate_uuid(value, field: str):
    """Normalize an id to the column representation for the active backend."""
    if isinstance(value, uuid.UUID):
        parsed = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise ValidationIssue(f"{field} is required", field=field, error_type="required")
        try:
            parsed = uuid.UUID(value.strip())
        except ValueError as exc:
            raise ValidationIssue(
                f"{field} must be a valid UUID",
                field=field,
                error_type="invalid_id",
            ) from exc
    return parsed if DB_BACKEND_EFFECTIVE == "postgres" else str(parsed)


def parse_timestamp(value, field: str = "timestamp") -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationIssue(
            f"{field} must be an ISO 8601 string",
            field=field,
            error_type="invalid_type",
        )
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationIssue(
            f"{field} must be ISO 8601 format",
            field=field,
            error_type="invalid_value",
        ) from exc


def issue_from_pydantic(exc, field_prefix: str) -> ValidationIssue:
    """Collapse a pydantic ValidationError into a single ValidationIssue."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = ".".join(str(part) for part in first.get("loc", ()))
    field = f"{field_prefix}.{loc}" if loc else field_prefix
    message = first.get("msg", "invalid value")
    return ValidationIssue(
        f"{field}: {message}",
        field=field,
        error_type=first.get("type", "invalid"),
        data={"errors": [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
            for err in errors
        ]},
    )
