"""
Shared helpers and configuration for TrainerGate services.
"""

from __future__ import annotations

from datetime import datetime, timezone
from functools import wraps
from typing import Callable, Optional

from sqlalchemy.exc import OperationalError

import core.config as config
from core.errors import StorageError, ValidationIssue
from core.validators import (
    validate_required_text as _validate_required_text,
    validate_optional_text as _validate_optional_text,
    validate_limit as _validate_limit,
    validate_positive_int as _validate_positive_int,
    validate_list as _validate_list,
    validate_metadata as _validate_metadata,
    validate_json_document as _validate_json_document,
    validate_uuid as _validate_uuid,
    parse_timestamp as _parse_timestamp,
)

# =============================================================================
# Configuration
# =============================================================================

logger = config.logger

MAX_RESULT_LIMIT = config.MAX_RESULT_LIMIT
MAX_TEXT_LENGTH = config.MAX_TEXT_LENGTH
MAX_SHORT_TEXT_LENGTH = config.MAX_SHORT_TEXT_LENGTH
MAX_LIST_ITEMS = config.MAX_LIST_ITEMS
APPEND_RETRY_MAX = config.APPEND_RETRY_MAX


# =============================================================================
# Helper Functions
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Drop tzinfo after converting to UTC; postgres returns aware values, sqlite naive."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _enum_value(value) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


def _tool_error_payload(tool_name: str, exc: ValidationIssue) -> dict:
    payload = {
        "status": "error",
        "error_type": "validation_error",
        "tool": tool_name,
        "field": exc.field,
        "issue_type": exc.error_type,
        "message": str(exc),
    }
    if exc.error_code:
        payload["error_code"] = exc.error_code
    if exc.data:
        payload["data"] = exc.data
    return payload


def _log_validation_issue(tool_name: str, exc: ValidationIssue, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def _tool_error_handler(fn: Callable[..., dict]) -> Callable[..., dict]:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except ValueError as exc:
            issue = ValidationIssue(str(exc), field="unknown", error_type="value_error")
            _log_validation_issue(fn.__name__, issue, warn=True)
            return _tool_error_payload(fn.__name__, issue)
        except OperationalError as exc:
            logger.warning(f"{fn.__name__}: storage failure: {exc.orig!r}")
            raise StorageError(f"{fn.__name__}: storage unavailable") from exc
    return wrapper


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    return _tool_error_handler(fn)


def raise_for_error_payload(result: dict) -> dict:
    """Re-raise a service_tool error payload as ValidationIssue.

    Used where one service composes another and must not continue past a
    rejected input.
    """
    if isinstance(result, dict) and result.get("status") == "error":
        raise ValidationIssue(
            result.get("message", "invalid input"),
            field=result.get("field", "unknown"),
            error_type=result.get("issue_type") or result.get("error_type", "invalid"),
            error_code=result.get("error_code"),
            data=result.get("data"),
        )
    return result


__all__ = [
    "logger",
    "service_tool",
    "raise_for_error_payload",
    "_iso",
    "_enum_value",
    "_utc_naive",
    "_validate_required_text",
    "_validate_optional_text",
    "_validate_limit",
    "_validate_positive_int",
    "_validate_list",
    "_validate_metadata",
    "_validate_json_document",
    "_validate_uuid",
    "_parse_timestamp",
    "MAX_RESULT_LIMIT",
    "MAX_TEXT_LENGTH",
    "MAX_SHORT_TEXT_LENGTH",
    "MAX_LIST_ITEMS",
    "APPEND_RETRY_MAX",
]
