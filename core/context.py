"""
Request-scoped context objects for core services.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import contextvars

from core.errors import ValidationIssue


@dataclass(frozen=True)
class AuthContext:
    owner_id: Optional[str] = None
    actor: Optional[str] = None


@dataclass(frozen=True)
class RequestContext:
    auth: AuthContext
    request_id: Optional[str] = None
    source: Optional[str] = None


_CURRENT_REQUEST_CONTEXT: contextvars.ContextVar[Optional["RequestContext"]] = contextvars.ContextVar(
    "trainergate_request_context",
    default=None,
)


def get_current_request_context() -> Optional["RequestContext"]:
    return _CURRENT_REQUEST_CONTEXT.get()


def set_current_request_context(context: Optional["RequestContext"]) -> contextvars.Token:
    return _CURRENT_REQUEST_CONTEXT.set(context)


def reset_current_request_context(token: contextvars.Token) -> None:
    _CURRENT_REQUEST_CONTEXT.reset(token)


def owner_context(owner_id: str, actor: Optional[str] = None, **kwargs) -> RequestContext:
    return RequestContext(auth=AuthContext(owner_id=owner_id, actor=actor or "user"), **kwargs)


def resolve_owner_id(context: Optional["RequestContext"]) -> str:
    """Return the trusted owner identity for this call.

    Falls back to the request context bound to the current task.
    """
    if context is None:
        context = get_current_request_context()
    owner_id = context.auth.owner_id if context and context.auth else None
    if not owner_id or not str(owner_id).strip():
        raise ValidationIssue(
            "owner_id is required for this operation",
            field="owner_id",
            error_type="required",
        )
    return str(owner_id).strip()


def resolve_actor(context: Optional["RequestContext"]) -> str:
    if context is None:
        context = get_current_request_context()
    if context and context.auth and context.auth.actor:
        return context.auth.actor
    return "user"


__all__ = [
    "AuthContext",
    "RequestContext",
    "get_current_request_context",
    "set_current_request_context",
    "reset_current_request_context",
    "owner_context",
    "resolve_owner_id",
    "resolve_actor",
]
