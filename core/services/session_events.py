"""
Session event store.

Each session owns an append-only, gap-free stream of events numbered
1..N. Sequence numbers are assigned here, never by callers:
- the session row is locked (FOR UPDATE where the backend supports it) and
  touched before the next number is read, so writers to one session queue
  behind each other;
- the (session_id, sequence_number) unique constraint backs that up, and a
  collision is retried with a fresh number.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from core.context import RequestContext, resolve_owner_id
from core.db import DB
from core.errors import ConflictError, NotFoundError, StorageError, ValidationIssue
from core.models import AgentSession, EventType, SessionEvent, SessionStatus
from core.schemas import parse_event_type, validate_event_payload
from core.services.shared import (
    _enum_value,
    _iso,
    _validate_limit,
    _validate_metadata,
    _validate_optional_text,
    _validate_positive_int,
    _validate_required_text,
    _validate_uuid,
    APPEND_RETRY_MAX,
    MAX_RESULT_LIMIT,
    MAX_SHORT_TEXT_LENGTH,
    MAX_TEXT_LENGTH,
    logger,
    service_tool,
)
import core.config as config

SESSION_KINDS = {"chat", "intake", "assessment", "goals", "program", "workout"}


def _serialize_session(row: AgentSession) -> dict:
    return {
        "id": str(row.id),
        "owner_id": row.owner_id,
        "kind": row.kind,
        "status": _enum_value(row.status),
        "context_start_sequence": row.context_start_sequence,
        "metadata": row.metadata_ or {},
        "total_tokens": row.total_tokens or 0,
        "cached_tokens": row.cached_tokens or 0,
        "total_cost_cents": row.total_cost_cents or 0.0,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
        "ended_at": _iso(row.ended_at),
    }


def _serialize_event(row: SessionEvent) -> dict:
    return {
        "id": str(row.id),
        "session_id": str(row.session_id),
        "sequence_number": row.sequence_number,
        "event_type": _enum_value(row.event_type),
        "timestamp": _iso(row.timestamp),
        "duration_ms": row.duration_ms,
        "data": row.data,
    }


def _validate_kind(kind: str) -> str:
    _validate_required_text(kind, "kind", MAX_SHORT_TEXT_LENGTH)
    normalized = kind.strip().lower()
    if normalized not in SESSION_KINDS:
        raise ValidationIssue(
            f"kind must be one of: {'|'.join(sorted(SESSION_KINDS))}",
            field="kind",
            error_type="invalid_value",
        )
    return normalized


def _parse_event_types(event_types: Optional[Iterable]) -> Optional[list[EventType]]:
    if event_types is None:
        return None
    return [parse_event_type(value) for value in event_types]


def _require_session(db, owner_id: str, session_id, *, for_update: bool = False) -> AgentSession:
    """Get an owner's session or raise NotFoundError."""
    query = (
        db.query(AgentSession)
        .filter(AgentSession.owner_id == owner_id)
        .filter(AgentSession.id == session_id)
    )
    if for_update:
        query = query.with_for_update()
    row = query.first()
    if not row:
        raise NotFoundError(f"Session not found: {session_id}", resource="session", resource_id=str(session_id))
    return row


def _require_writable(row: AgentSession) -> None:
    if row.status != SessionStatus.active:
        raise ConflictError(
            f"Session {row.id} is {_enum_value(row.status)}; start a new session to continue",
            error_code="session_closed",
            data={"session_id": str(row.id), "status": _enum_value(row.status)},
        )


def _next_sequence(db, session_id) -> int:
    current = (
        db.query(func.max(SessionEvent.sequence_number))
        .filter(SessionEvent.session_id == session_id)
        .scalar()
    )
    return (current or 0) + 1


def _insert_event(
    db,
    session_row: AgentSession,
    event_type: EventType,
    data: dict,
    duration_ms: Optional[int] = None,
) -> SessionEvent:
    """Append one event inside the caller's transaction.

    The caller holds the session row (locked or freshly written) so no
    other writer can take the same number before commit.
    """
    _require_writable(session_row)
    now = datetime.utcnow()
    session_row.updated_at = now
    db.flush()
    row = SessionEvent(
        session_id=session_row.id,
        sequence_number=_next_sequence(db, session_row.id),
        event_type=event_type,
        timestamp=now,
        duration_ms=duration_ms,
        data=data,
    )
    db.add(row)
    db.flush()
    return row


def append_event_locked(
    db,
    owner_id: str,
    session_id,
    event_type,
    payload: dict,
    duration_ms: Optional[int] = None,
) -> SessionEvent:
    """Validate and append within an open transaction owned by another service."""
    event_type = parse_event_type(event_type)
    data = validate_event_payload(event_type, payload)
    session_row = _require_session(db, owner_id, session_id, for_update=True)
    return _insert_event(db, session_row, event_type, data, duration_ms)


@service_tool
def create_session(
    kind: str = "chat",
    metadata: Optional[dict] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Create a new active session for the caller."""
    kind = _validate_kind(kind)
    _validate_metadata(metadata, "metadata")
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        now = datetime.utcnow()
        row = AgentSession(
            owner_id=owner_id,
            kind=kind,
            status=SessionStatus.active,
            context_start_sequence=0,
            metadata_=metadata or {},
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        logger.info(f"Created {kind} session {row.id}")
        return {"status": "created", "session": _serialize_session(row)}
    finally:
        db.close()


@service_tool
def get_or_create_session(
    kind: str = "chat",
    metadata: Optional[dict] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Return the caller's most recent active session of a kind, creating one if none."""
    kind = _validate_kind(kind)
    _validate_metadata(metadata, "metadata")
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        row = (
            db.query(AgentSession)
            .filter(AgentSession.owner_id == owner_id)
            .filter(AgentSession.kind == kind)
            .filter(AgentSession.status == SessionStatus.active)
            .order_by(AgentSession.created_at.desc())
            .first()
        )
        if row:
            return {"status": "ok", "session": _serialize_session(row)}
    finally:
        db.close()
    return create_session(kind=kind, metadata=metadata, context=context)


@service_tool
def get_session(
    session_id: str,
    context: Optional[RequestContext] = None,
) -> dict:
    owner_id = resolve_owner_id(context)
    session_key = _validate_uuid(session_id, "session_id")

    db = DB.SessionLocal()
    try:
        row = _require_session(db, owner_id, session_key)
        return {"status": "ok", "session": _serialize_session(row)}
    finally:
        db.close()


@service_tool
def list_sessions(
    kind: Optional[str] = None,
    limit: Optional[int] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """List the caller's sessions, newest first."""
    limit = config.DEFAULT_SESSION_LIST_LIMIT if limit is None else limit
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)
    owner_id = resolve_owner_id(context)
    kind_value = _validate_kind(kind) if kind is not None else None

    db = DB.SessionLocal()
    try:
        query = db.query(AgentSession).filter(AgentSession.owner_id == owner_id)
        if kind_value:
            query = query.filter(AgentSession.kind == kind_value)
        rows = query.order_by(AgentSession.created_at.desc()).limit(limit).all()
        return {
            "status": "ok",
            "count": len(rows),
            "sessions": [_serialize_session(row) for row in rows],
        }
    finally:
        db.close()


@service_tool
def append_event(
    session_id: str,
    event_type: str,
    payload: dict,
    duration_ms: Optional[int] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Append one event and return its store-assigned sequence number."""
    event_type = parse_event_type(event_type)
    data = validate_event_payload(event_type, payload)
    if duration_ms is not None:
        _validate_positive_int(duration_ms, "duration_ms", allow_zero=True)
    owner_id = resolve_owner_id(context)
    session_key = _validate_uuid(session_id, "session_id")

    for attempt in range(APPEND_RETRY_MAX):
        db = DB.SessionLocal()
        try:
            session_row = _require_session(db, owner_id, session_key, for_update=True)
            row = _insert_event(db, session_row, event_type, data, duration_ms)
            db.commit()
            return {
                "status": "appended",
                "sequence_number": row.sequence_number,
                "event": _serialize_event(row),
            }
        except IntegrityError:
            db.rollback()
            logger.info(
                f"Sequence collision on session {session_key} (attempt {attempt + 1}/{APPEND_RETRY_MAX})"
            )
        finally:
            db.close()

    raise StorageError(f"Could not append to session {session_key} after {APPEND_RETRY_MAX} attempts")


@service_tool
def read_range(
    session_id: str,
    from_sequence: int = 1,
    event_types: Optional[list[str]] = None,
    limit: Optional[int] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Events with sequence_number >= from_sequence, ascending."""
    _validate_positive_int(from_sequence, "from_sequence", allow_zero=True)
    if limit is not None:
        _validate_limit(limit, "limit", MAX_RESULT_LIMIT)
    types = _parse_event_types(event_types)
    owner_id = resolve_owner_id(context)
    session_key = _validate_uuid(session_id, "session_id")

    db = DB.SessionLocal()
    try:
        _require_session(db, owner_id, session_key)
        rows = _query_events(db, session_key, from_sequence, types, limit)
        return {
            "status": "ok",
            "session_id": str(session_key),
            "from_sequence": from_sequence,
            "count": len(rows),
            "events": [_serialize_event(row) for row in rows],
        }
    finally:
        db.close()


def _query_events(db, session_id, from_sequence: int, types, limit: Optional[int] = None) -> list[SessionEvent]:
    query = (
        db.query(SessionEvent)
        .filter(SessionEvent.session_id == session_id)
        .filter(SessionEvent.sequence_number >= from_sequence)
    )
    if types is not None:
        query = query.filter(SessionEvent.event_type.in_(types))
    query = query.order_by(SessionEvent.sequence_number.asc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


@service_tool
def get_timeline(
    session_id: str,
    context: Optional[RequestContext] = None,
) -> dict:
    """Full history of a session, including observability-only events."""
    owner_id = resolve_owner_id(context)
    session_key = _validate_uuid(session_id, "session_id")

    db = DB.SessionLocal()
    try:
        session_row = _require_session(db, owner_id, session_key)
        rows = _query_events(db, session_key, 1, None)
        return {
            "status": "ok",
            "session": _serialize_session(session_row),
            "count": len(rows),
            "events": [_serialize_event(row) for row in rows],
        }
    finally:
        db.close()


@service_tool
def get_artifact_event(
    session_id: str,
    artifact_id: str,
    context: Optional[RequestContext] = None,
) -> dict:
    """Look up an artifact event by its art_ identifier."""
    _validate_required_text(artifact_id, "artifact_id", MAX_SHORT_TEXT_LENGTH)
    owner_id = resolve_owner_id(context)
    session_key = _validate_uuid(session_id, "session_id")

    db = DB.SessionLocal()
    try:
        _require_session(db, owner_id, session_key)
        rows = _query_events(db, session_key, 1, [EventType.artifact])
        for row in rows:
            if (row.data or {}).get("artifact_id") == artifact_id:
                return {"status": "ok", "event": _serialize_event(row)}
        return {"status": "not_found", "artifact_id": artifact_id}
    finally:
        db.close()


@service_tool
def end_session(
    session_id: str,
    status: str = "completed",
    context: Optional[RequestContext] = None,
) -> dict:
    """Close a session and roll up token usage from its llm_response events."""
    if status not in {SessionStatus.completed.value, SessionStatus.error.value}:
        raise ValidationIssue(
            "status must be one of: completed|error",
            field="status",
            error_type="invalid_value",
        )
    owner_id = resolve_owner_id(context)
    session_key = _validate_uuid(session_id, "session_id")

    db = DB.SessionLocal()
    try:
        row = _require_session(db, owner_id, session_key, for_update=True)
        _require_writable(row)
        responses = _query_events(db, session_key, 1, [EventType.llm_response])
        total_tokens = 0
        cached_tokens = 0
        prompt_tokens = 0
        total_cost = 0.0
        for event_row in responses:
            data = event_row.data or {}
            tokens = data.get("tokens") or {}
            total_tokens += int(tokens.get("total") or 0)
            cached_tokens += int(tokens.get("cached") or 0)
            prompt_tokens += int(tokens.get("prompt") or 0)
            total_cost += float(data.get("cost_cents") or 0.0)

        now = datetime.utcnow()
        row.status = SessionStatus(status)
        row.total_tokens = total_tokens
        row.cached_tokens = cached_tokens
        row.total_cost_cents = round(total_cost, 4)
        row.ended_at = now
        row.updated_at = now
        db.commit()
        db.refresh(row)
        cache_hit_rate = round(cached_tokens / prompt_tokens, 4) if prompt_tokens else 0.0
        return {
            "status": "ended",
            "session": _serialize_session(row),
            "llm_calls": len(responses),
            "cache_hit_rate": cache_hit_rate,
        }
    finally:
        db.close()


# =============================================================================
# Typed append helpers
# =============================================================================

def log_user_message(session_id: str, message: str, context: Optional[RequestContext] = None) -> dict:
    _validate_required_text(message, "message", MAX_TEXT_LENGTH)
    return append_event(session_id, EventType.user_message.value, {"message": message}, context=context)


def log_tool_call(
    session_id: str,
    tool_name: str,
    arguments: Optional[dict] = None,
    call_id: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    payload = {"tool_name": tool_name, "arguments": arguments or {}, "call_id": call_id}
    return append_event(session_id, EventType.tool_call.value, payload, context=context)


def log_tool_result(
    session_id: str,
    tool_name: str,
    result,
    success: bool = True,
    call_id: Optional[str] = None,
    duration_ms: Optional[int] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    payload = {"tool_name": tool_name, "result": result, "success": success, "call_id": call_id}
    return append_event(
        session_id,
        EventType.tool_result.value,
        payload,
        duration_ms=duration_ms,
        context=context,
    )


def log_llm_request(
    session_id: str,
    model: Optional[str],
    prompt,
    estimated_tokens: Optional[int] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    payload = {"model": model, "prompt": prompt, "estimated_tokens": estimated_tokens}
    return append_event(session_id, EventType.llm_request.value, payload, context=context)


def log_llm_response(
    session_id: str,
    content: Optional[str] = None,
    tool_call: Optional[dict] = None,
    tokens: Optional[dict] = None,
    cost_cents: float = 0.0,
    finish_reason: Optional[str] = None,
    duration_ms: Optional[int] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    payload = {
        "content": content,
        "tool_call": tool_call,
        "tokens": tokens or {},
        "cost_cents": cost_cents,
        "finish_reason": finish_reason,
    }
    return append_event(
        session_id,
        EventType.llm_response.value,
        payload,
        duration_ms=duration_ms,
        context=context,
    )


def log_knowledge(session_id: str, source: str, data, context: Optional[RequestContext] = None) -> dict:
    return append_event(session_id, EventType.knowledge.value, {"source": source, "data": data}, context=context)


def log_error(
    session_id: str,
    message: str,
    stack: Optional[str] = None,
    error_context: Optional[str] = None,
    details: Optional[dict] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    payload = {"message": message, "stack": stack, "context": error_context, "details": details}
    return append_event(session_id, EventType.error.value, payload, context=context)


def new_artifact_event_id() -> str:
    return f"art_{uuid.uuid4().hex[:8]}"


def log_artifact(
    session_id: str,
    artifact_type: str,
    title: str,
    payload: dict,
    summary: Optional[str] = None,
    auto_start: bool = False,
    ref: Optional[dict] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Append an artifact event; the generated art_ id is returned in the event data."""
    _validate_optional_text(summary, "summary", MAX_TEXT_LENGTH)
    data = {
        "artifact_id": new_artifact_event_id(),
        "type": artifact_type,
        "schema_version": "1.0",
        "title": title,
        "summary": summary,
        "auto_start": auto_start,
        "payload": payload,
        "ref": ref,
    }
    return append_event(session_id, EventType.artifact.value, data, context=context)


__all__ = [
    "SESSION_KINDS",
    "append_event_locked",
    "create_session",
    "get_or_create_session",
    "get_session",
    "list_sessions",
    "append_event",
    "read_range",
    "get_timeline",
    "get_artifact_event",
    "end_session",
    "log_user_message",
    "log_tool_call",
    "log_tool_result",
    "log_llm_request",
    "log_llm_response",
    "log_knowledge",
    "log_error",
    "log_artifact",
]
