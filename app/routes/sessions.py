"""
Session event log endpoints.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.deps import get_request_context, tool_result
from core.context import RequestContext
from core.services import context_window, session_events


router = APIRouter(prefix="/sessions", tags=["sessions"])


class SessionCreate(BaseModel):
    kind: str = "chat"
    metadata: Optional[dict] = None
    reuse_active: bool = False


class EventAppend(BaseModel):
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    duration_ms: Optional[int] = None


class CheckpointRequest(BaseModel):
    start_sequence: Optional[int] = None
    reason: Optional[str] = None


class TurnRequest(BaseModel):
    message: Optional[str] = None


class EndRequest(BaseModel):
    status: str = "completed"


@router.post("")
def create_session(body: SessionCreate, context: RequestContext = Depends(get_request_context)):
    create = session_events.get_or_create_session if body.reuse_active else session_events.create_session
    return tool_result(create(kind=body.kind, metadata=body.metadata, context=context))


@router.get("")
def list_sessions(
    kind: Optional[str] = None,
    limit: Optional[int] = Query(default=None),
    context: RequestContext = Depends(get_request_context),
):
    return tool_result(session_events.list_sessions(kind=kind, limit=limit, context=context))


@router.get("/{session_id}")
def get_session(session_id: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(session_events.get_session(session_id, context=context))


@router.post("/{session_id}/events")
def append_event(session_id: str, body: EventAppend, context: RequestContext = Depends(get_request_context)):
    return tool_result(
        session_events.append_event(
            session_id,
            body.event_type,
            body.payload,
            duration_ms=body.duration_ms,
            context=context,
        )
    )


@router.get("/{session_id}/events")
def read_range(
    session_id: str,
    from_sequence: int = Query(default=1),
    event_types: Optional[list[str]] = Query(default=None),
    limit: Optional[int] = None,
    context: RequestContext = Depends(get_request_context),
):
    return tool_result(
        session_events.read_range(
            session_id,
            from_sequence=from_sequence,
            event_types=event_types,
            limit=limit,
            context=context,
        )
    )


@router.get("/{session_id}/timeline")
def get_timeline(session_id: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(session_events.get_timeline(session_id, context=context))


@router.get("/{session_id}/artifacts/{artifact_id}")
def get_artifact_event(session_id: str, artifact_id: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(session_events.get_artifact_event(session_id, artifact_id, context=context))


@router.get("/{session_id}/context")
def build_context_window(
    session_id: str,
    relevant_only: bool = True,
    as_messages: bool = False,
    context: RequestContext = Depends(get_request_context),
):
    window = tool_result(
        context_window.build_context_window(session_id, relevant_only=relevant_only, context=context)
    )
    if as_messages:
        messages = context_window.events_to_messages(window["events"])
        window = {
            **window,
            "messages": messages,
            "estimated_tokens": context_window.estimate_tokens(messages),
        }
    return window


@router.post("/{session_id}/checkpoint")
def checkpoint(session_id: str, body: CheckpointRequest, context: RequestContext = Depends(get_request_context)):
    return tool_result(
        context_window.checkpoint(
            session_id,
            start_sequence=body.start_sequence,
            reason=body.reason,
            context=context,
        )
    )


@router.post("/{session_id}/turn")
def run_turn(session_id: str, body: TurnRequest, context: RequestContext = Depends(get_request_context)):
    return tool_result(context_window.run_turn(session_id, message=body.message, context=context))


@router.post("/{session_id}/end")
def end_session(session_id: str, body: EndRequest, context: RequestContext = Depends(get_request_context)):
    return tool_result(session_events.end_session(session_id, status=body.status, context=context))
