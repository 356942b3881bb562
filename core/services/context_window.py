"""
Context window assembly for the reasoning engine.

The window is everything from the session's context_start_sequence to the
latest event. It only shrinks when a checkpoint event moves the start
forward; there is no count- or token-based sliding.
"""

from __future__ import annotations

import json
from typing import Optional

from sqlalchemy.exc import IntegrityError

from core.context import RequestContext, resolve_owner_id
from core.db import DB
from core.errors import ReasoningEngineError, StorageError, ValidationIssue
from core.models import EventType
from core.schemas import validate_event_payload
from core.services import reasoning
from core.services.session_events import (
    _insert_event,
    _next_sequence,
    _query_events,
    _require_session,
    _require_writable,
    _serialize_event,
    append_event,
    log_error,
    log_user_message,
)
from core.services.shared import (
    APPEND_RETRY_MAX,
    MAX_SHORT_TEXT_LENGTH,
    _validate_optional_text,
    _validate_positive_int,
    _validate_uuid,
    logger,
    raise_for_error_payload,
    service_tool,
)

RELEVANT_EVENT_TYPES = (
    EventType.user_message,
    EventType.tool_call,
    EventType.tool_result,
    EventType.knowledge,
    EventType.artifact,
)

CHARS_PER_TOKEN = 4

# Assistant text is recorded as a call to this tool plus its result.
NOTIFY_TOOL_NAME = "message_notify_user"
UNANSWERED_RESULT = {"success": False, "error": "no result recorded"}


@service_tool
def build_context_window(
    session_id: str,
    relevant_only: bool = True,
    context: Optional[RequestContext] = None,
) -> dict:
    """Return the ordered events the reasoning engine should see next."""
    owner_id = resolve_owner_id(context)
    session_key = _validate_uuid(session_id, "session_id")

    db = DB.SessionLocal()
    try:
        session_row = _require_session(db, owner_id, session_key)
        start = session_row.context_start_sequence or 0
        types = list(RELEVANT_EVENT_TYPES) if relevant_only else None
        rows = _query_events(db, session_key, start, types)
        return {
            "status": "ok",
            "session_id": str(session_key),
            "context_start_sequence": start,
            "relevant_only": relevant_only,
            "count": len(rows),
            "events": [_serialize_event(row) for row in rows],
        }
    finally:
        db.close()


@service_tool
def checkpoint(
    session_id: str,
    start_sequence: Optional[int] = None,
    reason: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Append a checkpoint event and move the context start forward.

    Without start_sequence the window restarts right after the checkpoint.
    """
    if start_sequence is not None:
        _validate_positive_int(start_sequence, "start_sequence")
    _validate_optional_text(reason, "reason", MAX_SHORT_TEXT_LENGTH)
    owner_id = resolve_owner_id(context)
    session_key = _validate_uuid(session_id, "session_id")

    for attempt in range(APPEND_RETRY_MAX):
        db = DB.SessionLocal()
        try:
            session_row = _require_session(db, owner_id, session_key, for_update=True)
            _require_writable(session_row)
            checkpoint_sequence = _next_sequence(db, session_key)
            previous_start = session_row.context_start_sequence or 0
            target = start_sequence if start_sequence is not None else checkpoint_sequence + 1
            if target < previous_start:
                raise ValidationIssue(
                    f"start_sequence {target} would move the context start backwards from {previous_start}",
                    field="start_sequence",
                    error_type="out_of_range",
                )
            if target > checkpoint_sequence + 1:
                raise ValidationIssue(
                    f"start_sequence {target} is past the next sequence {checkpoint_sequence + 1}",
                    field="start_sequence",
                    error_type="out_of_range",
                )

            data = validate_event_payload(
                EventType.checkpoint,
                {"start_sequence": target, "previous_start": previous_start, "reason": reason},
            )
            row = _insert_event(db, session_row, EventType.checkpoint, data)
            session_row.context_start_sequence = target
            db.commit()
            logger.info(f"Checkpoint on session {session_key}: context start {previous_start} -> {target}")
            return {
                "status": "checkpointed",
                "sequence_number": row.sequence_number,
                "context_start_sequence": target,
                "previous_start": previous_start,
            }
        except IntegrityError:
            db.rollback()
            logger.info(f"Checkpoint sequence collision on {session_key} (attempt {attempt + 1})")
        finally:
            db.close()

    raise StorageError(f"Could not checkpoint session {session_key} after {APPEND_RETRY_MAX} attempts")


def _knowledge_text(data: dict) -> str:
    body = data.get("data")
    if not isinstance(body, str):
        body = json.dumps(body, sort_keys=True)
    return f"[knowledge: {data.get('source', 'unknown')}]\n{body}"


def _artifact_text(data: dict) -> str:
    parts = [f"[artifact: {data.get('type')}] {data.get('title')}"]
    if data.get("summary"):
        parts.append(data["summary"])
    if data.get("payload"):
        parts.append(json.dumps(data["payload"], sort_keys=True))
    return "\n".join(parts)


def events_to_messages(events: list[dict]) -> list[dict]:
    """Convert context events to role-tagged chat messages.

    Tool results must directly follow the assistant message carrying their
    call, so user, knowledge and artifact text seen while a call is
    unanswered is held back until the results are in. A call that is never
    answered before the next call or the end of the window gets a
    placeholder result.
    """
    messages: list[dict] = []
    pending_calls: dict[str, Optional[str]] = {}
    buffered: list[str] = []

    def add_user_text(text: str) -> None:
        if messages and messages[-1]["role"] == "user":
            messages[-1]["content"] = f"{messages[-1]['content']}\n\n{text}"
        else:
            messages.append({"role": "user", "content": text})

    def flush_buffer() -> None:
        while buffered:
            add_user_text(buffered.pop(0))

    def close_unanswered() -> None:
        for call_id, tool_name in pending_calls.items():
            messages.append({
                "role": "tool",
                "tool_call_id": call_id,
                "name": tool_name,
                "content": json.dumps(UNANSWERED_RESULT, sort_keys=True),
            })
        pending_calls.clear()
        flush_buffer()

    for event in events:
        event_type = event.get("event_type")
        data = event.get("data") or {}
        sequence = event.get("sequence_number")

        if event_type == EventType.user_message.value:
            if pending_calls:
                buffered.append(data.get("message", ""))
            else:
                add_user_text(data.get("message", ""))
        elif event_type == EventType.tool_call.value:
            call_id = data.get("call_id") or f"call_{sequence}"
            if pending_calls and buffered:
                close_unanswered()
            pending_calls[call_id] = data.get("tool_name")
            messages.append({
                "role": "assistant",
                "content": None,
                "tool_calls": [{
                    "id": call_id,
                    "name": data.get("tool_name"),
                    "arguments": data.get("arguments") or {},
                }],
            })
        elif event_type == EventType.tool_result.value:
            call_id = data.get("call_id")
            if call_id is None and len(pending_calls) == 1:
                call_id = next(iter(pending_calls))
            if call_id not in pending_calls:
                logger.debug(f"Dropping tool_result {sequence} with no call in window")
                continue
            pending_calls.pop(call_id, None)
            result = data.get("result")
            messages.append({
                "role": "tool",
                "tool_call_id": call_id,
                "name": data.get("tool_name"),
                "content": result if isinstance(result, str) else json.dumps(result, sort_keys=True),
            })
            if not pending_calls:
                flush_buffer()
        elif event_type == EventType.knowledge.value:
            buffered.append(_knowledge_text(data))
            if not pending_calls:
                flush_buffer()
        elif event_type == EventType.artifact.value:
            buffered.append(_artifact_text(data))
            if not pending_calls:
                flush_buffer()
        elif event_type == EventType.llm_response.value and data.get("content"):
            messages.append({"role": "assistant", "content": data["content"]})

    close_unanswered()
    return messages


def estimate_tokens(messages: list[dict]) -> int:
    chars = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            chars += len(content)
        elif content is not None:
            chars += len(json.dumps(content))
        for call in message.get("tool_calls") or []:
            chars += len(json.dumps(call))
    return chars // CHARS_PER_TOKEN


def _record_assistant_message(session_id: str, text: str, call_id: str, context: Optional[RequestContext]) -> int:
    """Log assistant text as a delivered notify call so later turns see both sides."""
    raise_for_error_payload(append_event(
        session_id,
        EventType.tool_call.value,
        {"tool_name": NOTIFY_TOOL_NAME, "arguments": {"message": text}, "call_id": call_id},
        context=context,
    ))
    delivered = raise_for_error_payload(append_event(
        session_id,
        EventType.tool_result.value,
        {"tool_name": NOTIFY_TOOL_NAME, "result": {"delivered": True}, "success": True, "call_id": call_id},
        context=context,
    ))
    return delivered["sequence_number"]


def run_turn(
    session_id: str,
    message: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Record a user message, ask the engine for the next turn and record its output.

    The engine is called with no transaction open; every write is its own
    append.
    """
    if message is not None:
        raise_for_error_payload(log_user_message(session_id, message, context=context))

    window = raise_for_error_payload(build_context_window(session_id, context=context))
    messages = events_to_messages(window["events"])
    estimated = estimate_tokens(messages)
    raise_for_error_payload(append_event(
        session_id,
        EventType.llm_request.value,
        {
            "model": reasoning.REASONING_MODEL,
            "prompt": {"message_count": len(messages), "context_start_sequence": window["context_start_sequence"]},
            "estimated_tokens": estimated,
        },
        context=context,
    ))

    try:
        output = reasoning.generate(messages)
    except ReasoningEngineError as exc:
        log_error(session_id, str(exc), error_context="run_turn", context=context)
        raise

    tool_call = output.get("tool_call")
    response = raise_for_error_payload(append_event(
        session_id,
        EventType.llm_response.value,
        {
            "content": output.get("message"),
            "tool_call": tool_call,
            "tokens": output.get("tokens") or {},
            "cost_cents": output.get("cost_cents") or 0.0,
            "finish_reason": output.get("finish_reason"),
        },
        duration_ms=output.get("duration_ms"),
        context=context,
    ))
    last_sequence = response["sequence_number"]
    text = output.get("message")
    if isinstance(text, str) and text.strip():
        last_sequence = _record_assistant_message(session_id, text, f"notify_{last_sequence}", context)
    if tool_call and tool_call.get("name"):
        recorded = raise_for_error_payload(append_event(
            session_id,
            EventType.tool_call.value,
            {
                "tool_name": tool_call["name"],
                "arguments": tool_call.get("arguments") or {},
                "call_id": tool_call.get("id"),
            },
            context=context,
        ))
        last_sequence = recorded["sequence_number"]

    return {
        "status": "ok",
        "message": output.get("message"),
        "tool_call": tool_call,
        "estimated_tokens": estimated,
        "sequence_number": last_sequence,
    }


__all__ = [
    "RELEVANT_EVENT_TYPES",
    "build_context_window",
    "checkpoint",
    "events_to_messages",
    "estimate_tokens",
    "run_turn",
]
