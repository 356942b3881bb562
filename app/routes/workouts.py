"""
Workout tracking endpoints.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.deps import get_request_context, tool_result
from core.context import RequestContext
from core.services import workout_actions


router = APIRouter(prefix="/workouts", tags=["workouts"])


class StartRequest(BaseModel):
    instance_id: Optional[str] = None
    workout: Optional[dict[str, Any]] = None
    coach_mode: str = "quiet"
    event_session_id: Optional[str] = None
    metadata: Optional[dict] = None


class CommandRequest(BaseModel):
    command_id: str
    expected_version: int
    command: dict[str, Any]
    client_meta: Optional[dict[str, Any]] = None


class FinalizeRequest(BaseModel):
    reflection: Optional[dict[str, Any]] = None
    mode: str = "complete"
    reason: Optional[str] = None


@router.post("/sessions")
def start_workout_session(body: StartRequest, context: RequestContext = Depends(get_request_context)):
    return tool_result(
        workout_actions.start_workout_session(
            instance_id=body.instance_id,
            workout=body.workout,
            coach_mode=body.coach_mode,
            event_session_id=body.event_session_id,
            metadata=body.metadata,
            context=context,
        )
    )


@router.get("/history")
def list_history(
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    context: RequestContext = Depends(get_request_context),
):
    return tool_result(workout_actions.list_history(limit=limit, cursor=cursor, context=context))


@router.get("/sessions/{session_id}")
def get_session_detail(session_id: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(workout_actions.get_session_detail(session_id, context=context))


@router.post("/sessions/{session_id}/finalize")
def finalize_session(session_id: str, body: FinalizeRequest, context: RequestContext = Depends(get_request_context)):
    return tool_result(
        workout_actions.finalize_session(
            session_id,
            reflection=body.reflection,
            mode=body.mode,
            reason=body.reason,
            context=context,
        )
    )


@router.post("/exercises/{exercise_id}/commands")
def apply_exercise_command(exercise_id: str, body: CommandRequest, context: RequestContext = Depends(get_request_context)):
    return tool_result(
        workout_actions.apply_exercise_command(
            exercise_id,
            body.command_id,
            body.expected_version,
            body.command,
            client_meta=body.client_meta,
            context=context,
        )
    )
