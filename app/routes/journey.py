"""
Journey state and structured intake endpoints.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.deps import get_request_context, tool_result
from core.context import RequestContext
from core.services import intake, journey


router = APIRouter(tags=["journey"])


class PhaseUpdate(BaseModel):
    status: str


class IntakeStatusUpdate(BaseModel):
    status: str


@router.get("/journey")
def get_journey(context: RequestContext = Depends(get_request_context)):
    return tool_result(journey.get_or_create_journey(context=context))


@router.put("/journey/phases/{phase}")
def set_phase_status(phase: str, body: PhaseUpdate, context: RequestContext = Depends(get_request_context)):
    return tool_result(journey.set_user_phase_status(phase, body.status, context=context))


@router.post("/journey/reconcile")
def reconcile_journey(context: RequestContext = Depends(get_request_context)):
    return tool_result(journey.reconcile_journey(context=context))


@router.post("/intake")
def submit_intake(answers: dict[str, Any], context: RequestContext = Depends(get_request_context)):
    return tool_result(intake.submit_intake(answers, context=context))


@router.get("/intake")
def get_latest_intake(context: RequestContext = Depends(get_request_context)):
    return tool_result(intake.get_latest_intake(context=context))


@router.put("/intake/{intake_id}/status")
def mark_intake_status(intake_id: str, body: IntakeStatusUpdate, context: RequestContext = Depends(get_request_context)):
    return tool_result(intake.mark_intake_status(intake_id, body.status, context=context))
