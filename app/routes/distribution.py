"""
Goal distribution tracking endpoints.
"""

from __future__ import annotations

from typing import Any, Optional, Union

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from app.deps import get_request_context, tool_result
from core.context import RequestContext
from core.services import distribution


router = APIRouter(prefix="/distribution", tags=["distribution"])

Weights = Optional[Union[dict[str, Any], list[dict[str, Any]]]]


class ShareRequest(BaseModel):
    goals_addressed: Optional[list[Any]] = None
    muscles_utilized: Optional[list[Any]] = None


class GoalWeightsRequest(BaseModel):
    categories: Weights = None
    muscles: Weights = None


@router.get("")
def read(context: RequestContext = Depends(get_request_context)):
    return tool_result(distribution.read(context=context))


@router.post("/fold")
def fold(body: ShareRequest, context: RequestContext = Depends(get_request_context)):
    return tool_result(
        distribution.fold(body.goals_addressed, body.muscles_utilized, context=context)
    )


@router.post("/unfold")
def unfold(body: ShareRequest, context: RequestContext = Depends(get_request_context)):
    return tool_result(
        distribution.unfold(body.goals_addressed, body.muscles_utilized, context=context)
    )


@router.post("/reset")
def reset(context: RequestContext = Depends(get_request_context)):
    return tool_result(distribution.reset(context=context))


@router.get("/weights")
def get_goal_weights(context: RequestContext = Depends(get_request_context)):
    return tool_result(distribution.get_goal_weights(context=context))


@router.put("/weights")
def set_goal_weights(body: GoalWeightsRequest, context: RequestContext = Depends(get_request_context)):
    return tool_result(
        distribution.set_goal_weights(categories=body.categories, muscles=body.muscles, context=context)
    )


@router.get("/metrics")
def distribution_metrics(context: RequestContext = Depends(get_request_context)):
    return tool_result(distribution.distribution_metrics(context=context))


@router.get("/prompt", response_class=PlainTextResponse)
def distribution_prompt(context: RequestContext = Depends(get_request_context)):
    metrics = tool_result(distribution.distribution_metrics(context=context))
    return distribution.format_distribution_for_prompt(metrics)
