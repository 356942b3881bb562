"""
Versioned artifact endpoints: goal contracts, programs and workout instances.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from app.deps import get_request_context, tool_result
from core.context import RequestContext
from core.services import active_pointer, artifacts


router = APIRouter(prefix="/artifacts", tags=["artifacts"])


class DraftRequest(BaseModel):
    content: dict[str, Any]
    based_on_id: Optional[str] = None


class EditRequest(BaseModel):
    patch: Optional[dict[str, Any]] = None
    instruction: Optional[str] = None
    expected_version: Optional[int] = None


class ApproveRequest(BaseModel):
    expected_version: Optional[int] = None


class ActivateRequest(BaseModel):
    expected_pointer_revision: Optional[int] = None


class ReviewRequest(BaseModel):
    reviewer: Optional[str] = None
    notes: Optional[str] = None


@router.post("/{artifact_class}")
def draft_artifact(artifact_class: str, body: DraftRequest, context: RequestContext = Depends(get_request_context)):
    return tool_result(
        artifacts.draft_artifact(artifact_class, body.content, based_on_id=body.based_on_id, context=context)
    )


@router.get("/{artifact_class}")
def list_artifacts(
    artifact_class: str,
    status: Optional[str] = None,
    limit: int = 20,
    context: RequestContext = Depends(get_request_context),
):
    return tool_result(artifacts.list_artifacts(artifact_class, status=status, limit=limit, context=context))


@router.get("/{artifact_class}/active")
def get_active_artifact(artifact_class: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(artifacts.get_active_artifact(artifact_class, context=context))


@router.get("/{artifact_class}/pointer")
def get_active_pointer(artifact_class: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(active_pointer.get_active_pointer(artifact_class, context=context))


@router.get("/{artifact_class}/lineages/{lineage_id}")
def list_versions(artifact_class: str, lineage_id: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(artifacts.list_versions(artifact_class, lineage_id, context=context))


@router.get("/{artifact_class}/lineages/{lineage_id}/audit")
def list_audit_events(artifact_class: str, lineage_id: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(artifacts.list_audit_events(lineage_id, context=context))


@router.get("/{artifact_class}/{artifact_id}")
def get_artifact(artifact_class: str, artifact_id: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(artifacts.get_artifact(artifact_id, artifact_class=artifact_class, context=context))


@router.get("/{artifact_class}/{artifact_id}/markdown", response_class=PlainTextResponse)
def get_program_markdown(artifact_class: str, artifact_id: str, context: RequestContext = Depends(get_request_context)):
    found = tool_result(artifacts.get_artifact(artifact_id, artifact_class=artifact_class, context=context))
    return artifacts.program_to_markdown(found["artifact"]["content"])


@router.post("/{artifact_class}/{artifact_id}/edit")
def edit_artifact(
    artifact_class: str,
    artifact_id: str,
    body: EditRequest,
    context: RequestContext = Depends(get_request_context),
):
    return tool_result(
        artifacts.edit_artifact(
            artifact_id,
            patch=body.patch,
            instruction=body.instruction,
            expected_version=body.expected_version,
            artifact_class=artifact_class,
            context=context,
        )
    )


@router.post("/{artifact_class}/{artifact_id}/approve")
def approve_artifact(
    artifact_class: str,
    artifact_id: str,
    body: Optional[ApproveRequest] = None,
    context: RequestContext = Depends(get_request_context),
):
    expected = body.expected_version if body else None
    return tool_result(
        artifacts.approve_artifact(artifact_id, expected_version=expected, artifact_class=artifact_class, context=context)
    )


@router.post("/{artifact_class}/{artifact_id}/activate")
def activate_artifact(
    artifact_class: str,
    artifact_id: str,
    body: Optional[ActivateRequest] = None,
    context: RequestContext = Depends(get_request_context),
):
    expected = body.expected_pointer_revision if body else None
    return tool_result(
        artifacts.activate_artifact(
            artifact_id,
            expected_pointer_revision=expected,
            artifact_class=artifact_class,
            context=context,
        )
    )


@router.post("/{artifact_class}/{artifact_id}/defer")
def defer_artifact(artifact_class: str, artifact_id: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(artifacts.defer_artifact(artifact_id, artifact_class=artifact_class, context=context))


@router.post("/{artifact_class}/{artifact_id}/archive")
def archive_artifact(artifact_class: str, artifact_id: str, context: RequestContext = Depends(get_request_context)):
    return tool_result(artifacts.archive_artifact(artifact_id, artifact_class=artifact_class, context=context))


@router.post("/{artifact_class}/{artifact_id}/review")
def review_artifact(
    artifact_class: str,
    artifact_id: str,
    body: ReviewRequest,
    context: RequestContext = Depends(get_request_context),
):
    return tool_result(
        artifacts.review_artifact(
            artifact_id,
            reviewer=body.reviewer,
            notes=body.notes,
            artifact_class=artifact_class,
            context=context,
        )
    )
