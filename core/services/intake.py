"""
Structured intake: the questionnaire a user fills in before coaching starts.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import ValidationError

from core.context import RequestContext, resolve_owner_id
from core.db import DB
from core.errors import NotFoundError, ValidationIssue
from core.models import IntakeStatus, StructuredIntake
from core.schemas import StructuredIntakeInput
from core.services.journey import apply_phase_status
from core.services.shared import _enum_value, _iso, _validate_uuid, logger, service_tool
from core.validators import issue_from_pydantic

INTAKE_FIELDS = tuple(StructuredIntakeInput.model_fields)


def _serialize_intake(row: StructuredIntake) -> dict:
    data = {field: getattr(row, field) for field in INTAKE_FIELDS}
    data["birthday"] = row.birthday.isoformat() if row.birthday else None
    return {
        "id": str(row.id),
        "owner_id": row.owner_id,
        **data,
        "status": _enum_value(row.status),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def intake_to_prompt(intake: dict) -> str:
    """Render answered intake fields as labelled lines for the coach prompt."""
    lines = []
    for field in INTAKE_FIELDS:
        value = intake.get(field)
        if value in (None, ""):
            continue
        lines.append(f"{field.replace('_', ' ').title()}: {value}")
    return "\n".join(lines)


@service_tool
def submit_intake(
    answers: dict,
    context: Optional[RequestContext] = None,
) -> dict:
    """Store one intake submission and mark the intake phase complete."""
    if not isinstance(answers, dict):
        raise ValidationIssue("answers must be an object", field="answers", error_type="invalid_type")
    try:
        parsed = StructuredIntakeInput.model_validate(answers)
    except ValidationError as exc:
        raise issue_from_pydantic(exc, "answers") from exc
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        now = datetime.utcnow()
        row = StructuredIntake(
            owner_id=owner_id,
            status=IntakeStatus.submitted,
            created_at=now,
            updated_at=now,
            **parsed.model_dump(),
        )
        db.add(row)
        apply_phase_status(db, owner_id, "intake", "complete")
        db.commit()
        db.refresh(row)
        logger.info(f"Stored structured intake {row.id} for {owner_id}")
        return {"status": "submitted", "intake": _serialize_intake(row)}
    finally:
        db.close()


@service_tool
def get_latest_intake(context: Optional[RequestContext] = None) -> dict:
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        row = (
            db.query(StructuredIntake)
            .filter(StructuredIntake.owner_id == owner_id)
            .order_by(StructuredIntake.created_at.desc())
            .first()
        )
        if row is None:
            return {"status": "not_found", "intake": None}
        return {"status": "ok", "intake": _serialize_intake(row)}
    finally:
        db.close()


@service_tool
def mark_intake_status(
    intake_id: str,
    status: str,
    context: Optional[RequestContext] = None,
) -> dict:
    try:
        new_status = IntakeStatus(status)
    except ValueError as exc:
        raise ValidationIssue(
            "status must be submitted|processing|processed",
            field="status",
            error_type="invalid_value",
        ) from exc
    owner_id = resolve_owner_id(context)
    intake_key = _validate_uuid(intake_id, "intake_id")

    db = DB.SessionLocal()
    try:
        row = (
            db.query(StructuredIntake)
            .filter(StructuredIntake.owner_id == owner_id)
            .filter(StructuredIntake.id == intake_key)
            .first()
        )
        if row is None:
            raise NotFoundError(f"Intake not found: {intake_id}", resource="intake", resource_id=intake_id)
        row.status = new_status
        row.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(row)
        return {"status": "updated", "intake": _serialize_intake(row)}
    finally:
        db.close()


__all__ = [
    "submit_intake",
    "get_latest_intake",
    "mark_intake_status",
    "intake_to_prompt",
]
