"""
Per-owner journey through the coaching phases.

Phase statuses are set by the workflows that finish a phase; the overall
state is always derived from them, never written directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from core.context import RequestContext, resolve_owner_id
from core.db import DB
from core.errors import ConflictError, ValidationIssue
from core.models import (
    ArtifactStatus,
    GoalContract,
    JourneyState,
    StructuredIntake,
    TrainingProgram,
)
from core.services.shared import _iso, logger, service_tool

PHASE_STATUSES = {
    "intake": {"not_started", "in_progress", "complete", "deferred"},
    "assessment": {"not_started", "in_progress", "complete", "deferred"},
    "goals": {"not_started", "in_progress", "complete", "deferred"},
    "program": {"not_started", "in_progress", "complete", "deferred", "active", "paused"},
    "monitoring": {"not_started", "active"},
}

PHASE_COLUMNS = {phase: f"{phase}_status" for phase in PHASE_STATUSES}

# Changes a client may request directly; everything else follows the workflows.
USER_PHASE_CHANGES = {
    "intake": {"deferred"},
    "assessment": {"deferred"},
    "goals": {"deferred"},
    "program": {"paused", "active"},
}


def compute_overall_state(statuses: dict) -> str:
    """Collapse phase statuses into one state, most advanced phase first."""
    program = statuses.get("program")
    if program == "active":
        return "program_active"
    if program == "paused":
        return "program_paused"
    if program in ("complete", "in_progress"):
        return "program_design_in_progress"
    for phase in ("goals", "assessment", "intake"):
        if statuses.get(phase) == "in_progress":
            return f"{phase}_in_progress"
    for phase in ("goals", "assessment", "intake"):
        if statuses.get(phase) == "complete":
            return f"{phase}_complete"
    return "not_started"


def _phase_statuses(row: JourneyState) -> dict:
    return {phase: getattr(row, column) for phase, column in PHASE_COLUMNS.items()}


def _serialize_journey(row: JourneyState) -> dict:
    return {
        "owner_id": row.owner_id,
        "state": row.state,
        **{column: getattr(row, column) for column in PHASE_COLUMNS.values()},
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _load_journey_row(db, owner_id: str) -> JourneyState:
    row = db.query(JourneyState).filter(JourneyState.owner_id == owner_id).first()
    if row is not None:
        return row
    now = datetime.utcnow()
    row = JourneyState(owner_id=owner_id, state="not_started", created_at=now, updated_at=now)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return db.query(JourneyState).filter(JourneyState.owner_id == owner_id).one()
    db.refresh(row)
    return row


def _validate_phase_status(phase: str, status: str) -> None:
    if phase not in PHASE_STATUSES:
        raise ValidationIssue(
            f"phase must be one of: {'|'.join(PHASE_STATUSES)}",
            field="phase",
            error_type="invalid_value",
        )
    if status not in PHASE_STATUSES[phase]:
        raise ValidationIssue(
            f"{phase} status must be one of: {'|'.join(sorted(PHASE_STATUSES[phase]))}",
            field="status",
            error_type="invalid_value",
        )


def apply_phase_status(db, owner_id: str, phase: str, status: str, keep=()) -> JourneyState:
    """Set one phase inside the caller's transaction and recompute the state.

    A phase currently in one of the statuses in keep is left as it is.
    """
    _validate_phase_status(phase, status)
    row = (
        db.query(JourneyState)
        .filter(JourneyState.owner_id == owner_id)
        .with_for_update()
        .first()
    )
    now = datetime.utcnow()
    if row is None:
        row = JourneyState(owner_id=owner_id, created_at=now)
        for column in PHASE_COLUMNS.values():
            setattr(row, column, "not_started")
        db.add(row)
    current = getattr(row, PHASE_COLUMNS[phase])
    if current in keep:
        return row
    setattr(row, PHASE_COLUMNS[phase], status)
    row.state = compute_overall_state(_phase_statuses(row))
    row.updated_at = now
    return row


@service_tool
def get_or_create_journey(context: Optional[RequestContext] = None) -> dict:
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        row = _load_journey_row(db, owner_id)
        return {"status": "ok", "journey": _serialize_journey(row)}
    finally:
        db.close()


@service_tool
def set_phase_status(
    phase: str,
    status: str,
    context: Optional[RequestContext] = None,
) -> dict:
    _validate_phase_status(phase, status)
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        _load_journey_row(db, owner_id)
        row = apply_phase_status(db, owner_id, phase, status)
        db.commit()
        db.refresh(row)
        logger.info(f"Journey {owner_id}: {phase} -> {status} ({row.state})")
        return {"status": "updated", "journey": _serialize_journey(row)}
    finally:
        db.close()


@service_tool
def set_user_phase_status(
    phase: str,
    status: str,
    context: Optional[RequestContext] = None,
) -> dict:
    """Apply a change the athlete asks for: deferring a phase, or pausing and resuming the program."""
    _validate_phase_status(phase, status)
    if status not in USER_PHASE_CHANGES[phase]:
        raise ValidationIssue(
            f"{phase} can only be set to {'|'.join(sorted(USER_PHASE_CHANGES[phase]))} directly",
            field="status",
            error_type="not_user_settable",
        )
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        row = _load_journey_row(db, owner_id)
        current = getattr(row, PHASE_COLUMNS[phase])
        if phase == "program" and status == "active" and current != "paused":
            raise ConflictError(
                f"Only a paused program can be resumed; program is {current}",
                error_code="not_paused",
                data={"program_status": current},
            )
        if phase == "program" and status == "paused" and current != "active":
            raise ConflictError(
                f"Only an active program can be paused; program is {current}",
                error_code="not_active",
                data={"program_status": current},
            )
        row = apply_phase_status(db, owner_id, phase, status)
        db.commit()
        db.refresh(row)
        logger.info(f"Journey {owner_id}: {phase} -> {status} by request ({row.state})")
        return {"status": "updated", "journey": _serialize_journey(row)}
    finally:
        db.close()


def _latest(db, model, owner_id: str):
    return (
        db.query(model)
        .filter(model.owner_id == owner_id)
        .order_by(model.created_at.desc(), model.version.desc())
        .first()
    )


def _has_status(db, model, owner_id: str, status: ArtifactStatus) -> bool:
    return (
        db.query(model.id)
        .filter(model.owner_id == owner_id)
        .filter(model.status == status)
        .first()
        is not None
    )


@service_tool
def reconcile_journey(context: Optional[RequestContext] = None) -> dict:
    """Re-derive phase statuses from the artifacts and intake on record.

    The stored artifacts are authoritative; journey columns that disagree
    with them are overwritten. A paused program stays paused.
    """
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        row = _load_journey_row(db, owner_id)
        current = _phase_statuses(row)
        derived: dict[str, str] = {}

        if current["intake"] in ("not_started", "in_progress"):
            if db.query(StructuredIntake.id).filter(StructuredIntake.owner_id == owner_id).first() is not None:
                derived["intake"] = "complete"

        if _has_status(db, GoalContract, owner_id, ArtifactStatus.approved):
            derived["goals"] = "complete"
        else:
            latest_goal = _latest(db, GoalContract, owner_id)
            if latest_goal is not None:
                if latest_goal.status == ArtifactStatus.deferred:
                    derived["goals"] = "deferred"
                elif latest_goal.status == ArtifactStatus.draft:
                    derived["goals"] = "in_progress"

        if _has_status(db, TrainingProgram, owner_id, ArtifactStatus.active):
            if current["program"] != "paused":
                derived["program"] = "active"
            derived["monitoring"] = "active"
        else:
            latest_program = _latest(db, TrainingProgram, owner_id)
            if latest_program is not None:
                if latest_program.status == ArtifactStatus.approved:
                    derived["program"] = "complete"
                elif latest_program.status == ArtifactStatus.draft:
                    derived["program"] = "in_progress"

        changed = {phase: status for phase, status in derived.items() if current[phase] != status}
        if changed:
            for phase, status in changed.items():
                row = apply_phase_status(db, owner_id, phase, status)
            db.commit()
            db.refresh(row)
            logger.info(f"Journey {owner_id} reconciled: {changed}")
        return {"status": "ok", "changed": changed, "journey": _serialize_journey(row)}
    finally:
        db.close()


__all__ = [
    "PHASE_STATUSES",
    "compute_overall_state",
    "apply_phase_status",
    "get_or_create_journey",
    "set_phase_status",
    "set_user_phase_status",
    "USER_PHASE_CHANGES",
    "reconcile_journey",
]
