"""
Versioned artifact store: goal contracts, training programs and workout
instances.

Every edit inserts the next version of the lineage as a new draft row;
earlier rows keep their content forever. Only the newest draft of a lineage
can be edited, approved or deferred. Activation promotes an approved version
to the single active one for its owner and class.
"""

from __future__ import annotations

import copy
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from core.context import RequestContext, resolve_actor, resolve_owner_id, get_current_request_context
from core.db import DB
from core.errors import ConflictError, NotFoundError, ValidationIssue
from core.models import (
    ARTIFACT_MODELS,
    ArtifactAuditEvent,
    ArtifactStatus,
    AuditEventType,
)
from core.schemas import validate_artifact_content
from core.services import reasoning
from core.services.active_pointer import load_pointer, swap_pointer
from core.services.journey import apply_phase_status
from core.services.shared import (
    _enum_value,
    _iso,
    _validate_limit,
    _validate_optional_text,
    _validate_positive_int,
    _validate_required_text,
    _validate_uuid,
    MAX_RESULT_LIMIT,
    MAX_TEXT_LENGTH,
    MAX_SHORT_TEXT_LENGTH,
    logger,
    service_tool,
)

ACTIVATABLE_CLASSES = {"program", "workout_instance"}
DEFERRABLE_CLASSES = {"goal_contract"}

# (artifact_class, transition) -> [(phase, status, statuses left untouched)]
JOURNEY_TRANSITIONS = {
    ("goal_contract", "draft"): [("goals", "in_progress", ("complete",))],
    ("goal_contract", "edit"): [("goals", "in_progress", ("complete",))],
    ("goal_contract", "approve"): [("goals", "complete", ())],
    ("goal_contract", "defer"): [("goals", "deferred", ("complete",))],
    ("program", "draft"): [("program", "in_progress", ("active", "paused"))],
    ("program", "edit"): [("program", "in_progress", ("active", "paused"))],
    ("program", "approve"): [("program", "complete", ("active", "paused"))],
    ("program", "activate"): [("program", "active", ()), ("monitoring", "active", ())],
}


def _artifact_model(artifact_class: str):
    model = ARTIFACT_MODELS.get(artifact_class)
    if model is None:
        raise ValidationIssue(
            f"artifact_class must be one of: {'|'.join(sorted(ARTIFACT_MODELS))}",
            field="artifact_class",
            error_type="invalid_value",
        )
    return model


def _serialize_artifact(artifact_class: str, row, latest_version: Optional[int] = None) -> dict:
    data = {
        "id": str(row.id),
        "artifact_class": artifact_class,
        "owner_id": row.owner_id,
        "lineage_id": str(row.lineage_id),
        "version": row.version,
        "status": _enum_value(row.status),
        "content": row.content,
        "created_by": row.created_by,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
        "approved_at": _iso(row.approved_at),
        "activated_at": _iso(row.activated_at),
        "archived_at": _iso(row.archived_at),
        "deferred_at": _iso(row.deferred_at),
    }
    if latest_version is not None:
        data["latest_version"] = latest_version
        data["is_latest"] = row.version == latest_version
    return data


def _serialize_audit_event(row: ArtifactAuditEvent) -> dict:
    return {
        "id": str(row.id),
        "artifact_class": row.artifact_class,
        "artifact_id": str(row.artifact_id),
        "lineage_id": str(row.lineage_id),
        "version": row.version,
        "event_type": _enum_value(row.event_type),
        "actor": row.actor,
        "request_id": row.request_id,
        "data": row.data or {},
        "created_at": _iso(row.created_at),
    }


def _find_artifact(db, owner_id: str, artifact_id, artifact_class: Optional[str] = None, *, for_update: bool = False):
    """Locate an owner's artifact version; returns (artifact_class, row)."""
    classes = [artifact_class] if artifact_class else list(ARTIFACT_MODELS)
    for name in classes:
        model = _artifact_model(name)
        query = db.query(model).filter(model.owner_id == owner_id).filter(model.id == artifact_id)
        if for_update:
            query = query.with_for_update()
        row = query.first()
        if row:
            return name, row
    raise NotFoundError(f"Artifact not found: {artifact_id}", resource="artifact", resource_id=str(artifact_id))


def _latest_version(db, model, lineage_id) -> int:
    return db.query(func.max(model.version)).filter(model.lineage_id == lineage_id).scalar() or 0


def _require_latest_draft(db, artifact_class: str, row, action: str) -> int:
    model = ARTIFACT_MODELS[artifact_class]
    latest = _latest_version(db, model, row.lineage_id)
    if row.status != ArtifactStatus.draft or row.version != latest:
        raise ConflictError(
            f"Cannot {action} {artifact_class} v{row.version} ({_enum_value(row.status)}); "
            f"only the latest draft (v{latest}) of a lineage can be changed",
            error_code="not_latest_draft",
            data={
                "artifact_id": str(row.id),
                "version": row.version,
                "status": _enum_value(row.status),
                "latest_version": latest,
            },
        )
    return latest


def _check_expected_version(row, expected_version: Optional[int]) -> None:
    if expected_version is None:
        return
    _validate_positive_int(expected_version, "expected_version")
    if row.version != expected_version:
        raise ConflictError(
            f"Artifact is at version {row.version}, not {expected_version}",
            error_code="stale_version",
            data={"current_version": row.version},
        )


def _audit(
    db,
    artifact_class: str,
    row,
    event_type: AuditEventType,
    context: Optional[RequestContext],
    data: Optional[dict] = None,
    actor: Optional[str] = None,
) -> ArtifactAuditEvent:
    ctx = context or get_current_request_context()
    event = ArtifactAuditEvent(
        artifact_class=artifact_class,
        artifact_id=row.id,
        lineage_id=row.lineage_id,
        version=row.version,
        owner_id=row.owner_id,
        event_type=event_type,
        actor=actor or resolve_actor(context),
        request_id=ctx.request_id if ctx else None,
        data=data or {},
        created_at=datetime.utcnow(),
    )
    db.add(event)
    return event


def _advance_journey(db, owner_id: str, artifact_class: str, transition: str) -> None:
    for phase, status, keep in JOURNEY_TRANSITIONS.get((artifact_class, transition), ()):
        apply_phase_status(db, owner_id, phase, status, keep=keep)


def merge_patch(target, patch):
    """Apply an RFC 7386 JSON merge patch and return the merged document."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


@service_tool
def draft_artifact(
    artifact_class: str,
    content: dict,
    based_on_id: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Create version 1 of a new lineage, or the next draft of an existing one.

    With based_on_id the draft continues that artifact's lineage; this is
    how an approved or active version gets revised.
    """
    model = _artifact_model(artifact_class)
    document = validate_artifact_content(artifact_class, content)
    owner_id = resolve_owner_id(context)
    actor = resolve_actor(context)
    base_key = _validate_uuid(based_on_id, "based_on_id") if based_on_id is not None else None

    db = DB.SessionLocal()
    try:
        now = datetime.utcnow()
        if base_key is not None:
            _, base = _find_artifact(db, owner_id, base_key, artifact_class)
            lineage_id = base.lineage_id
            latest = _latest_version(db, model, lineage_id)
            head = db.query(model).filter(model.lineage_id == lineage_id).filter(model.version == latest).first()
            if head.status == ArtifactStatus.draft:
                raise ConflictError(
                    f"Lineage already has an open draft at v{latest}; edit it instead",
                    error_code="draft_exists",
                    data={"artifact_id": str(head.id), "version": latest},
                )
            version = latest + 1
        else:
            lineage_id = _validate_uuid(str(uuid.uuid4()), "lineage_id")
            version = 1

        row = model(
            owner_id=owner_id,
            lineage_id=lineage_id,
            version=version,
            status=ArtifactStatus.draft,
            content=document,
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        db.flush()
        _audit(
            db,
            artifact_class,
            row,
            AuditEventType.draft,
            context,
            data={"based_on": str(base_key) if base_key is not None else None},
        )
        _advance_journey(db, owner_id, artifact_class, "draft")
        db.commit()
        db.refresh(row)
        logger.info(f"Drafted {artifact_class} {row.id} v{row.version}")
        return {"status": "drafted", "artifact": _serialize_artifact(artifact_class, row, row.version)}
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            "Another draft of this lineage was created concurrently",
            error_code="version_conflict",
        ) from exc
    finally:
        db.close()


@service_tool
def edit_artifact(
    artifact_id: str,
    patch: Optional[dict] = None,
    instruction: Optional[str] = None,
    expected_version: Optional[int] = None,
    artifact_class: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Write the next version of a lineage from a merge patch or an instruction.

    The reasoning engine (instruction mode) runs between two short
    transactions: a snapshot read and the version insert. The insert
    re-checks that the snapshot is still the latest draft.
    """
    if (patch is None) == (instruction is None):
        raise ValidationIssue(
            "Provide exactly one of patch or instruction",
            field="patch",
            error_type="invalid_combination",
        )
    if patch is not None and not isinstance(patch, dict):
        raise ValidationIssue("patch must be a JSON object", field="patch", error_type="invalid_type")
    if instruction is not None:
        _validate_required_text(instruction, "instruction", MAX_TEXT_LENGTH)
    if artifact_class is not None:
        _artifact_model(artifact_class)
    owner_id = resolve_owner_id(context)
    artifact_key = _validate_uuid(artifact_id, "artifact_id")

    db = DB.SessionLocal()
    try:
        artifact_class, base = _find_artifact(db, owner_id, artifact_key, artifact_class)
        _check_expected_version(base, expected_version)
        _require_latest_draft(db, artifact_class, base, "edit")
        snapshot = copy.deepcopy(base.content)
        base_version = base.version
        lineage_id = base.lineage_id
    finally:
        db.close()

    if instruction is not None:
        proposed = reasoning.revise(artifact_class, snapshot, instruction)
        if not isinstance(proposed, dict):
            raise ValidationIssue(
                "Reasoning engine did not return a JSON object",
                field="instruction",
                error_type="invalid_engine_output",
            )
    else:
        proposed = merge_patch(snapshot, patch)
    document = validate_artifact_content(artifact_class, proposed)

    model = ARTIFACT_MODELS[artifact_class]
    db = DB.SessionLocal()
    try:
        _, base = _find_artifact(db, owner_id, artifact_key, artifact_class, for_update=True)
        _require_latest_draft(db, artifact_class, base, "edit")
        if base.version != base_version:
            raise ConflictError("Artifact changed during edit", error_code="stale_version")
        now = datetime.utcnow()
        row = model(
            owner_id=owner_id,
            lineage_id=lineage_id,
            version=base_version + 1,
            status=ArtifactStatus.draft,
            content=document,
            created_by=resolve_actor(context),
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        db.flush()
        audit_data = {"mode": "instruction" if instruction is not None else "patch", "from_version": base_version}
        if instruction is not None:
            audit_data["instruction"] = instruction
        else:
            audit_data["patch"] = patch
        _audit(db, artifact_class, row, AuditEventType.edit, context, data=audit_data)
        _advance_journey(db, owner_id, artifact_class, "edit")
        db.commit()
        db.refresh(row)
        return {"status": "edited", "artifact": _serialize_artifact(artifact_class, row, row.version)}
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            f"v{base_version + 1} of this lineage was written concurrently; re-fetch and retry",
            error_code="version_conflict",
            data={"base_version": base_version},
        ) from exc
    finally:
        db.close()


@service_tool
def approve_artifact(
    artifact_id: str,
    expected_version: Optional[int] = None,
    artifact_class: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    owner_id = resolve_owner_id(context)
    artifact_key = _validate_uuid(artifact_id, "artifact_id")

    db = DB.SessionLocal()
    try:
        artifact_class, row = _find_artifact(db, owner_id, artifact_key, artifact_class, for_update=True)
        _check_expected_version(row, expected_version)
        latest = _require_latest_draft(db, artifact_class, row, "approve")
        now = datetime.utcnow()
        row.status = ArtifactStatus.approved
        row.approved_at = now
        row.updated_at = now
        _audit(db, artifact_class, row, AuditEventType.approve, context)
        _advance_journey(db, owner_id, artifact_class, "approve")
        db.commit()
        db.refresh(row)
        logger.info(f"Approved {artifact_class} {row.id} v{row.version}")
        return {"status": "approved", "artifact": _serialize_artifact(artifact_class, row, latest)}
    finally:
        db.close()


@service_tool
def activate_artifact(
    artifact_id: str,
    expected_pointer_revision: Optional[int] = None,
    artifact_class: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Make an approved version the single active one for its class.

    The previously active version is archived and the active pointer swapped
    in the same transaction. The swap is conditional on the pointer revision,
    either the caller's expected_pointer_revision or the one read here.
    """
    if expected_pointer_revision is not None:
        _validate_positive_int(expected_pointer_revision, "expected_pointer_revision", allow_zero=True)
    owner_id = resolve_owner_id(context)
    artifact_key = _validate_uuid(artifact_id, "artifact_id")

    db = DB.SessionLocal()
    try:
        artifact_class, row = _find_artifact(db, owner_id, artifact_key, artifact_class, for_update=True)
        if artifact_class not in ACTIVATABLE_CLASSES:
            raise ValidationIssue(
                f"{artifact_class} artifacts cannot be activated",
                field="artifact_class",
                error_type="not_activatable",
            )
        model = ARTIFACT_MODELS[artifact_class]
        pointer = load_pointer(db, owner_id, artifact_class)
        revision = pointer.revision if pointer else 0
        if expected_pointer_revision is not None and expected_pointer_revision != revision:
            raise ConflictError(
                f"Active {artifact_class} pointer is at revision {revision}, not {expected_pointer_revision}",
                error_code="stale_pointer",
                data={
                    "current_revision": revision,
                    "current_artifact_id": str(pointer.artifact_id) if pointer and pointer.artifact_id else None,
                },
            )
        if row.status == ArtifactStatus.active:
            return {
                "status": "already_active",
                "artifact": _serialize_artifact(artifact_class, row),
                "pointer_revision": revision,
            }
        if row.status != ArtifactStatus.approved:
            raise ConflictError(
                f"Only approved versions can be activated; v{row.version} is {_enum_value(row.status)}",
                error_code="not_approved",
                data={"status": _enum_value(row.status), "version": row.version},
            )

        now = datetime.utcnow()
        previous = (
            db.query(model)
            .filter(model.owner_id == owner_id)
            .filter(model.status == ArtifactStatus.active)
            .with_for_update()
            .first()
        )
        if previous is not None:
            previous.status = ArtifactStatus.archived
            previous.archived_at = now
            previous.updated_at = now
            _audit(db, artifact_class, previous, AuditEventType.archive, context, data={"superseded_by": str(row.id)})
            db.flush()

        row.status = ArtifactStatus.active
        row.activated_at = now
        row.updated_at = now
        db.flush()
        new_revision = swap_pointer(db, owner_id, artifact_class, revision, row)
        _audit(
            db,
            artifact_class,
            row,
            AuditEventType.activate,
            context,
            data={
                "pointer_revision": new_revision,
                "previous_artifact_id": str(previous.id) if previous is not None else None,
            },
        )
        _advance_journey(db, owner_id, artifact_class, "activate")
        db.commit()
        db.refresh(row)
        logger.info(f"Activated {artifact_class} {row.id} v{row.version} (pointer revision {new_revision})")
        return {
            "status": "activated",
            "artifact": _serialize_artifact(artifact_class, row),
            "pointer_revision": new_revision,
            "archived_artifact_id": str(previous.id) if previous is not None else None,
        }
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            f"Another {artifact_class} was activated concurrently; re-read and retry",
            error_code="stale_pointer",
        ) from exc
    except ConflictError:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def defer_artifact(
    artifact_id: str,
    artifact_class: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    owner_id = resolve_owner_id(context)
    artifact_key = _validate_uuid(artifact_id, "artifact_id")

    db = DB.SessionLocal()
    try:
        artifact_class, row = _find_artifact(db, owner_id, artifact_key, artifact_class, for_update=True)
        if artifact_class not in DEFERRABLE_CLASSES:
            raise ValidationIssue(
                f"{artifact_class} artifacts cannot be deferred",
                field="artifact_class",
                error_type="not_deferrable",
            )
        _require_latest_draft(db, artifact_class, row, "defer")
        now = datetime.utcnow()
        row.status = ArtifactStatus.deferred
        row.deferred_at = now
        row.updated_at = now
        _audit(db, artifact_class, row, AuditEventType.defer, context)
        _advance_journey(db, owner_id, artifact_class, "defer")
        db.commit()
        db.refresh(row)
        return {"status": "deferred", "artifact": _serialize_artifact(artifact_class, row)}
    finally:
        db.close()


@service_tool
def archive_artifact(
    artifact_id: str,
    artifact_class: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Archive an approved or active version.

    Archiving the active version leaves the class with no active artifact;
    the pointer is cleared with a revision bump.
    """
    owner_id = resolve_owner_id(context)
    artifact_key = _validate_uuid(artifact_id, "artifact_id")

    db = DB.SessionLocal()
    try:
        artifact_class, row = _find_artifact(db, owner_id, artifact_key, artifact_class, for_update=True)
        if row.status not in (ArtifactStatus.approved, ArtifactStatus.active):
            raise ConflictError(
                f"Only approved or active versions can be archived; v{row.version} is {_enum_value(row.status)}",
                error_code="not_archivable",
                data={"status": _enum_value(row.status)},
            )
        was_active = row.status == ArtifactStatus.active
        now = datetime.utcnow()
        row.status = ArtifactStatus.archived
        row.archived_at = now
        row.updated_at = now
        pointer_revision = None
        if was_active:
            pointer = load_pointer(db, owner_id, artifact_class)
            if pointer is not None and pointer.artifact_id is not None and str(pointer.artifact_id) == str(row.id):
                pointer_revision = swap_pointer(db, owner_id, artifact_class, pointer.revision, None)
        _audit(db, artifact_class, row, AuditEventType.archive, context, data={"was_active": was_active})
        db.commit()
        db.refresh(row)
        return {
            "status": "archived",
            "artifact": _serialize_artifact(artifact_class, row),
            "pointer_revision": pointer_revision,
        }
    except ConflictError:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def review_artifact(
    artifact_id: str,
    reviewer: Optional[str] = None,
    notes: Optional[str] = None,
    artifact_class: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Record a review note on a version without changing its status."""
    _validate_optional_text(reviewer, "reviewer", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(notes, "notes", MAX_TEXT_LENGTH)
    owner_id = resolve_owner_id(context)
    artifact_key = _validate_uuid(artifact_id, "artifact_id")

    db = DB.SessionLocal()
    try:
        artifact_class, row = _find_artifact(db, owner_id, artifact_key, artifact_class)
        event = _audit(
            db,
            artifact_class,
            row,
            AuditEventType.review,
            context,
            data={"notes": notes, "status": _enum_value(row.status)},
            actor=reviewer,
        )
        db.commit()
        return {"status": "reviewed", "event": _serialize_audit_event(event)}
    finally:
        db.close()


@service_tool
def get_artifact(
    artifact_id: str,
    artifact_class: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    owner_id = resolve_owner_id(context)
    artifact_key = _validate_uuid(artifact_id, "artifact_id")

    db = DB.SessionLocal()
    try:
        artifact_class, row = _find_artifact(db, owner_id, artifact_key, artifact_class)
        latest = _latest_version(db, ARTIFACT_MODELS[artifact_class], row.lineage_id)
        return {"status": "ok", "artifact": _serialize_artifact(artifact_class, row, latest)}
    finally:
        db.close()


@service_tool
def get_active_artifact(
    artifact_class: str,
    context: Optional[RequestContext] = None,
) -> dict:
    """Resolve the active pointer to the artifact it names."""
    model = _artifact_model(artifact_class)
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        pointer = load_pointer(db, owner_id, artifact_class)
        if pointer is None or pointer.artifact_id is None:
            return {"status": "not_found", "artifact_class": artifact_class}
        row = db.query(model).filter(model.id == pointer.artifact_id).first()
        if row is None:
            return {"status": "not_found", "artifact_class": artifact_class}
        return {
            "status": "ok",
            "artifact": _serialize_artifact(artifact_class, row),
            "pointer_revision": pointer.revision,
        }
    finally:
        db.close()


@service_tool
def list_artifacts(
    artifact_class: str,
    status: Optional[str] = None,
    limit: int = 20,
    context: Optional[RequestContext] = None,
) -> dict:
    """Newest versions first across all of the caller's lineages of a class."""
    model = _artifact_model(artifact_class)
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)
    status_value = None
    if status is not None:
        try:
            status_value = ArtifactStatus(status)
        except ValueError as exc:
            raise ValidationIssue(
                f"status must be one of: {'|'.join(s.value for s in ArtifactStatus)}",
                field="status",
                error_type="invalid_value",
            ) from exc
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        query = db.query(model).filter(model.owner_id == owner_id)
        if status_value is not None:
            query = query.filter(model.status == status_value)
        rows = query.order_by(model.created_at.desc(), model.version.desc()).limit(limit).all()
        return {
            "status": "ok",
            "count": len(rows),
            "artifacts": [_serialize_artifact(artifact_class, row) for row in rows],
        }
    finally:
        db.close()


@service_tool
def list_versions(
    artifact_class: str,
    lineage_id: str,
    context: Optional[RequestContext] = None,
) -> dict:
    model = _artifact_model(artifact_class)
    owner_id = resolve_owner_id(context)
    lineage_key = _validate_uuid(lineage_id, "lineage_id")

    db = DB.SessionLocal()
    try:
        rows = (
            db.query(model)
            .filter(model.owner_id == owner_id)
            .filter(model.lineage_id == lineage_key)
            .order_by(model.version.asc())
            .all()
        )
        if not rows:
            raise NotFoundError(f"Lineage not found: {lineage_id}", resource="lineage", resource_id=lineage_id)
        latest = rows[-1].version
        return {
            "status": "ok",
            "lineage_id": str(lineage_key),
            "latest_version": latest,
            "versions": [_serialize_artifact(artifact_class, row, latest) for row in rows],
        }
    finally:
        db.close()


@service_tool
def list_audit_events(
    lineage_id: str,
    context: Optional[RequestContext] = None,
) -> dict:
    owner_id = resolve_owner_id(context)
    lineage_key = _validate_uuid(lineage_id, "lineage_id")

    db = DB.SessionLocal()
    try:
        rows = (
            db.query(ArtifactAuditEvent)
            .filter(ArtifactAuditEvent.owner_id == owner_id)
            .filter(ArtifactAuditEvent.lineage_id == lineage_key)
            .order_by(ArtifactAuditEvent.created_at.asc())
            .all()
        )
        return {
            "status": "ok",
            "lineage_id": str(lineage_key),
            "count": len(rows),
            "events": [_serialize_audit_event(row) for row in rows],
        }
    finally:
        db.close()


def program_to_markdown(program: dict) -> str:
    """Render training program content as markdown for display."""
    lines: list[str] = []

    goals = program.get("goals")
    if goals:
        lines.append("## Goals")
        lines.append(f"**Primary:** {goals.get('primary') or ''}")
        if goals.get("secondary"):
            lines.append(f"**Secondary:** {goals['secondary']}")
        lines.append(f"**Timeline:** {goals.get('timeline_weeks') or '?'} weeks")
        if goals.get("metrics"):
            lines.extend(["", "**Success Metrics:**"])
            lines.extend(f"- {metric}" for metric in goals["metrics"])
        lines.append("")

    template = program.get("weekly_template")
    if template:
        lines.append("## Weekly Schedule")
        lines.append(f"**Days per week:** {template.get('days_per_week') or '?'}")
        if template.get("preferred_days"):
            lines.append(f"**Preferred days:** {', '.join(template['preferred_days'])}")
        if template.get("session_types"):
            lines.append(f"**Session types:** {', '.join(template['session_types'])}")
        lines.append("")

    sessions = program.get("sessions") or []
    if sessions:
        lines.append("## Sessions")
        for index, session in enumerate(sessions, start=1):
            lines.append(f"### Day {index}: {session.get('focus')}")
            if session.get("duration_min") is not None:
                lines.append(f"*~{session['duration_min']} minutes*")
            if session.get("equipment"):
                lines.append(f"**Equipment:** {', '.join(session['equipment'])}")
            if session.get("notes"):
                lines.append(session["notes"])
            lines.append("")

    progression = program.get("progression")
    if progression:
        lines.append("## Progression")
        lines.append(progression.get("strategy") or "")
        if progression.get("deload_trigger"):
            lines.append(f"**Deload trigger:** {progression['deload_trigger']}")
        if progression.get("time_scaling"):
            lines.extend(["", "**Time scaling options:**"])
            lines.extend(f"- {option} min" for option in progression["time_scaling"])
        lines.append("")

    rules = program.get("exercise_rules") or {}
    if rules.get("prefer") or rules.get("avoid"):
        lines.append("## Exercise Preferences")
        if rules.get("prefer"):
            lines.append("**Preferred:**")
            lines.extend(f"- {name}" for name in rules["prefer"])
        if rules.get("avoid"):
            lines.append("**Avoid:**")
            lines.extend(f"- {name}" for name in rules["avoid"])
        lines.append("")

    guardrails = program.get("guardrails")
    if guardrails:
        lines.append("## Safety")
        if guardrails.get("pain_scale"):
            lines.append(f"**Pain management:** {guardrails['pain_scale']}")
        if guardrails.get("red_flags"):
            lines.append("**Red flags:**")
            lines.extend(f"- {flag}" for flag in guardrails["red_flags"])
        lines.append("")

    cues = program.get("coach_cues") or []
    if cues:
        lines.append("## Coach Notes")
        lines.extend(f"> {cue}" for cue in cues)
        lines.append("")

    return "\n".join(lines)


__all__ = [
    "ACTIVATABLE_CLASSES",
    "merge_patch",
    "draft_artifact",
    "edit_artifact",
    "approve_artifact",
    "activate_artifact",
    "defer_artifact",
    "archive_artifact",
    "review_artifact",
    "get_artifact",
    "get_active_artifact",
    "list_artifacts",
    "list_versions",
    "list_audit_events",
    "program_to_markdown",
]
