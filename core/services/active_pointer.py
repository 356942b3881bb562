"""
Active-version pointer: one row per (owner, artifact class) naming the
canonical artifact version. Swaps are conditional on the row's revision so
two activations racing from the same read cannot both win.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from core.context import RequestContext, resolve_owner_id
from core.db import DB
from core.errors import ConflictError, ValidationIssue
from core.models import ARTIFACT_MODELS, ActivePointer
from core.services.shared import _iso, service_tool


def _serialize_pointer(row: ActivePointer) -> dict:
    return {
        "owner_id": row.owner_id,
        "artifact_class": row.artifact_class,
        "artifact_id": str(row.artifact_id) if row.artifact_id else None,
        "lineage_id": str(row.lineage_id) if row.lineage_id else None,
        "version": row.version,
        "revision": row.revision,
        "updated_at": _iso(row.updated_at),
    }


def load_pointer(db, owner_id: str, artifact_class: str) -> Optional[ActivePointer]:
    return (
        db.query(ActivePointer)
        .filter(ActivePointer.owner_id == owner_id)
        .filter(ActivePointer.artifact_class == artifact_class)
        .first()
    )


def current_revision(db, owner_id: str, artifact_class: str) -> int:
    """Revision of the pointer row, or 0 when none exists yet."""
    row = load_pointer(db, owner_id, artifact_class)
    return row.revision if row else 0


def _stale(owner_id: str, artifact_class: str, expected: int, current: Optional[ActivePointer]) -> ConflictError:
    return ConflictError(
        f"Active {artifact_class} pointer moved (expected revision {expected}); re-read and retry",
        error_code="stale_pointer",
        data={
            "artifact_class": artifact_class,
            "expected_revision": expected,
            "current_revision": current.revision if current else None,
            "current_artifact_id": str(current.artifact_id) if current and current.artifact_id else None,
        },
    )


def swap_pointer(
    db,
    owner_id: str,
    artifact_class: str,
    expected_revision: int,
    artifact_row=None,
) -> int:
    """Point (owner, class) at artifact_row, or at nothing when it is None.

    Runs inside the caller's transaction and returns the new revision.
    Raises ConflictError when the stored revision is not expected_revision.
    """
    now = datetime.utcnow()
    values = {
        "artifact_id": artifact_row.id if artifact_row is not None else None,
        "lineage_id": artifact_row.lineage_id if artifact_row is not None else None,
        "version": artifact_row.version if artifact_row is not None else None,
        "updated_at": now,
    }

    if expected_revision == 0:
        pointer = ActivePointer(
            owner_id=owner_id,
            artifact_class=artifact_class,
            revision=1,
            **values,
        )
        db.add(pointer)
        try:
            db.flush()
        except IntegrityError as exc:
            # The session is unusable after a failed flush; the caller rolls back.
            raise _stale(owner_id, artifact_class, expected_revision, None) from exc
        return 1

    updated = (
        db.query(ActivePointer)
        .filter(ActivePointer.owner_id == owner_id)
        .filter(ActivePointer.artifact_class == artifact_class)
        .filter(ActivePointer.revision == expected_revision)
        .update(
            {**values, "revision": expected_revision + 1},
            synchronize_session=False,
        )
    )
    if updated != 1:
        raise _stale(owner_id, artifact_class, expected_revision, load_pointer(db, owner_id, artifact_class))
    return expected_revision + 1


@service_tool
def get_active_pointer(
    artifact_class: str,
    context: Optional[RequestContext] = None,
) -> dict:
    if artifact_class not in ARTIFACT_MODELS:
        raise ValidationIssue(
            f"Unknown artifact class: {artifact_class}",
            field="artifact_class",
            error_type="invalid_value",
        )
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        row = load_pointer(db, owner_id, artifact_class)
        if not row or row.artifact_id is None:
            return {
                "status": "not_found",
                "artifact_class": artifact_class,
                "revision": row.revision if row else 0,
            }
        return {"status": "ok", "pointer": _serialize_pointer(row)}
    finally:
        db.close()


__all__ = [
    "load_pointer",
    "current_revision",
    "swap_pointer",
    "get_active_pointer",
]
