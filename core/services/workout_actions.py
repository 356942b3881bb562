"""
Workout tracking: sessions, exercises and idempotent exercise commands.

Clients mutate exercises only through commands carrying a client-generated
command_id. A command is applied at most once per owner; a retry with the
same command_id gets the originally recorded result back.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

import core.config as config
from core.context import RequestContext, resolve_owner_id
from core.db import DB
from core.errors import ConflictError, NotFoundError, StorageError, ValidationIssue
from core.models import (
    AgentSession,
    ArtifactStatus,
    CoachMode,
    EventType,
    ExerciseStatus,
    ExerciseType,
    SessionStatus,
    Workout,
    WorkoutActionLog,
    WorkoutExercise,
    WorkoutInstance,
    WorkoutSession,
    WorkoutSessionStatus,
)
from core.schemas import (
    CURRENT_PAYLOAD_SCHEMA_VERSION,
    ClientMeta,
    parse_exercise_command,
    parse_exercise_payload,
    validate_artifact_content,
)
from core.services.distribution import fold_in, unfold_in
from core.services.session_events import append_event_locked
from core.services.shared import (
    _enum_value,
    _iso,
    _parse_timestamp,
    _utc_naive,
    _validate_limit,
    _validate_metadata,
    _validate_optional_text,
    _validate_positive_int,
    _validate_required_text,
    _validate_uuid,
    MAX_SHORT_TEXT_LENGTH,
    MAX_TEXT_LENGTH,
    logger,
    service_tool,
)

HISTORY_STATUSES = (
    WorkoutSessionStatus.completed,
    WorkoutSessionStatus.stopped,
    WorkoutSessionStatus.canceled,
)


# =============================================================================
# Exercise payload reducer (pure)
# =============================================================================

def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def _number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def infer_exercise_type(exercise: dict) -> str:
    raw = str(exercise.get("exercise_type") or exercise.get("type") or "").lower()
    return raw if raw in ("hold", "duration", "intervals") else "reps"


def infer_set_count(exercise: dict, exercise_type: str) -> int:
    sets = _number(exercise.get("sets"))
    if sets is not None:
        return max(1, round(sets))
    rounds = _number(exercise.get("rounds"))
    if exercise_type == "intervals" and rounds is not None:
        return max(1, round(rounds))
    if exercise_type == "duration":
        return 1
    lengths = [
        len(exercise.get(key) or [])
        for key in ("reps", "load_each", "hold_duration_sec")
        if isinstance(exercise.get(key), list)
    ]
    return max([1, *lengths])


def _at(values, index: int):
    if isinstance(values, list) and index < len(values):
        return _number(values[index])
    return None


def build_initial_payload(exercise: dict) -> dict:
    """Expand a planned exercise into a tracking payload with empty performance."""
    exercise_type = infer_exercise_type(exercise)
    set_count = infer_set_count(exercise, exercise_type)
    load_unit = exercise.get("load_unit")

    prescription_sets = []
    for index in range(set_count):
        target = {
            "target_reps": None,
            "target_load": None,
            "load_unit": load_unit,
            "target_duration_sec": None,
            "target_distance_km": None,
        }
        if exercise_type == "reps":
            reps = _at(exercise.get("reps"), index)
            target["target_reps"] = max(0, round(reps)) if reps is not None else None
            loads = exercise.get("load_each")
            load = _at(loads, index)
            if load is None and isinstance(loads, list) and len(loads) == 1:
                load = _at(loads, 0)
            target["target_load"] = max(0.0, float(load)) if load is not None else None
        elif exercise_type == "hold":
            hold = _at(exercise.get("hold_duration_sec"), index)
            target["target_duration_sec"] = max(0, round(hold)) if hold is not None else None
        elif exercise_type == "duration":
            minutes = _number(exercise.get("duration_min"))
            target["target_duration_sec"] = max(0, round(minutes * 60)) if minutes is not None else None
            distance = _number(exercise.get("distance_km"))
            target["target_distance_km"] = max(0.0, float(distance)) if distance is not None else None
        elif exercise_type == "intervals":
            work = _number(exercise.get("work_sec"))
            target["target_duration_sec"] = max(0, round(work)) if work is not None else None
        prescription_sets.append(target)

    rest = _number(exercise.get("rest_seconds"))
    return {
        "schema_version": CURRENT_PAYLOAD_SCHEMA_VERSION,
        "identity": {
            "name": exercise.get("exercise_name") or exercise.get("name") or "Exercise",
            "type": exercise_type,
        },
        "prescription": {
            "sets": prescription_sets,
            "rest_seconds": max(0, round(rest)) if rest is not None else None,
        },
        "performance": {
            "sets": [
                {
                    "actual_reps": None,
                    "actual_load": None,
                    "load_unit": load_unit,
                    "actual_duration_sec": None,
                    "actual_distance_km": None,
                    "rpe": None,
                    "completed_at": None,
                }
                for _ in prescription_sets
            ],
            "exercise_rpe": None,
            "notes": None,
        },
        "flags": {"pain": False, "modified": False, "skip_reason": None},
    }


def has_set_performance(performance_set: dict) -> bool:
    return any(
        performance_set.get(key) is not None
        for key in ("actual_reps", "actual_duration_sec", "actual_distance_km", "actual_load")
    )


def derive_exercise_status(payload: dict, current_status: str) -> str:
    if current_status == ExerciseStatus.skipped.value:
        return ExerciseStatus.skipped.value
    sets = payload["performance"]["sets"]
    done = sum(1 for s in sets if has_set_performance(s))
    if done == 0:
        return ExerciseStatus.pending.value
    if done >= len(sets):
        return ExerciseStatus.completed.value
    return ExerciseStatus.in_progress.value


def derive_exercise_metrics(payload: dict) -> dict:
    total_reps = 0
    volume = 0.0
    duration_sec = 0
    set_rpes = []
    for performed in payload["performance"]["sets"]:
        reps = performed.get("actual_reps") or 0
        load = performed.get("actual_load") or 0.0
        total_reps += reps
        volume += reps * load
        duration_sec += performed.get("actual_duration_sec") or 0
        if performed.get("rpe") is not None:
            set_rpes.append(performed["rpe"])

    exercise_rpe = payload["performance"].get("exercise_rpe")
    if exercise_rpe is None and set_rpes:
        exercise_rpe = round(sum(set_rpes) / len(set_rpes))
    return {
        "exercise_name": payload["identity"]["name"],
        "exercise_rpe": exercise_rpe,
        "total_reps": total_reps,
        "volume": volume,
        "duration_sec": duration_sec,
    }


def _require_set(payload: dict, set_index: int) -> None:
    count = len(payload["performance"]["sets"])
    if set_index >= count:
        raise ValidationIssue(
            f"set_index {set_index} out of range (exercise has {count} sets)",
            field="command.set_index",
            error_type="out_of_range",
        )


def _merge_fields(target: dict, command, fields: tuple) -> None:
    for field in fields:
        value = getattr(command, field)
        if value is not None:
            target[field] = value


ACTUAL_FIELDS = ("actual_reps", "actual_load", "load_unit", "actual_duration_sec", "actual_distance_km", "rpe")
TARGET_FIELDS = ("target_reps", "target_load", "load_unit", "target_duration_sec", "target_distance_km")


def apply_command(payload: dict, current_status: str, command) -> dict:
    """Reduce one command over an exercise payload.

    Returns {"payload", "status", "metrics"} without touching the input.
    """
    command = parse_exercise_command(command)
    state = copy.deepcopy(parse_exercise_payload(payload).model_dump(mode="json"))
    status = current_status

    if command.type == "complete_set":
        _require_set(state, command.set_index)
        performed = state["performance"]["sets"][command.set_index]
        _merge_fields(performed, command, ACTUAL_FIELDS)
        performed["completed_at"] = _now_iso()
        status = derive_exercise_status(state, current_status)
    elif command.type == "update_set_target":
        _require_set(state, command.set_index)
        _merge_fields(state["prescription"]["sets"][command.set_index], command, TARGET_FIELDS)
        state["flags"]["modified"] = True
    elif command.type == "update_set_actual":
        _require_set(state, command.set_index)
        performed = state["performance"]["sets"][command.set_index]
        _merge_fields(performed, command, ACTUAL_FIELDS)
        if has_set_performance(performed) and not performed.get("completed_at"):
            performed["completed_at"] = _now_iso()
        status = derive_exercise_status(state, current_status)
    elif command.type == "set_exercise_rpe":
        state["performance"]["exercise_rpe"] = command.rpe
    elif command.type == "set_exercise_note":
        state["performance"]["notes"] = command.notes
    elif command.type == "skip_exercise":
        state["flags"]["skip_reason"] = command.reason or "user_skipped"
        status = ExerciseStatus.skipped.value
    elif command.type == "unskip_exercise":
        state["flags"]["skip_reason"] = None
        status = derive_exercise_status(state, ExerciseStatus.pending.value)
    elif command.type == "complete_exercise":
        stamp = _now_iso()
        for performed in state["performance"]["sets"]:
            if not performed.get("completed_at") and has_set_performance(performed):
                performed["completed_at"] = stamp
        status = ExerciseStatus.completed.value
    elif command.type == "reopen_exercise":
        status = derive_exercise_status(state, ExerciseStatus.pending.value)
    elif command.type == "adjust_rest_seconds":
        state["prescription"]["rest_seconds"] = command.rest_seconds
        state["flags"]["modified"] = True

    normalized = parse_exercise_payload(state).model_dump(mode="json")
    return {
        "payload": normalized,
        "status": ExerciseStatus(status).value,
        "metrics": derive_exercise_metrics(normalized),
    }


# =============================================================================
# Serialization
# =============================================================================

def _serialize_session(row: WorkoutSession) -> dict:
    return {
        "id": str(row.id),
        "status": _enum_value(row.status),
        "coach_mode": _enum_value(row.coach_mode),
        "event_session_id": str(row.event_session_id) if row.event_session_id else None,
        "instance_id": str(row.instance_id) if row.instance_id else None,
        "started_at": _iso(row.started_at),
        "completed_at": _iso(row.completed_at),
        "session_rpe": row.session_rpe,
        "notes": row.notes,
        "summary": row.summary,
        "metadata": row.metadata_ or {},
    }


def _serialize_workout(row: Optional[Workout]) -> Optional[dict]:
    if row is None:
        return None
    return {
        "id": str(row.id),
        "session_id": str(row.session_id),
        "title": row.title,
        "workout_type": row.workout_type,
        "planned_duration_min": row.planned_duration_min,
        "actual_duration_min": row.actual_duration_min,
    }


def _serialize_exercise(row: WorkoutExercise) -> dict:
    return {
        "id": str(row.id),
        "workout_id": str(row.workout_id),
        "exercise_order": row.exercise_order,
        "exercise_type": _enum_value(row.exercise_type),
        "status": _enum_value(row.status),
        "payload": row.payload,
        "payload_version": row.payload_version,
        "exercise_name": row.exercise_name,
        "exercise_rpe": row.exercise_rpe,
        "total_reps": row.total_reps,
        "volume": row.volume,
        "duration_sec": row.duration_sec,
        "goals_addressed": row.goals_addressed or [],
        "muscles_utilized": row.muscles_utilized or [],
        "completed_at": _iso(row.completed_at),
    }


# =============================================================================
# Lookups
# =============================================================================

def _require_workout_session(db, owner_id: str, session_id, *, for_update: bool = False) -> WorkoutSession:
    query = (
        db.query(WorkoutSession)
        .filter(WorkoutSession.owner_id == owner_id)
        .filter(WorkoutSession.id == session_id)
    )
    if for_update:
        query = query.with_for_update()
    row = query.first()
    if row is None:
        raise NotFoundError(f"Workout session not found: {session_id}", resource="workout_session", resource_id=str(session_id))
    return row


def _require_exercise(db, owner_id: str, exercise_id):
    """Return (exercise, workout, session) for an exercise the owner can touch."""
    result = (
        db.query(WorkoutExercise, Workout, WorkoutSession)
        .join(Workout, Workout.id == WorkoutExercise.workout_id)
        .join(WorkoutSession, WorkoutSession.id == Workout.session_id)
        .filter(WorkoutExercise.id == exercise_id)
        .filter(WorkoutSession.owner_id == owner_id)
        .first()
    )
    if result is None:
        raise NotFoundError(f"Exercise not found: {exercise_id}", resource="exercise", resource_id=str(exercise_id))
    return result


def _exercises_for(db, workout_id) -> list[WorkoutExercise]:
    return (
        db.query(WorkoutExercise)
        .filter(WorkoutExercise.workout_id == workout_id)
        .order_by(WorkoutExercise.exercise_order.asc())
        .all()
    )


def _session_detail(db, session_row: WorkoutSession) -> dict:
    workout = db.query(Workout).filter(Workout.session_id == session_row.id).first()
    exercises = _exercises_for(db, workout.id) if workout else []
    return {
        "session": _serialize_session(session_row),
        "workout": _serialize_workout(workout),
        "exercises": [_serialize_exercise(row) for row in exercises],
    }


def _recorded_result(db, owner_id: str, command_id: str) -> Optional[dict]:
    log = (
        db.query(WorkoutActionLog)
        .filter(WorkoutActionLog.owner_id == owner_id)
        .filter(WorkoutActionLog.command_id == command_id)
        .first()
    )
    if log is None:
        return None
    return dict(log.result or {})


# =============================================================================
# Service tools
# =============================================================================

def _resolve_instance_content(db, owner_id: str, instance_id) -> tuple[dict, WorkoutInstance]:
    row = (
        db.query(WorkoutInstance)
        .filter(WorkoutInstance.owner_id == owner_id)
        .filter(WorkoutInstance.id == instance_id)
        .first()
    )
    if row is None:
        raise NotFoundError(f"Workout instance not found: {instance_id}", resource="workout_instance", resource_id=str(instance_id))
    if row.status not in (ArtifactStatus.approved, ArtifactStatus.active):
        raise ConflictError(
            f"Workout instance v{row.version} is {_enum_value(row.status)}; approve it before starting",
            error_code="not_approved",
            data={"status": _enum_value(row.status)},
        )
    return row.content, row


@service_tool
def start_workout_session(
    instance_id: Optional[str] = None,
    workout: Optional[dict] = None,
    coach_mode: str = "quiet",
    event_session_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Start tracking a workout from an approved workout instance or inline content."""
    if (instance_id is None) == (workout is None):
        raise ValidationIssue(
            "Provide exactly one of instance_id or workout",
            field="instance_id",
            error_type="invalid_combination",
        )
    try:
        mode = CoachMode(coach_mode)
    except ValueError as exc:
        raise ValidationIssue("coach_mode must be quiet|ringer", field="coach_mode", error_type="invalid_value") from exc
    _validate_metadata(metadata, "metadata")
    owner_id = resolve_owner_id(context)
    instance_key = _validate_uuid(instance_id, "instance_id") if instance_id is not None else None
    event_key = _validate_uuid(event_session_id, "event_session_id") if event_session_id is not None else None
    content = validate_artifact_content("workout_instance", workout) if workout is not None else None

    db = DB.SessionLocal()
    try:
        if instance_key is not None:
            raw_content, _ = _resolve_instance_content(db, owner_id, instance_key)
            content = validate_artifact_content("workout_instance", raw_content)
        if event_key is not None:
            linked = (
                db.query(AgentSession)
                .filter(AgentSession.owner_id == owner_id)
                .filter(AgentSession.id == event_key)
                .first()
            )
            if linked is None:
                raise NotFoundError(f"Session not found: {event_session_id}", resource="session", resource_id=event_session_id)
            if linked.status != SessionStatus.active:
                raise ConflictError("Linked event session is closed", error_code="session_closed")

        now = datetime.utcnow()
        session_row = WorkoutSession(
            owner_id=owner_id,
            status=WorkoutSessionStatus.in_progress,
            coach_mode=mode,
            event_session_id=event_key,
            instance_id=instance_key,
            started_at=now,
            metadata_=metadata or {},
            created_at=now,
            updated_at=now,
        )
        db.add(session_row)
        db.flush()
        focus = content.get("focus") or []
        workout_row = Workout(
            session_id=session_row.id,
            title=content.get("title") or "Workout",
            workout_type=focus[0] if focus else None,
            planned_duration_min=content.get("estimated_duration_min"),
            created_at=now,
            updated_at=now,
        )
        db.add(workout_row)
        db.flush()

        for order, planned in enumerate(content["exercises"]):
            payload = parse_exercise_payload(build_initial_payload(planned)).model_dump(mode="json")
            metrics = derive_exercise_metrics(payload)
            db.add(WorkoutExercise(
                workout_id=workout_row.id,
                exercise_order=order,
                exercise_type=ExerciseType(payload["identity"]["type"]),
                status=ExerciseStatus.pending,
                payload=payload,
                payload_version=1,
                goals_addressed=planned.get("goals_addressed") or [],
                muscles_utilized=planned.get("muscles_utilized") or [],
                created_at=now,
                updated_at=now,
                **metrics,
            ))
        db.commit()
        db.refresh(session_row)
        logger.info(f"Started workout session {session_row.id} with {len(content['exercises'])} exercises")
        return {"status": "started", **_session_detail(db, session_row)}
    finally:
        db.close()


@service_tool
def get_session_detail(
    session_id: str,
    context: Optional[RequestContext] = None,
) -> dict:
    owner_id = resolve_owner_id(context)
    session_key = _validate_uuid(session_id, "session_id")

    db = DB.SessionLocal()
    try:
        session_row = _require_workout_session(db, owner_id, session_key)
        return {"status": "ok", **_session_detail(db, session_row)}
    finally:
        db.close()


def _validate_command_id(command_id) -> str:
    _validate_required_text(command_id, "command_id", 100)
    return command_id.strip()


def _parse_client_meta(client_meta) -> ClientMeta:
    if client_meta is None:
        return ClientMeta()
    if isinstance(client_meta, ClientMeta):
        return client_meta
    if not isinstance(client_meta, dict):
        raise ValidationIssue("client_meta must be an object", field="client_meta", error_type="invalid_type")
    try:
        return ClientMeta.model_validate(client_meta)
    except ValueError as exc:
        raise ValidationIssue(str(exc), field="client_meta", error_type="invalid_value") from exc


@service_tool
def apply_exercise_command(
    exercise_id: str,
    command_id: str,
    expected_version: int,
    command: dict,
    client_meta: Optional[dict] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Apply one command to an exercise exactly once per (owner, command_id).

    Returns {"duplicate": bool, "result": ...}. A replayed command_id gets
    back the result recorded by its first application unchanged, even if
    the exercise has moved on since.
    """
    parsed = parse_exercise_command(command)
    command_key = _validate_command_id(command_id)
    _validate_positive_int(expected_version, "expected_version")
    meta = _parse_client_meta(client_meta)
    client_timestamp = _utc_naive(_parse_timestamp(meta.client_timestamp, "client_meta.client_timestamp"))
    owner_id = resolve_owner_id(context)
    exercise_key = _validate_uuid(exercise_id, "exercise_id")

    db = DB.SessionLocal()
    try:
        recorded = _recorded_result(db, owner_id, command_key)
        if recorded is not None:
            return {"duplicate": True, "result": recorded}

        exercise, workout, session_row = _require_exercise(db, owner_id, exercise_key)
        # Touch before reading: takes the sqlite write lock, FOR UPDATE covers postgres.
        db.query(WorkoutExercise).filter(WorkoutExercise.id == exercise.id).update(
            {"updated_at": datetime.utcnow()}, synchronize_session=False
        )
        exercise = (
            db.query(WorkoutExercise)
            .filter(WorkoutExercise.id == exercise.id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        recorded = _recorded_result(db, owner_id, command_key)
        if recorded is not None:
            db.rollback()
            return {"duplicate": True, "result": recorded}
        if session_row.status != WorkoutSessionStatus.in_progress:
            raise ConflictError(
                f"Workout session is {_enum_value(session_row.status)}",
                error_code="session_closed",
                data={"status": _enum_value(session_row.status)},
            )
        if exercise.payload_version != expected_version:
            raise ConflictError(
                f"Exercise is at version {exercise.payload_version}, not {expected_version}",
                error_code="version_conflict",
                data={"current_version": exercise.payload_version},
            )

        previous_status = _enum_value(exercise.status)
        previous_completed_at = exercise.completed_at
        reduced = apply_command(exercise.payload, previous_status, parsed)
        next_version = expected_version + 1
        now = datetime.utcnow()

        exercise.payload = reduced["payload"]
        exercise.payload_version = next_version
        exercise.status = ExerciseStatus(reduced["status"])
        for key, value in reduced["metrics"].items():
            setattr(exercise, key, value)
        if reduced["status"] == ExerciseStatus.completed.value:
            exercise.completed_at = now
        elif reduced["status"] == ExerciseStatus.skipped.value:
            exercise.completed_at = None
        exercise.updated_at = now

        was_completed = previous_status == ExerciseStatus.completed.value
        is_completed = reduced["status"] == ExerciseStatus.completed.value
        if is_completed and not was_completed:
            fold_in(db, owner_id, exercise.goals_addressed, exercise.muscles_utilized)
        elif was_completed and not is_completed:
            unfold_in(
                db,
                owner_id,
                exercise.goals_addressed,
                exercise.muscles_utilized,
                completed_at=previous_completed_at,
            )

        result = {
            "exercise_id": str(exercise.id),
            "payload_version": next_version,
            "status": reduced["status"],
            "payload": reduced["payload"],
        }
        action_payload = {
            "command": parsed.model_dump(mode="json", exclude_none=True),
            "expected_version": expected_version,
            "resulting_version": next_version,
            "resulting_status": reduced["status"],
        }
        db.add(WorkoutActionLog(
            owner_id=owner_id,
            command_id=command_key,
            session_id=session_row.id,
            workout_id=workout.id,
            exercise_id=exercise.id,
            action_type=parsed.type,
            action_payload=action_payload,
            result=result,
            source_screen=meta.source_screen,
            app_version=meta.app_version,
            device_id=meta.device_id,
            correlation_id=meta.correlation_id,
            client_timestamp=client_timestamp,
            created_at=now,
        ))

        if session_row.event_session_id is not None:
            append_event_locked(
                db,
                owner_id,
                session_row.event_session_id,
                EventType.tool_result,
                {
                    "tool_name": f"workout.{parsed.type}",
                    "result": {"exercise_id": str(exercise.id), **action_payload},
                    "success": True,
                    "call_id": command_key,
                },
            )

        db.commit()
        return {"duplicate": False, "result": result}
    except IntegrityError as exc:
        db.rollback()
        winner = _recorded_result(db, owner_id, command_key)
        if winner is not None:
            logger.info(f"command_id {command_key} applied concurrently; returning recorded result")
            return {"duplicate": True, "result": winner}
        raise StorageError(f"Could not record command {command_key}") from exc
    except (ConflictError, ValidationIssue):
        db.rollback()
        raise
    finally:
        db.close()


def _summary_from_exercises(workout: Optional[Workout], exercises: list[WorkoutExercise], reflection: dict) -> dict:
    total = len(exercises)
    finished = sum(
        1 for row in exercises if row.status in (ExerciseStatus.completed, ExerciseStatus.skipped)
    )
    logged_sets = sum(
        1
        for row in exercises
        for performed in (row.payload or {}).get("performance", {}).get("sets", [])
        if has_set_performance(performed)
    )
    wins = []
    if finished:
        wins.append(f"Completed {finished} of {total} exercises.")
    if logged_sets:
        wins.append(f"Logged {logged_sets} completed sets.")
    return {
        "title": (workout.title if workout else None) or "Workout complete",
        "completion": {"exercises": finished, "total_sets": logged_sets},
        "overall_rpe": reflection.get("rpe"),
        "pain_notes": reflection.get("pain"),
        "wins": wins or ["Workout tracked successfully."],
        "next_session_focus": reflection.get("notes") or "Continue progressive training next session.",
    }


def _validate_reflection(reflection) -> dict:
    if reflection is None:
        return {}
    if not isinstance(reflection, dict):
        raise ValidationIssue("reflection must be an object", field="reflection", error_type="invalid_type")
    rpe = reflection.get("rpe")
    if rpe is not None and (isinstance(rpe, bool) or not isinstance(rpe, int) or not 1 <= rpe <= 10):
        raise ValidationIssue("reflection.rpe must be an integer 1-10", field="reflection.rpe", error_type="out_of_range")
    _validate_optional_text(reflection.get("notes"), "reflection.notes", MAX_TEXT_LENGTH)
    _validate_optional_text(reflection.get("pain"), "reflection.pain", MAX_TEXT_LENGTH)
    return reflection


@service_tool
def finalize_session(
    session_id: str,
    reflection: Optional[dict] = None,
    mode: str = "complete",
    reason: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Close a workout session as completed or stopped and store its summary."""
    if mode not in ("complete", "stop"):
        raise ValidationIssue("mode must be complete|stop", field="mode", error_type="invalid_value")
    reflection = _validate_reflection(reflection)
    _validate_optional_text(reason, "reason", MAX_SHORT_TEXT_LENGTH)
    owner_id = resolve_owner_id(context)
    session_key = _validate_uuid(session_id, "session_id")

    db = DB.SessionLocal()
    try:
        session_row = _require_workout_session(db, owner_id, session_key, for_update=True)
        if session_row.status != WorkoutSessionStatus.in_progress:
            raise ConflictError(
                f"Workout session is already {_enum_value(session_row.status)}",
                error_code="session_closed",
                data={"status": _enum_value(session_row.status)},
            )
        workout = db.query(Workout).filter(Workout.session_id == session_row.id).first()
        exercises = _exercises_for(db, workout.id) if workout else []
        summary = _summary_from_exercises(workout, exercises, reflection)
        summary["stop_reason"] = (reason or "user_stopped") if mode == "stop" else None

        now = datetime.utcnow()
        session_row.status = WorkoutSessionStatus.stopped if mode == "stop" else WorkoutSessionStatus.completed
        session_row.completed_at = now
        session_row.session_rpe = reflection.get("rpe")
        session_row.notes = reflection.get("notes")
        session_row.summary = summary
        session_row.updated_at = now
        if workout is not None:
            started = _utc_naive(session_row.started_at)
            workout.actual_duration_min = max(0, round((now - started).total_seconds() / 60)) if started else None
            workout.updated_at = now
        db.commit()
        logger.info(f"Finalized workout session {session_key} as {_enum_value(session_row.status)}")
        return {"status": _enum_value(session_row.status), "summary": summary}
    finally:
        db.close()


@service_tool
def list_history(
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Finished workout sessions, newest first, paged by started_at."""
    limit = config.WORKOUT_HISTORY_DEFAULT_LIMIT if limit is None else limit
    _validate_limit(limit, "limit", config.WORKOUT_HISTORY_MAX_LIMIT)
    cursor_at = _utc_naive(_parse_timestamp(cursor, "cursor"))
    owner_id = resolve_owner_id(context)

    db = DB.SessionLocal()
    try:
        query = (
            db.query(WorkoutSession)
            .filter(WorkoutSession.owner_id == owner_id)
            .filter(WorkoutSession.status.in_(HISTORY_STATUSES))
        )
        if cursor_at is not None:
            query = query.filter(WorkoutSession.started_at < cursor_at)
        rows = query.order_by(WorkoutSession.started_at.desc()).limit(limit + 1).all()
        has_more = len(rows) > limit
        page = rows[:limit]

        items = []
        for session_row in page:
            workout = db.query(Workout).filter(Workout.session_id == session_row.id).first()
            exercises = _exercises_for(db, workout.id) if workout else []
            items.append({
                "session_id": str(session_row.id),
                "status": _enum_value(session_row.status),
                "started_at": _iso(session_row.started_at),
                "completed_at": _iso(session_row.completed_at),
                "title": (workout.title if workout else None) or "Workout",
                "workout_type": workout.workout_type if workout else None,
                "planned_duration_min": workout.planned_duration_min if workout else None,
                "actual_duration_min": workout.actual_duration_min if workout else None,
                "exercise_count": len(exercises),
                "completed_exercise_count": sum(1 for e in exercises if e.status == ExerciseStatus.completed),
                "skipped_exercise_count": sum(1 for e in exercises if e.status == ExerciseStatus.skipped),
                "total_volume": round(sum(e.volume or 0.0 for e in exercises)),
                "session_rpe": session_row.session_rpe,
            })
        next_cursor = _iso(page[-1].started_at) if has_more and page else None
        return {"status": "ok", "items": items, "next_cursor": next_cursor}
    finally:
        db.close()


__all__ = [
    "build_initial_payload",
    "derive_exercise_status",
    "derive_exercise_metrics",
    "apply_command",
    "start_workout_session",
    "get_session_detail",
    "apply_exercise_command",
    "finalize_session",
    "list_history",
]
