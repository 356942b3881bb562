import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from core.errors import ConflictError, NotFoundError
from core.models import WorkoutActionLog, WorkoutExercise
from core.services import artifacts, distribution, session_events, workout_actions


SQUAT = {
    "exercise_name": "Back Squat",
    "sets": 1,
    "reps": [5],
    "load_each": [100],
    "load_unit": "kg",
    "goals_addressed": ["strength"],
    "muscles_utilized": [{"muscle": "quads", "share": 0.6}, {"muscle": "glutes", "share": 0.4}],
}

PLANK = {
    "exercise_name": "Plank",
    "exercise_type": "hold",
    "hold_duration_sec": [30, 45],
    "goals_addressed": [{"goal": "core", "share": 1.0}],
}

WORKOUT = {"title": "Lower A", "estimated_duration_min": 45, "focus": ["strength"], "exercises": [SQUAT, PLANK]}


def _start(owner, **kwargs) -> dict:
    started = workout_actions.start_workout_session(workout=WORKOUT, context=owner, **kwargs)
    assert started["status"] == "started", started
    return started


def _command(owner, exercise_id, command_id, expected_version, command, **kwargs) -> dict:
    return workout_actions.apply_exercise_command(
        exercise_id,
        command_id,
        expected_version,
        command,
        context=owner,
        **kwargs,
    )


def test_initial_payload_for_rep_and_duration_exercises():
    squat = workout_actions.build_initial_payload({"exercise_name": "Squat", "sets": 3, "reps": [5, 5, 3], "load_each": [100]})
    assert squat["identity"] == {"name": "Squat", "type": "reps"}
    assert [s["target_reps"] for s in squat["prescription"]["sets"]] == [5, 5, 3]
    assert [s["target_load"] for s in squat["prescription"]["sets"]] == [100.0, 100.0, 100.0]
    assert len(squat["performance"]["sets"]) == 3

    run = workout_actions.build_initial_payload({"exercise_name": "Easy run", "exercise_type": "duration", "duration_min": 25.5})
    assert run["identity"]["type"] == "duration"
    assert run["prescription"]["sets"][0]["target_duration_sec"] == 1530

    intervals = workout_actions.build_initial_payload({"name": "Bike sprints", "type": "intervals", "rounds": 6, "work_sec": 20})
    assert len(intervals["prescription"]["sets"]) == 6
    assert intervals["prescription"]["sets"][0]["target_duration_sec"] == 20


def test_reducer_status_and_metrics():
    payload = workout_actions.build_initial_payload({"exercise_name": "Row", "sets": 2, "reps": [8, 8]})

    first = workout_actions.apply_command(payload, "pending", {"type": "complete_set", "set_index": 0, "actual_reps": 8, "actual_load": 40, "rpe": 7})
    assert first["status"] == "in_progress"
    assert first["payload"]["performance"]["sets"][0]["completed_at"]
    assert payload["performance"]["sets"][0]["actual_reps"] is None

    second = workout_actions.apply_command(first["payload"], first["status"], {"type": "complete_set", "set_index": 1, "actual_reps": 6, "actual_load": 40, "rpe": 9})
    assert second["status"] == "completed"
    assert second["metrics"]["total_reps"] == 14
    assert second["metrics"]["volume"] == pytest.approx(560.0)
    assert second["metrics"]["exercise_rpe"] == 8

    skipped = workout_actions.apply_command(second["payload"], second["status"], {"type": "skip_exercise"})
    assert skipped["status"] == "skipped"
    assert skipped["payload"]["flags"]["skip_reason"] == "user_skipped"
    unskipped = workout_actions.apply_command(skipped["payload"], skipped["status"], {"type": "unskip_exercise"})
    assert unskipped["status"] == "completed"


def test_reducer_targets_and_rest():
    payload = workout_actions.build_initial_payload({"exercise_name": "Bench", "sets": 2, "reps": [5, 5]})
    retarget = workout_actions.apply_command(payload, "pending", {"type": "update_set_target", "set_index": 1, "target_reps": 3, "target_load": 80})
    assert retarget["payload"]["prescription"]["sets"][1]["target_reps"] == 3
    assert retarget["payload"]["flags"]["modified"] is True
    assert retarget["status"] == "pending"

    rest = workout_actions.apply_command(retarget["payload"], "pending", {"type": "adjust_rest_seconds", "rest_seconds": 120})
    assert rest["payload"]["prescription"]["rest_seconds"] == 120

    noted = workout_actions.apply_command(rest["payload"], "pending", {"type": "set_exercise_note", "notes": "Elbows tucked"})
    assert noted["payload"]["performance"]["notes"] == "Elbows tucked"


def test_reducer_rejects_bad_commands():
    payload = workout_actions.build_initial_payload({"exercise_name": "Curl", "sets": 1})
    with pytest.raises(ValueError) as excinfo:
        workout_actions.apply_command(payload, "pending", {"type": "complete_set", "set_index": 3, "actual_reps": 10})
    assert excinfo.value.field == "command.set_index"

    with pytest.raises(ValueError):
        workout_actions.apply_command(payload, "pending", {"type": "teleport"})
    with pytest.raises(ValueError):
        workout_actions.apply_command(payload, "pending", {"type": "set_exercise_rpe", "rpe": 11})


def test_start_session_expands_exercises(server_db, owner):
    started = _start(owner)
    assert started["workout"]["title"] == "Lower A"
    assert started["workout"]["workout_type"] == "strength"
    assert [e["exercise_name"] for e in started["exercises"]] == ["Back Squat", "Plank"]
    assert [e["exercise_type"] for e in started["exercises"]] == ["reps", "hold"]
    assert all(e["payload_version"] == 1 and e["status"] == "pending" for e in started["exercises"])

    detail = workout_actions.get_session_detail(started["session"]["id"], context=owner)
    assert detail["session"]["status"] == "in_progress"
    assert len(detail["exercises"]) == 2


def test_start_requires_one_source(server_db, owner):
    assert workout_actions.start_workout_session(context=owner)["status"] == "error"
    bad_mode = workout_actions.start_workout_session(workout=WORKOUT, coach_mode="shouty", context=owner)
    assert bad_mode["field"] == "coach_mode"


def test_start_from_instance_requires_approval(server_db, owner):
    drafted = artifacts.draft_artifact("workout_instance", WORKOUT, context=owner)["artifact"]
    with pytest.raises(ConflictError) as excinfo:
        workout_actions.start_workout_session(instance_id=drafted["id"], context=owner)
    assert excinfo.value.error_code == "not_approved"

    artifacts.approve_artifact(drafted["id"], context=owner)
    started = workout_actions.start_workout_session(instance_id=drafted["id"], context=owner)
    assert started["session"]["instance_id"] == drafted["id"]
    assert len(started["exercises"]) == 2


def test_duplicate_command_applies_once(server_db, db_session, owner):
    started = _start(owner)
    exercise_id = started["exercises"][0]["id"]
    command = {"type": "complete_set", "set_index": 0, "actual_reps": 5, "actual_load": 100}

    first = _command(owner, exercise_id, "abc", 1, command, client_meta={"source_screen": "tracker"})
    replay = _command(owner, exercise_id, "abc", 1, command)

    assert first["duplicate"] is False
    assert replay["duplicate"] is True
    assert replay["result"] == first["result"]
    assert replay["result"]["payload_version"] == 2
    assert replay["result"]["status"] == "completed"

    row = db_session.query(WorkoutExercise).filter(WorkoutExercise.id == exercise_id).one()
    assert row.volume == pytest.approx(500.0)
    assert row.total_reps == 5
    assert row.payload_version == 2
    assert db_session.query(WorkoutActionLog).count() == 1

    tracking = distribution.read(context=owner)["tracking"]
    assert tracking["exercise_count"] == 1
    assert tracking["categories"] == {"strength": 1.0}
    assert tracking["muscles"] == {"quads": 0.6, "glutes": 0.4}


def test_stale_version_is_rejected(server_db, owner):
    started = _start(owner)
    exercise_id = started["exercises"][0]["id"]
    _command(owner, exercise_id, "c1", 1, {"type": "set_exercise_rpe", "rpe": 6})

    with pytest.raises(ConflictError) as excinfo:
        _command(owner, exercise_id, "c2", 1, {"type": "set_exercise_rpe", "rpe": 8})
    assert excinfo.value.error_code == "version_conflict"
    assert excinfo.value.data["current_version"] == 2

    detail = workout_actions.get_session_detail(started["session"]["id"], context=owner)
    assert detail["exercises"][0]["payload"]["performance"]["exercise_rpe"] == 6


def test_invalid_command_is_error_without_write(server_db, db_session, owner):
    started = _start(owner)
    exercise_id = started["exercises"][0]["id"]
    result = _command(owner, exercise_id, "bad", 1, {"type": "complete_set", "set_index": 4, "actual_reps": 5})
    assert result["status"] == "error"
    assert result["field"] == "command.set_index"
    assert db_session.query(WorkoutActionLog).count() == 0


def test_reopen_unfolds_distribution(server_db, owner):
    started = _start(owner)
    plank_id = started["exercises"][1]["id"]

    _command(owner, plank_id, "p1", 1, {"type": "complete_set", "set_index": 0, "actual_duration_sec": 30})
    completed = _command(owner, plank_id, "p2", 2, {"type": "complete_exercise"})
    assert completed["result"]["status"] == "completed"
    assert distribution.read(context=owner)["tracking"]["categories"] == {"core": 1.0}

    reopened = _command(owner, plank_id, "p3", 3, {"type": "reopen_exercise"})
    assert reopened["result"]["status"] == "in_progress"
    tracking = distribution.read(context=owner)["tracking"]
    assert tracking["categories"] == {}
    assert tracking["exercise_count"] == 0


def test_uncompleting_exercise_from_before_reset_keeps_new_totals(server_db, owner):
    started = _start(owner)
    squat_id, plank_id = (e["id"] for e in started["exercises"])

    _command(owner, squat_id, "a1", 1, {"type": "complete_set", "set_index": 0, "actual_reps": 5, "actual_load": 100})
    assert distribution.read(context=owner)["tracking"]["exercise_count"] == 1

    distribution.set_goal_weights(categories={"strength": 0.5, "core": 0.5}, context=owner)
    _command(owner, plank_id, "b1", 1, {"type": "complete_exercise"})

    skipped = _command(owner, squat_id, "a2", 2, {"type": "skip_exercise"})
    assert skipped["result"]["status"] == "skipped"

    tracking = distribution.read(context=owner)["tracking"]
    assert tracking["exercise_count"] == 1
    assert tracking["categories"] == {"core": 1.0}
    assert tracking["muscles"] == {}


def test_concurrent_duplicate_commands_apply_once(server_db, db_session, owner):
    started = _start(owner)
    exercise_id = started["exercises"][0]["id"]
    command = {"type": "complete_set", "set_index": 0, "actual_reps": 5, "actual_load": 100}

    def _submit(i: int) -> dict:
        return _command(owner, exercise_id, "same-tap", 1, command)

    with ThreadPoolExecutor(max_workers=4) as executor:
        responses = list(executor.map(_submit, range(6)))

    assert [r["duplicate"] for r in responses].count(False) == 1
    assert all(r["result"] == responses[0]["result"] for r in responses)
    assert db_session.query(WorkoutActionLog).count() == 1

    row = db_session.query(WorkoutExercise).filter(WorkoutExercise.id == exercise_id).one()
    assert row.payload_version == 2
    assert row.volume == pytest.approx(500.0)
    assert distribution.read(context=owner)["tracking"]["exercise_count"] == 1


def test_commands_are_owner_scoped(server_db, owner, other_owner):
    started = _start(owner)
    exercise_id = started["exercises"][0]["id"]
    with pytest.raises(NotFoundError):
        _command(other_owner, exercise_id, "x1", 1, {"type": "set_exercise_rpe", "rpe": 5})


def test_linked_event_session_gets_tool_results(server_db, owner):
    event_session = session_events.create_session(kind="workout", context=owner)["session"]["id"]
    started = _start(owner, event_session_id=event_session, coach_mode="ringer")
    assert started["session"]["coach_mode"] == "ringer"
    exercise_id = started["exercises"][0]["id"]

    _command(owner, exercise_id, "linked-1", 1, {"type": "complete_set", "set_index": 0, "actual_reps": 5, "actual_load": 90})

    events = session_events.read_range(event_session, event_types=["tool_result"], context=owner)["events"]
    assert len(events) == 1
    assert events[0]["data"]["tool_name"] == "workout.complete_set"
    assert events[0]["data"]["call_id"] == "linked-1"
    assert events[0]["data"]["result"]["resulting_version"] == 2


def test_finalize_and_history(server_db, owner):
    first = _start(owner)
    squat_id = first["exercises"][0]["id"]
    _command(owner, squat_id, "h1", 1, {"type": "complete_set", "set_index": 0, "actual_reps": 5, "actual_load": 100})

    finalized = workout_actions.finalize_session(
        first["session"]["id"],
        reflection={"rpe": 7, "notes": "Add a back-off set", "pain": "none"},
        context=owner,
    )
    assert finalized["status"] == "completed"
    summary = finalized["summary"]
    assert summary["completion"] == {"exercises": 1, "total_sets": 1}
    assert summary["overall_rpe"] == 7
    assert summary["next_session_focus"] == "Add a back-off set"
    assert summary["stop_reason"] is None

    with pytest.raises(ConflictError):
        _command(owner, squat_id, "h2", 2, {"type": "set_exercise_rpe", "rpe": 7})
    with pytest.raises(ConflictError):
        workout_actions.finalize_session(first["session"]["id"], context=owner)

    second = _start(owner)
    stopped = workout_actions.finalize_session(second["session"]["id"], mode="stop", reason="knee twinge", context=owner)
    assert stopped["status"] == "stopped"
    assert stopped["summary"]["stop_reason"] == "knee twinge"

    _start(owner)  # still in progress, not part of history

    page = workout_actions.list_history(limit=1, context=owner)
    assert [item["session_id"] for item in page["items"]] == [second["session"]["id"]]
    assert page["next_cursor"]

    rest = workout_actions.list_history(limit=1, cursor=page["next_cursor"], context=owner)
    assert [item["session_id"] for item in rest["items"]] == [first["session"]["id"]]
    assert rest["items"][0]["total_volume"] == 500
    assert rest["items"][0]["completed_exercise_count"] == 1
    assert rest["next_cursor"] is None
