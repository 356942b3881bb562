import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from core.errors import ConflictError, NotFoundError
from core.services import artifacts, intake, journey


@pytest.mark.parametrize(
    "statuses,expected",
    [
        ({}, "not_started"),
        ({"intake": "complete"}, "intake_complete"),
        ({"intake": "complete", "assessment": "in_progress"}, "assessment_in_progress"),
        ({"intake": "in_progress", "goals": "complete"}, "intake_in_progress"),
        ({"goals": "complete", "assessment": "complete"}, "goals_complete"),
        ({"goals": "complete", "program": "in_progress"}, "program_design_in_progress"),
        ({"program": "complete"}, "program_design_in_progress"),
        ({"program": "active", "goals": "in_progress"}, "program_active"),
        ({"program": "paused"}, "program_paused"),
        ({"intake": "deferred"}, "not_started"),
    ],
)
def test_overall_state_prefers_most_advanced_phase(statuses, expected):
    assert journey.compute_overall_state(statuses) == expected


def test_new_journey_starts_empty(server_db, owner):
    result = journey.get_or_create_journey(context=owner)
    assert result["journey"]["state"] == "not_started"
    assert result["journey"]["program_status"] == "not_started"
    assert journey.get_or_create_journey(context=owner)["journey"]["created_at"] == result["journey"]["created_at"]


def test_phase_updates_recompute_state(server_db, owner):
    journey.set_phase_status("intake", "complete", context=owner)
    updated = journey.set_phase_status("goals", "in_progress", context=owner)
    assert updated["journey"]["state"] == "goals_in_progress"

    active = journey.set_phase_status("program", "active", context=owner)
    assert active["journey"]["state"] == "program_active"
    assert active["journey"]["intake_status"] == "complete"


def test_invalid_phase_status(server_db, owner):
    assert journey.set_phase_status("monitoring", "paused", context=owner)["field"] == "status"
    assert journey.set_phase_status("nutrition", "complete", context=owner)["field"] == "phase"


def test_artifact_workflows_drive_journey(server_db, owner):
    goal = artifacts.draft_artifact("goal_contract", {"primary_goal": "Run a 10k"}, context=owner)["artifact"]
    state = journey.get_or_create_journey(context=owner)["journey"]
    assert state["goals_status"] == "in_progress"
    assert state["state"] == "goals_in_progress"

    artifacts.approve_artifact(goal["id"], context=owner)
    assert journey.get_or_create_journey(context=owner)["journey"]["goals_status"] == "complete"

    program = artifacts.draft_artifact("program", {"sessions": [{"focus": "Easy run"}]}, context=owner)["artifact"]
    state = journey.get_or_create_journey(context=owner)["journey"]
    assert state["program_status"] == "in_progress"
    assert state["state"] == "program_design_in_progress"

    artifacts.approve_artifact(program["id"], context=owner)
    assert journey.get_or_create_journey(context=owner)["journey"]["program_status"] == "complete"

    artifacts.activate_artifact(program["id"], context=owner)
    state = journey.get_or_create_journey(context=owner)["journey"]
    assert state["program_status"] == "active"
    assert state["monitoring_status"] == "active"
    assert state["state"] == "program_active"

    # Revising the running program does not take it out of the active phase.
    artifacts.draft_artifact("program", {"sessions": [{"focus": "Tempo"}]}, based_on_id=program["id"], context=owner)
    assert journey.get_or_create_journey(context=owner)["journey"]["program_status"] == "active"

    assert journey.reconcile_journey(context=owner)["changed"] == {}


def test_deferring_goals_updates_journey(server_db, owner):
    goal = artifacts.draft_artifact("goal_contract", {"primary_goal": "Swim a mile"}, context=owner)["artifact"]
    artifacts.defer_artifact(goal["id"], context=owner)
    assert journey.get_or_create_journey(context=owner)["journey"]["goals_status"] == "deferred"


def test_failed_workflow_leaves_journey_alone(server_db, owner):
    program = artifacts.draft_artifact("program", {"sessions": [{"focus": "Upper"}]}, context=owner)["artifact"]
    with pytest.raises(ConflictError):
        artifacts.activate_artifact(program["id"], context=owner)
    assert journey.get_or_create_journey(context=owner)["journey"]["program_status"] == "in_progress"


def test_reconcile_repairs_drift(server_db, owner):
    goal = artifacts.draft_artifact("goal_contract", {"primary_goal": "Run a 10k"}, context=owner)["artifact"]
    artifacts.approve_artifact(goal["id"], context=owner)
    program = artifacts.draft_artifact("program", {"sessions": [{"focus": "Easy run"}]}, context=owner)["artifact"]
    artifacts.approve_artifact(program["id"], context=owner)
    artifacts.activate_artifact(program["id"], context=owner)

    journey.set_phase_status("goals", "in_progress", context=owner)
    journey.set_phase_status("monitoring", "not_started", context=owner)

    reconciled = journey.reconcile_journey(context=owner)
    assert reconciled["changed"] == {"goals": "complete", "monitoring": "active"}
    assert reconciled["journey"]["state"] == "program_active"
    assert journey.reconcile_journey(context=owner)["changed"] == {}


def test_user_phase_changes_are_limited(server_db, owner):
    not_allowed = journey.set_user_phase_status("goals", "complete", context=owner)
    assert not_allowed["field"] == "status"
    assert not_allowed["issue_type"] == "not_user_settable"

    with pytest.raises(ConflictError) as excinfo:
        journey.set_user_phase_status("program", "paused", context=owner)
    assert excinfo.value.error_code == "not_active"

    assert journey.set_user_phase_status("assessment", "deferred", context=owner)["journey"]["assessment_status"] == "deferred"

    program = artifacts.draft_artifact("program", {"sessions": [{"focus": "Upper"}]}, context=owner)["artifact"]
    artifacts.approve_artifact(program["id"], context=owner)
    artifacts.activate_artifact(program["id"], context=owner)

    paused = journey.set_user_phase_status("program", "paused", context=owner)
    assert paused["journey"]["state"] == "program_paused"
    resumed = journey.set_user_phase_status("program", "active", context=owner)
    assert resumed["journey"]["state"] == "program_active"
    with pytest.raises(ConflictError) as excinfo:
        journey.set_user_phase_status("program", "active", context=owner)
    assert excinfo.value.error_code == "not_paused"


def test_reconcile_keeps_paused_program(server_db, owner):
    program = artifacts.draft_artifact("program", {"sessions": [{"focus": "Upper"}]}, context=owner)["artifact"]
    artifacts.approve_artifact(program["id"], context=owner)
    artifacts.activate_artifact(program["id"], context=owner)
    journey.set_user_phase_status("program", "paused", context=owner)

    reconciled = journey.reconcile_journey(context=owner)
    assert reconciled["changed"] == {}
    assert reconciled["journey"]["program_status"] == "paused"
    assert reconciled["journey"]["state"] == "program_paused"


def test_submit_intake_completes_intake_phase(server_db, owner):
    submitted = intake.submit_intake(
        {
            "name": "Sam",
            "birthday": "1990-04-02",
            "goals": "Get stronger",
            "height_inches": 70,
            "weight_lbs": 180.5,
            "injuries": "Old left knee sprain",
        },
        context=owner,
    )
    assert submitted["status"] == "submitted"
    assert submitted["intake"]["birthday"] == "1990-04-02"
    assert submitted["intake"]["status"] == "submitted"

    state = journey.get_or_create_journey(context=owner)["journey"]
    assert state["intake_status"] == "complete"
    assert state["state"] == "intake_complete"

    latest = intake.get_latest_intake(context=owner)
    assert latest["intake"]["id"] == submitted["intake"]["id"]

    marked = intake.mark_intake_status(submitted["intake"]["id"], "processed", context=owner)
    assert marked["intake"]["status"] == "processed"


def test_intake_rejects_unknown_fields(server_db, owner):
    result = intake.submit_intake({"favourite_color": "blue"}, context=owner)
    assert result["status"] == "error"
    assert result["field"].startswith("answers")
    assert intake.get_latest_intake(context=owner)["status"] == "not_found"
    assert journey.get_or_create_journey(context=owner)["journey"]["intake_status"] == "not_started"


def test_intake_status_is_owner_scoped(server_db, owner, other_owner):
    submitted = intake.submit_intake({"name": "Sam"}, context=owner)
    with pytest.raises(NotFoundError):
        intake.mark_intake_status(submitted["intake"]["id"], "processing", context=other_owner)
    assert intake.mark_intake_status(submitted["intake"]["id"], "done", context=owner)["field"] == "status"


def test_intake_prompt_lists_answered_fields():
    text = intake.intake_to_prompt({"name": "Sam", "goals": "Get stronger", "injuries": None, "hobby_sports": ""})
    assert text.splitlines() == ["Name: Sam", "Goals: Get stronger"]
