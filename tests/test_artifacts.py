import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")

import httpx
import pytest

from core.errors import ConflictError
from core.models import ArtifactStatus, GoalContract, TrainingProgram
from core.services import active_pointer, artifacts


GOAL = {
    "primary_goal": "Deadlift 1.5x bodyweight",
    "timeline_weeks": 12,
    "metrics": ["deadlift 1RM"],
    "weekly_commitment": {"sessions_per_week": 3, "minutes_per_session": 60},
}

PROGRAM = {
    "identity": {"name": "Strength Base"},
    "goals": {"primary": "Build strength", "timeline_weeks": 8},
    "weekly_template": {"days_per_week": 3, "session_types": ["full body"]},
    "sessions": [
        {"focus": "Lower body", "duration_min": 60, "equipment": ["barbell"]},
        {"focus": "Upper body", "duration_min": 50},
    ],
    "progression": {"strategy": "Add 2.5kg per week", "deload_trigger": "Two missed reps in a row"},
    "guardrails": {"pain_scale": "Stop above 3/10", "red_flags": ["sharp pain"]},
    "coach_cues": ["Brace before every rep"],
}


def _draft(owner, artifact_class="goal_contract", content=None) -> dict:
    result = artifacts.draft_artifact(artifact_class, content or GOAL, context=owner)
    assert result["status"] == "drafted", result
    return result["artifact"]


def _approved_program_v2(owner) -> dict:
    v1 = _draft(owner, "program", PROGRAM)
    v2 = artifacts.edit_artifact(v1["id"], patch={"coach_cues": ["Slow eccentrics"]}, context=owner)["artifact"]
    approved = artifacts.approve_artifact(v2["id"], context=owner)
    assert approved["status"] == "approved"
    return v2


def test_goal_contract_versions_and_approval(server_db, db_session, owner):
    v1 = _draft(owner)
    v2 = artifacts.edit_artifact(v1["id"], patch={"timeline_weeks": 16}, context=owner)["artifact"]
    v3 = artifacts.edit_artifact(v2["id"], patch={"secondary_goal": "Improve hip mobility"}, context=owner)["artifact"]
    assert (v1["version"], v2["version"], v3["version"]) == (1, 2, 3)
    assert v3["lineage_id"] == v1["lineage_id"]
    assert v3["content"]["timeline_weeks"] == 16

    approved = artifacts.approve_artifact(v3["id"], expected_version=3, context=owner)
    assert approved["artifact"]["status"] == "approved"

    for stale in (v1, v2):
        with pytest.raises(ConflictError) as excinfo:
            artifacts.edit_artifact(stale["id"], patch={"timeline_weeks": 20}, context=owner)
        assert excinfo.value.error_code == "not_latest_draft"

    versions = artifacts.list_versions("goal_contract", v1["lineage_id"], context=owner)
    assert versions["latest_version"] == 3
    assert [v["status"] for v in versions["versions"]] == ["draft", "draft", "approved"]
    assert db_session.query(GoalContract).filter(GoalContract.status == ArtifactStatus.approved).count() == 1
    assert versions["versions"][0]["content"]["timeline_weeks"] == 12


def test_edit_of_approved_version_does_not_advance(server_db, owner):
    v1 = _draft(owner)
    artifacts.approve_artifact(v1["id"], context=owner)

    with pytest.raises(ConflictError):
        artifacts.edit_artifact(v1["id"], patch={"timeline_weeks": 10}, context=owner)
    assert artifacts.list_versions("goal_contract", v1["lineage_id"], context=owner)["latest_version"] == 1


def test_invalid_patch_is_validation_error_and_keeps_version(server_db, owner):
    v1 = _draft(owner)
    result = artifacts.edit_artifact(v1["id"], patch={"primary_goal": None}, context=owner)
    assert result["status"] == "error"
    assert result["field"].startswith("content")

    both = artifacts.edit_artifact(v1["id"], patch={"a": 1}, instruction="do it", context=owner)
    assert both["status"] == "error"
    assert artifacts.list_versions("goal_contract", v1["lineage_id"], context=owner)["latest_version"] == 1


def test_stale_expected_version_conflicts(server_db, owner):
    v1 = _draft(owner)
    artifacts.edit_artifact(v1["id"], patch={"timeline_weeks": 14}, context=owner)
    with pytest.raises(ConflictError):
        artifacts.approve_artifact(v1["id"], expected_version=2, context=owner)


def test_instruction_edit_goes_through_engine(server_db, owner, fake_engine):
    def handler(request):
        assert request.url.path == "/v1/revise"
        return httpx.Response(200, json={"content": {**GOAL, "timeline_weeks": 10}})

    fake_engine.handler = handler
    v1 = _draft(owner)
    edited = artifacts.edit_artifact(v1["id"], instruction="Make it ten weeks", context=owner)
    assert edited["status"] == "edited"
    assert edited["artifact"]["version"] == 2
    assert edited["artifact"]["content"]["timeline_weeks"] == 10

    audit = artifacts.list_audit_events(v1["lineage_id"], context=owner)
    assert [e["event_type"] for e in audit["events"]] == ["draft", "edit"]
    assert audit["events"][1]["data"]["mode"] == "instruction"


def test_engine_output_must_be_an_object(server_db, owner, fake_engine):
    fake_engine.handler = lambda request: httpx.Response(200, json={"content": "not a document"})
    v1 = _draft(owner)
    result = artifacts.edit_artifact(v1["id"], instruction="Rewrite", context=owner)
    assert result["status"] == "error"
    assert artifacts.list_versions("goal_contract", v1["lineage_id"], context=owner)["latest_version"] == 1


def test_activation_swaps_pointer_and_archives_previous(server_db, db_session, owner):
    first = _draft(owner, "program", PROGRAM)
    artifacts.approve_artifact(first["id"], context=owner)
    activated = artifacts.activate_artifact(first["id"], context=owner)
    assert activated["status"] == "activated"
    assert activated["pointer_revision"] == 1

    second = _draft(owner, "program", {**PROGRAM, "coach_cues": ["Own the setup"]})
    artifacts.approve_artifact(second["id"], context=owner)
    swapped = artifacts.activate_artifact(second["id"], expected_pointer_revision=1, context=owner)
    assert swapped["pointer_revision"] == 2
    assert swapped["archived_artifact_id"] == first["id"]

    assert db_session.query(TrainingProgram).filter(TrainingProgram.status == ArtifactStatus.active).count() == 1
    pointer = active_pointer.get_active_pointer("program", context=owner)
    assert pointer["pointer"]["artifact_id"] == second["id"]
    assert artifacts.get_artifact(first["id"], context=owner)["artifact"]["status"] == "archived"


def test_stale_pointer_activation_fails(server_db, owner):
    v2 = _approved_program_v2(owner)
    read_before = active_pointer.get_active_pointer("program", context=owner)
    assert read_before["status"] == "not_found"
    stale_revision = read_before["revision"]

    first = artifacts.activate_artifact(v2["id"], expected_pointer_revision=stale_revision, context=owner)
    assert first["status"] == "activated"

    with pytest.raises(ConflictError) as excinfo:
        artifacts.activate_artifact(v2["id"], expected_pointer_revision=stale_revision, context=owner)
    assert excinfo.value.error_code == "stale_pointer"
    assert excinfo.value.data["current_revision"] == 1


def test_concurrent_activations_from_one_pointer_read(server_db, db_session, owner):
    candidates = []
    for cue in ("Own the setup", "Drive the floor"):
        drafted = _draft(owner, "program", {**PROGRAM, "coach_cues": [cue]})
        artifacts.approve_artifact(drafted["id"], context=owner)
        candidates.append(drafted["id"])
    revision = active_pointer.get_active_pointer("program", context=owner)["revision"]

    def _activate(artifact_id: str):
        try:
            return artifacts.activate_artifact(artifact_id, expected_pointer_revision=revision, context=owner)
        except ConflictError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=2) as executor:
        outcomes = list(executor.map(_activate, candidates))

    winners = [o for o in outcomes if isinstance(o, dict)]
    losers = [o for o in outcomes if isinstance(o, ConflictError)]
    assert len(winners) == 1 and len(losers) == 1
    assert winners[0]["pointer_revision"] == 1
    assert losers[0].error_code == "stale_pointer"

    assert db_session.query(TrainingProgram).filter(TrainingProgram.status == ArtifactStatus.active).count() == 1
    pointer = active_pointer.get_active_pointer("program", context=owner)
    assert pointer["pointer"]["artifact_id"] == winners[0]["artifact"]["id"]


def test_only_approved_programs_activate(server_db, owner):
    draft = _draft(owner, "program", PROGRAM)
    with pytest.raises(ConflictError) as excinfo:
        artifacts.activate_artifact(draft["id"], context=owner)
    assert excinfo.value.error_code == "not_approved"

    goal = _draft(owner)
    artifacts.approve_artifact(goal["id"], context=owner)
    result = artifacts.activate_artifact(goal["id"], context=owner)
    assert result["status"] == "error"
    assert result["field"] == "artifact_class"


def test_archive_active_clears_pointer(server_db, owner):
    v2 = _approved_program_v2(owner)
    artifacts.activate_artifact(v2["id"], context=owner)

    archived = artifacts.archive_artifact(v2["id"], context=owner)
    assert archived["artifact"]["status"] == "archived"
    assert archived["pointer_revision"] == 2
    assert artifacts.get_active_artifact("program", context=owner)["status"] == "not_found"


def test_defer_and_review_goal_contract(server_db, owner):
    v1 = _draft(owner)
    reviewed = artifacts.review_artifact(v1["id"], reviewer="coach-amy", notes="Looks realistic", context=owner)
    assert reviewed["event"]["actor"] == "coach-amy"
    assert artifacts.get_artifact(v1["id"], context=owner)["artifact"]["status"] == "draft"

    deferred = artifacts.defer_artifact(v1["id"], context=owner)
    assert deferred["artifact"]["status"] == "deferred"
    with pytest.raises(ConflictError):
        artifacts.approve_artifact(v1["id"], context=owner)


def test_new_draft_from_approved_lineage(server_db, owner):
    v1 = _draft(owner)
    artifacts.approve_artifact(v1["id"], context=owner)
    revised = artifacts.draft_artifact("goal_contract", {**GOAL, "timeline_weeks": 20}, based_on_id=v1["id"], context=owner)
    assert revised["artifact"]["version"] == 2
    assert revised["artifact"]["lineage_id"] == v1["lineage_id"]

    with pytest.raises(ConflictError) as excinfo:
        artifacts.draft_artifact("goal_contract", GOAL, based_on_id=v1["id"], context=owner)
    assert excinfo.value.error_code == "draft_exists"


def test_artifacts_are_owner_scoped(server_db, owner, other_owner):
    v1 = _draft(owner)
    assert artifacts.list_artifacts("goal_contract", context=other_owner)["count"] == 0
    with pytest.raises(LookupError):
        artifacts.get_artifact(v1["id"], context=other_owner)


def test_program_markdown_rendering():
    markdown = artifacts.program_to_markdown(PROGRAM)
    assert "## Goals" in markdown
    assert "### Day 1: Lower body" in markdown
    assert "Add 2.5kg per week" in markdown
    assert "Brace before every rep" in markdown
