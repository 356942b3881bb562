import pytest

from core.errors import ValidationIssue
from core.schemas import (
    parse_exercise_command,
    parse_exercise_payload,
    validate_artifact_content,
    validate_event_payload,
)
from core.services.workout_actions import build_initial_payload


def test_event_payload_defaults_and_extras():
    data = validate_event_payload("llm_response", {"content": "hi", "provider": "local"})
    assert data["tokens"]["total"] == 0
    assert data["cost_cents"] == 0.0
    assert data["provider"] == "local"


def test_event_payload_rejections():
    with pytest.raises(ValidationIssue) as excinfo:
        validate_event_payload("checkpoint", {"start_sequence": 0, "previous_start": 0})
    assert excinfo.value.field == "payload.start_sequence"

    with pytest.raises(ValidationIssue):
        validate_event_payload("artifact", {"artifact_id": "art_XYZ", "type": "program_summary", "title": "Block"})
    with pytest.raises(ValidationIssue):
        validate_event_payload("user_message", "hello")


def test_artifact_content_is_normalized():
    content = validate_artifact_content("goal_contract", {"primary_goal": "Swim a mile", "timeline_weeks": 10})
    assert content == {
        "primary_goal": "Swim a mile",
        "timeline_weeks": 10,
        "metrics": [],
        "constraints": [],
        "tradeoffs": [],
        "assumptions": [],
    }

    with pytest.raises(ValidationIssue) as excinfo:
        validate_artifact_content("workout_instance", {"title": "Empty", "exercises": []})
    assert excinfo.value.field == "content.exercises"


def test_exercise_payload_is_strict():
    payload = build_initial_payload({"exercise_name": "Deadlift", "sets": 1, "reps": [3]})
    assert parse_exercise_payload(payload).identity.type == "reps"

    with pytest.raises(ValidationIssue):
        parse_exercise_payload({**payload, "surprise": True})
    with pytest.raises(ValidationIssue) as excinfo:
        parse_exercise_payload({**payload, "schema_version": 99})
    assert excinfo.value.error_type == "unsupported_version"


def test_commands_are_discriminated_by_type():
    command = parse_exercise_command({"type": "skip_exercise", "reason": "gym closed"})
    assert command.reason == "gym closed"

    with pytest.raises(ValidationIssue):
        parse_exercise_command({"type": "complete_set", "set_index": -1})
    with pytest.raises(ValidationIssue):
        parse_exercise_command({"type": "complete_exercise", "extra": 1})
