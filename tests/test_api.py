import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest
from fastapi.testclient import TestClient

from app.main import app


HEADERS = {"X-Owner-Id": "athlete-1", "X-Request-Id": "req-api"}


@pytest.fixture
def client(server_db):
    # Not entered as a context manager: the lifespan would run migrations against DATABASE_URL.
    return TestClient(app)


def test_root_lists_endpoints(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["endpoints"]["sessions"] == "/sessions"


def test_owner_header_is_required(client):
    response = client.post("/sessions", json={"kind": "chat"})
    assert response.status_code == 401
    assert response.json()["detail"]["error"] == "missing_owner"


def test_session_event_flow(client):
    created = client.post("/sessions", json={"kind": "goals"}, headers=HEADERS)
    assert created.status_code == 200
    session_id = created.json()["session"]["id"]

    appended = client.post(
        f"/sessions/{session_id}/events",
        json={"event_type": "user_message", "payload": {"message": "I want to run a 10k"}},
        headers=HEADERS,
    )
    assert appended.json()["sequence_number"] == 1

    invalid = client.post(
        f"/sessions/{session_id}/events",
        json={"event_type": "user_message", "payload": {}},
        headers=HEADERS,
    )
    assert invalid.status_code == 422
    assert invalid.json()["detail"]["field"].startswith("payload")

    window = client.get(f"/sessions/{session_id}/context", params={"as_messages": "true"}, headers=HEADERS)
    assert window.json()["messages"] == [{"role": "user", "content": "I want to run a 10k"}]

    ended = client.post(f"/sessions/{session_id}/end", json={}, headers=HEADERS)
    assert ended.json()["status"] == "ended"

    closed = client.post(
        f"/sessions/{session_id}/events",
        json={"event_type": "user_message", "payload": {"message": "one more"}},
        headers=HEADERS,
    )
    assert closed.status_code == 409
    assert closed.json()["detail"]["error"] == "session_closed"


def test_sessions_are_hidden_from_other_owners(client):
    session_id = client.post("/sessions", json={}, headers=HEADERS).json()["session"]["id"]
    response = client.get(f"/sessions/{session_id}", headers={"X-Owner-Id": "athlete-2"})
    assert response.status_code == 404
    assert response.json()["detail"]["resource"] == "session"


def test_artifact_lifecycle_over_http(client):
    drafted = client.post(
        "/artifacts/program",
        json={"content": {"goals": {"primary": "Strength"}, "sessions": [{"focus": "Lower"}]}},
        headers=HEADERS,
    )
    assert drafted.status_code == 200
    v1 = drafted.json()["artifact"]

    edited = client.post(
        f"/artifacts/program/{v1['id']}/edit",
        json={"patch": {"coach_cues": ["Brace"]}, "expected_version": 1},
        headers=HEADERS,
    ).json()["artifact"]
    assert edited["version"] == 2

    stale = client.post(f"/artifacts/program/{v1['id']}/approve", json={}, headers=HEADERS)
    assert stale.status_code == 409
    assert stale.json()["detail"]["error"] == "not_latest_draft"

    client.post(f"/artifacts/program/{edited['id']}/approve", json={}, headers=HEADERS)
    activated = client.post(
        f"/artifacts/program/{edited['id']}/activate",
        json={"expected_pointer_revision": 0},
        headers=HEADERS,
    )
    assert activated.json()["pointer_revision"] == 1

    again = client.post(
        f"/artifacts/program/{edited['id']}/activate",
        json={"expected_pointer_revision": 0},
        headers=HEADERS,
    )
    assert again.status_code == 409
    assert again.json()["detail"]["error"] == "stale_pointer"

    active = client.get("/artifacts/program/active", headers=HEADERS).json()
    assert active["artifact"]["id"] == edited["id"]

    markdown = client.get(f"/artifacts/program/{edited['id']}/markdown", headers=HEADERS)
    assert "### Day 1: Lower" in markdown.text

    unknown_class = client.post("/artifacts/diet_plan", json={"content": {}}, headers=HEADERS)
    assert unknown_class.status_code == 422


def test_workout_commands_over_http(client):
    started = client.post(
        "/workouts/sessions",
        json={"workout": {"title": "Quick", "exercises": [{"exercise_name": "Push-up", "sets": 1, "reps": [10]}]}},
        headers=HEADERS,
    ).json()
    exercise_id = started["exercises"][0]["id"]
    body = {
        "command_id": "cmd-1",
        "expected_version": 1,
        "command": {"type": "complete_set", "set_index": 0, "actual_reps": 10},
    }

    first = client.post(f"/workouts/exercises/{exercise_id}/commands", json=body, headers=HEADERS).json()
    replay = client.post(f"/workouts/exercises/{exercise_id}/commands", json=body, headers=HEADERS).json()
    assert first["duplicate"] is False
    assert replay["duplicate"] is True
    assert replay["result"] == first["result"]
    assert replay["result"]["payload_version"] == 2

    conflict = client.post(
        f"/workouts/exercises/{exercise_id}/commands",
        json={**body, "command_id": "cmd-2"},
        headers=HEADERS,
    )
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["data"]["current_version"] == 2

    finalized = client.post(f"/workouts/sessions/{started['session']['id']}/finalize", json={}, headers=HEADERS)
    assert finalized.json()["status"] == "completed"
    history = client.get("/workouts/history", headers=HEADERS).json()
    assert len(history["items"]) == 1


def test_journey_and_distribution_routes(client):
    submitted = client.post("/intake", json={"name": "Sam", "goals": "Get fit"}, headers=HEADERS)
    assert submitted.status_code == 200
    assert client.get("/journey", headers=HEADERS).json()["journey"]["state"] == "intake_complete"

    bad_phase = client.put("/journey/phases/goals", json={"status": "done"}, headers=HEADERS)
    assert bad_phase.status_code == 422
    workflow_only = client.put("/journey/phases/goals", json={"status": "complete"}, headers=HEADERS)
    assert workflow_only.status_code == 422
    not_running = client.put("/journey/phases/program", json={"status": "paused"}, headers=HEADERS)
    assert not_running.status_code == 409
    assert not_running.json()["detail"]["error"] == "not_active"

    client.put("/distribution/weights", json={"categories": {"strength": 1.0}}, headers=HEADERS)
    client.post("/distribution/fold", json={"goals_addressed": ["strength"]}, headers=HEADERS)
    prompt = client.get("/distribution/prompt", headers=HEADERS)
    assert "Total exercises tracked: 1" in prompt.text
    assert "strength: TARGET 100%, ACTUAL 100% (ok)" in prompt.text
