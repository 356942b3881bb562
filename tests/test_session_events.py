import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")

import pytest

from core.errors import ConflictError, NotFoundError
from core.models import SessionEvent
from core.services import session_events
import core.config as config


def _new_session(owner, kind="chat") -> str:
    created = session_events.create_session(kind=kind, context=owner)
    assert created["status"] == "created"
    return created["session"]["id"]


def test_sequential_appends_are_gap_free(server_db, owner):
    session_id = _new_session(owner)
    numbers = [
        session_events.log_user_message(session_id, f"message {i}", context=owner)["sequence_number"]
        for i in range(5)
    ]
    assert numbers == [1, 2, 3, 4, 5]


def test_concurrent_appends_are_gap_free(server_db, owner):
    session_id = _new_session(owner)

    def _append(i: int) -> int:
        result = session_events.append_event(
            session_id,
            "tool_result",
            {"tool_name": "counter", "result": {"i": i}},
            context=owner,
        )
        assert result["status"] == "appended"
        return result["sequence_number"]

    with ThreadPoolExecutor(max_workers=4) as executor:
        numbers = list(executor.map(_append, range(12)))

    assert sorted(numbers) == list(range(1, 13))
    events = session_events.read_range(session_id, context=owner)["events"]
    assert [e["sequence_number"] for e in events] == list(range(1, 13))


def test_read_range_is_stable_after_later_appends(server_db, owner):
    session_id = _new_session(owner)
    for i in range(3):
        session_events.log_user_message(session_id, f"before {i}", context=owner)
    before = session_events.read_range(session_id, from_sequence=1, context=owner)["events"]

    session_events.log_knowledge(session_id, "exercise_db", {"rows": 2}, context=owner)
    after = session_events.read_range(session_id, from_sequence=1, context=owner)["events"]

    assert after[: len(before)] == before
    assert after[-1]["event_type"] == "knowledge"


def test_read_range_filters_by_type(server_db, owner):
    session_id = _new_session(owner)
    session_events.log_user_message(session_id, "hi", context=owner)
    session_events.log_llm_request(session_id, "default", {"message_count": 1}, context=owner)
    session_events.log_tool_call(session_id, "lookup", {"q": "squat"}, call_id="c1", context=owner)

    result = session_events.read_range(session_id, event_types=["tool_call"], context=owner)
    assert result["count"] == 1
    assert result["events"][0]["sequence_number"] == 3
    assert result["events"][0]["data"]["call_id"] == "c1"


def test_invalid_payload_is_rejected_without_write(server_db, owner):
    session_id = _new_session(owner)
    result = session_events.append_event(session_id, "user_message", {"text": "wrong key"}, context=owner)
    assert result["status"] == "error"
    assert result["field"].startswith("payload")

    unknown = session_events.append_event(session_id, "telemetry", {}, context=owner)
    assert unknown["status"] == "error"
    assert unknown["field"] == "event_type"

    assert session_events.read_range(session_id, context=owner)["count"] == 0


def test_unknown_session_and_other_owner(server_db, owner, other_owner):
    session_id = _new_session(owner)
    with pytest.raises(NotFoundError):
        session_events.log_user_message(session_id, "not yours", context=other_owner)
    with pytest.raises(NotFoundError):
        session_events.get_session("6f0e9a52-1b0c-4d7b-9a55-2f3f3f0f0f0f", context=owner)


def test_closed_session_rejects_appends(server_db, owner):
    session_id = _new_session(owner)
    session_events.log_llm_response(
        session_id,
        content="Let's start.",
        tokens={"prompt": 100, "completion": 20, "cached": 40, "total": 120},
        cost_cents=0.5,
        context=owner,
    )
    session_events.log_llm_response(
        session_id,
        content="Next.",
        tokens={"prompt": 100, "completion": 10, "cached": 60, "total": 110},
        cost_cents=0.25,
        context=owner,
    )

    ended = session_events.end_session(session_id, context=owner)
    assert ended["status"] == "ended"
    assert ended["llm_calls"] == 2
    assert ended["session"]["total_tokens"] == 230
    assert ended["session"]["cached_tokens"] == 100
    assert ended["session"]["total_cost_cents"] == pytest.approx(0.75)
    assert ended["cache_hit_rate"] == pytest.approx(0.5)

    with pytest.raises(ConflictError) as excinfo:
        session_events.log_user_message(session_id, "too late", context=owner)
    assert excinfo.value.error_code == "session_closed"


def test_get_or_create_reuses_active_session(server_db, owner):
    first = session_events.get_or_create_session(kind="goals", context=owner)
    second = session_events.get_or_create_session(kind="goals", context=owner)
    assert first["status"] == "created"
    assert second["status"] == "ok"
    assert first["session"]["id"] == second["session"]["id"]

    other_kind = session_events.get_or_create_session(kind="program", context=owner)
    assert other_kind["session"]["id"] != first["session"]["id"]

    listed = session_events.list_sessions(context=owner)
    assert listed["count"] == 2


def test_artifact_events_are_addressable(server_db, owner):
    session_id = _new_session(owner, kind="program")
    logged = session_events.log_artifact(
        session_id,
        "program_summary",
        "Strength block",
        {"weeks": 4},
        summary="Four-week block",
        context=owner,
    )
    art_id = logged["event"]["data"]["artifact_id"]
    assert art_id.startswith("art_")

    found = session_events.get_artifact_event(session_id, art_id, context=owner)
    assert found["status"] == "ok"
    assert found["event"]["data"]["title"] == "Strength block"

    missing = session_events.get_artifact_event(session_id, "art_00000000", context=owner)
    assert missing["status"] == "not_found"


def test_event_rows_are_append_only(server_db, db_session, owner):
    session_id = _new_session(owner)
    session_events.log_user_message(session_id, "original", context=owner)

    row = db_session.query(SessionEvent).filter(SessionEvent.session_id == session_id).one()
    row.data = {"message": "rewritten"}
    with pytest.raises(ConflictError):
        db_session.flush()
    db_session.rollback()

    with pytest.raises(ConflictError):
        db_session.delete(row)
        db_session.flush()
    db_session.rollback()

    events = session_events.read_range(session_id, context=owner)["events"]
    assert events[0]["data"]["message"] == "original"


def test_list_sessions_uses_configured_default_limit(server_db, owner, monkeypatch):
    monkeypatch.setattr(config, "DEFAULT_SESSION_LIST_LIMIT", 2)
    for kind in ("chat", "goals", "program"):
        _new_session(owner, kind=kind)

    assert session_events.list_sessions(context=owner)["count"] == 2
    assert session_events.list_sessions(limit=3, context=owner)["count"] == 3
