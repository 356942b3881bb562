import json
import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import httpx
import pytest

from core.errors import ReasoningEngineError
from core.services import reasoning


def test_generate_normalizes_response(fake_engine):
    fake_engine.handler = lambda request: httpx.Response(
        200,
        json={"message": "Let's go", "tool_call": "not-an-object", "cost_cents": "0.25"},
    )
    result = reasoning.generate([{"role": "user", "content": "hi"}], tools=[{"name": "save_note"}])

    assert result["message"] == "Let's go"
    assert result["tool_call"] is None
    assert result["tokens"] == {}
    assert result["cost_cents"] == pytest.approx(0.25)
    body = json.loads(fake_engine.requests[0].content)
    assert body["tools"] == [{"name": "save_note"}]
    assert fake_engine.requests[0].url.path == "/v1/generate"


def test_retryable_status_is_retried(fake_engine):
    responses = iter([httpx.Response(503), httpx.Response(429), httpx.Response(200, json={"message": "ok"})])
    fake_engine.handler = lambda request: next(responses)

    assert reasoning.generate([])["message"] == "ok"
    assert len(fake_engine.requests) == 3
    assert reasoning.reasoning_circuit_breaker.status()["consecutive_failures"] == 0


def test_client_error_is_not_retried(fake_engine):
    fake_engine.handler = lambda request: httpx.Response(400, json={"error": "bad request"})

    with pytest.raises(ReasoningEngineError):
        reasoning.revise("program", {}, "shorter sessions")
    assert len(fake_engine.requests) == 1


def test_transport_errors_exhaust_retries(fake_engine):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    fake_engine.handler = handler
    with pytest.raises(ReasoningEngineError):
        reasoning.generate([])
    assert len(fake_engine.requests) == reasoning.REASONING_RETRY_MAX + 1


def test_breaker_opens_after_repeated_failures(fake_engine, monkeypatch):
    monkeypatch.setattr(reasoning.reasoning_circuit_breaker, "_failure_threshold", 2)
    fake_engine.handler = lambda request: httpx.Response(401)

    for _ in range(2):
        with pytest.raises(ReasoningEngineError):
            reasoning.generate([])
    assert reasoning.reasoning_circuit_breaker.is_open()

    with pytest.raises(ReasoningEngineError) as excinfo:
        reasoning.generate([])
    assert "circuit breaker open" in str(excinfo.value)
    assert len(fake_engine.requests) == 2


def test_unconfigured_engine_fails_fast(monkeypatch):
    monkeypatch.setattr(reasoning, "REASONING_ENGINE_URL", None)
    with pytest.raises(ReasoningEngineError) as excinfo:
        reasoning.revise("goal_contract", {"primary_goal": "x"}, "tweak")
    assert "not configured" in str(excinfo.value)
