"""
HTTP client for the external reasoning engine.

The engine is a black box that either generates the next coach message
(optionally with one tool call) or revises an artifact document from a
natural-language instruction. Calls are never made while a database
transaction is open.
"""

from __future__ import annotations

import random
import threading
import time
from typing import Optional

import httpx

import core.config as config
from core.errors import ReasoningEngineError

logger = config.logger

REASONING_ENGINE_URL = config.REASONING_ENGINE_URL
REASONING_ENGINE_API_KEY = config.REASONING_ENGINE_API_KEY
REASONING_MODEL = config.REASONING_MODEL
REASONING_TIMEOUT_SECONDS = config.REASONING_TIMEOUT_SECONDS
REASONING_RETRY_MAX = config.REASONING_RETRY_MAX
REASONING_RETRY_BACKOFF_SECONDS = config.REASONING_RETRY_BACKOFF_SECONDS
REASONING_RETRY_JITTER_SECONDS = config.REASONING_RETRY_JITTER_SECONDS

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

http_client: Optional[httpx.Client] = None


def init_http_client(transport: Optional[httpx.BaseTransport] = None) -> None:
    """Initialize the pooled client used for reasoning calls."""
    global http_client
    headers = {"Content-Type": "application/json"}
    if REASONING_ENGINE_API_KEY:
        headers["Authorization"] = f"Bearer {REASONING_ENGINE_API_KEY}"
    http_client = httpx.Client(
        base_url=REASONING_ENGINE_URL or "",
        timeout=httpx.Timeout(REASONING_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
        headers=headers,
        transport=transport,
    )
    logger.info("Reasoning HTTP client initialized")


def cleanup_http_client() -> None:
    global http_client
    if http_client:
        http_client.close()
        http_client = None
        logger.info("Reasoning HTTP client closed")


class ReasoningCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def reset(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_error = None

    def status(self) -> dict:
        with self._lock:
            return {
                "configured": bool(REASONING_ENGINE_URL),
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


reasoning_circuit_breaker = ReasoningCircuitBreaker(
    failure_threshold=config.REASONING_FAILURE_THRESHOLD,
    cooldown_seconds=config.REASONING_COOLDOWN_SECONDS,
)


def _raise_unavailable(detail: str) -> None:
    logger.warning(f"Reasoning engine unavailable: {detail}")
    raise ReasoningEngineError(f"reasoning engine unavailable: {detail}")


def _sleep_backoff(attempt: int) -> None:
    base = REASONING_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, REASONING_RETRY_JITTER_SECONDS)
    time.sleep(base + jitter)


def _post(path: str, body: dict) -> dict:
    if not REASONING_ENGINE_URL:
        _raise_unavailable("REASONING_ENGINE_URL not configured")
    if reasoning_circuit_breaker.is_open():
        _raise_unavailable("circuit breaker open")
    if http_client is None:
        init_http_client()

    for attempt in range(REASONING_RETRY_MAX + 1):
        try:
            response = http_client.post(path, json=body)
        except httpx.RequestError as exc:
            if attempt >= REASONING_RETRY_MAX:
                reasoning_circuit_breaker.record_failure(f"request error: {exc.__class__.__name__}")
                _raise_unavailable("request error")
            _sleep_backoff(attempt)
            continue

        if response.status_code in RETRYABLE_STATUS:
            if attempt >= REASONING_RETRY_MAX:
                reasoning_circuit_breaker.record_failure(f"status {response.status_code}")
                _raise_unavailable(f"status {response.status_code}")
            _sleep_backoff(attempt)
            continue
        if response.status_code >= 400:
            reasoning_circuit_breaker.record_failure(f"status {response.status_code}")
            _raise_unavailable(f"status {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            reasoning_circuit_breaker.record_failure("invalid json")
            _raise_unavailable("invalid json")
        reasoning_circuit_breaker.record_success()
        return data if isinstance(data, dict) else {"raw": data}

    _raise_unavailable("retries exhausted")


def generate(messages: list[dict], tools: Optional[list[dict]] = None) -> dict:
    """Ask the engine for the next assistant turn.

    Returns a dict with "message" (text or None), an optional "tool_call"
    ({"name", "arguments", "id"}), "tokens", "cost_cents" and
    "finish_reason".
    """
    body = {"model": REASONING_MODEL, "messages": messages}
    if tools:
        body["tools"] = tools
    started = time.time()
    data = _post("/v1/generate", body)
    tool_call = data.get("tool_call")
    return {
        "message": data.get("message"),
        "tool_call": tool_call if isinstance(tool_call, dict) else None,
        "tokens": data.get("tokens") or {},
        "cost_cents": float(data.get("cost_cents") or 0.0),
        "finish_reason": data.get("finish_reason"),
        "model": data.get("model") or REASONING_MODEL,
        "duration_ms": int((time.time() - started) * 1000),
    }


def revise(artifact_class: str, content: dict, instruction: str):
    """Ask the engine to rewrite an artifact document; returns the proposed document."""
    data = _post(
        "/v1/revise",
        {
            "model": REASONING_MODEL,
            "artifact_class": artifact_class,
            "content": content,
            "instruction": instruction,
        },
    )
    return data.get("content")


__all__ = [
    "init_http_client",
    "cleanup_http_client",
    "reasoning_circuit_breaker",
    "generate",
    "revise",
]
