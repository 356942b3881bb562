"""
Health and dependency endpoints.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, HTTPException
from sqlalchemy import text

from core.db import DB, _get_schema_revisions
from core.services import reasoning


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    current_rev, head_rev = _get_schema_revisions(DB.engine)
    schema_ok = head_rev is None or current_rev == head_rev
    return {
        "ok": schema_ok,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }


def _check_reasoning_health() -> dict:
    breaker_status = reasoning.reasoning_circuit_breaker.status()
    if not breaker_status.get("configured"):
        state = "disabled"
    elif breaker_status.get("open"):
        state = "cooldown"
    else:
        state = "ready"
    return {"status": state, "circuit_breaker": breaker_status}


@router.get("/health")
async def health():
    """Health check endpoint."""
    db_health = _check_db_health()
    reasoning_status = _check_reasoning_health()
    if not db_health.get("ok"):
        raise HTTPException(
            status_code=503,
            detail={"database": db_health, "reasoning_engine": reasoning_status},
        )

    return {
        "status": "healthy",
        "service": "TrainerGate",
        "version": "0.1.0",
        "instance_id": os.environ.get("TRAINERGATE_INSTANCE_ID", "trainergate-1"),
        "database": db_health,
        "reasoning_engine": reasoning_status,
    }
