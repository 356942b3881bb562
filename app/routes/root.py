"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import core.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "TrainerGate",
        "version": "0.1.0",
        "description": "Session event log and versioned coaching artifacts",
        "db_backend": config.DB_BACKEND_EFFECTIVE,
        "reasoning_engine_configured": bool(config.REASONING_ENGINE_URL),
        "endpoints": {
            "health": "/health",
            "sessions": "/sessions",
            "artifacts": "/artifacts",
            "workouts": "/workouts",
            "journey": "/journey",
            "distribution": "/distribution",
            "intake": "/intake",
        },
    }
