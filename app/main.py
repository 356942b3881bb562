"""
Standalone FastAPI app wiring for TrainerGate.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import core.config as config
from core.db import DB, init_db
from core.errors import (
    ConflictError,
    NotFoundError,
    ReasoningEngineError,
    StorageError,
    ValidationIssue,
)
from core.services import reasoning
from app.middleware import configure_middleware
from app.routes.artifacts import router as artifacts_router
from app.routes.distribution import router as distribution_router
from app.routes.health import router as health_router
from app.routes.journey import router as journey_router
from app.routes.root import router as root_router
from app.routes.sessions import router as sessions_router
from app.routes.workouts import router as workouts_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    init_db()
    reasoning.init_http_client()
    try:
        yield
    finally:
        reasoning.cleanup_http_client()
        if DB.engine:
            DB.engine.dispose()


app = FastAPI(title="TrainerGate", redirect_slashes=False, lifespan=lifespan)
configure_middleware(app)


# =============================================================================
# Error mapping
# =============================================================================

@app.exception_handler(ValidationIssue)
async def _validation_issue_handler(request: Request, exc: ValidationIssue):
    body = {
        "status": "error",
        "error_type": "validation_error",
        "field": exc.field,
        "message": str(exc),
    }
    if exc.error_code:
        body["error_code"] = exc.error_code
    if exc.data:
        body["data"] = exc.data
    return JSONResponse(status_code=422, content={"detail": body})


@app.exception_handler(NotFoundError)
async def _not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={"detail": {"error": "not_found", "resource": exc.resource, "id": exc.resource_id, "message": str(exc)}},
    )


@app.exception_handler(ConflictError)
async def _conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(
        status_code=409,
        content={"detail": {"error": exc.error_code, "message": str(exc), "data": exc.data}},
    )


@app.exception_handler(StorageError)
async def _storage_handler(request: Request, exc: StorageError):
    config.logger.warning(f"{request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": {"error": "storage_unavailable", "message": str(exc)}})


@app.exception_handler(ReasoningEngineError)
async def _reasoning_handler(request: Request, exc: ReasoningEngineError):
    return JSONResponse(status_code=503, content={"detail": {"error": "reasoning_unavailable", "message": str(exc)}})


# Health and root endpoints
app.include_router(health_router)
app.include_router(root_router)

app.include_router(sessions_router)
app.include_router(artifacts_router)
app.include_router(workouts_router)
app.include_router(journey_router)
app.include_router(distribution_router)


# =============================================================================
# Main
# =============================================================================

if __name__ == "__main__":
    config.logger.info("TrainerGate starting...")
    uvicorn.run(app, host=os.environ.get("HOST", "0.0.0.0"), port=int(os.environ.get("PORT", "8080")))
