"""
Dependency helpers for the standalone FastAPI app.
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import Header, HTTPException

from core.context import AuthContext, RequestContext


async def get_auth_context(
    x_owner_id: Optional[str] = Header(default=None),
    x_actor: Optional[str] = Header(default=None),
) -> AuthContext:
    """Owner identity from the trusted X-Owner-Id header; authentication happens upstream."""
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(
            status_code=401,
            detail={"error": "missing_owner", "message": "X-Owner-Id header is required"},
        )
    return AuthContext(owner_id=x_owner_id.strip(), actor=(x_actor or "").strip() or "user")


async def get_request_context(
    x_owner_id: Optional[str] = Header(default=None),
    x_actor: Optional[str] = Header(default=None),
    x_request_id: Optional[str] = Header(default=None),
) -> RequestContext:
    auth = await get_auth_context(x_owner_id, x_actor)
    return RequestContext(auth=auth, request_id=x_request_id or uuid.uuid4().hex, source="http")


def tool_result(result: dict) -> dict:
    """Turn a service_tool validation payload into a 422 response."""
    if isinstance(result, dict) and result.get("status") == "error":
        raise HTTPException(status_code=422, detail=result)
    return result
