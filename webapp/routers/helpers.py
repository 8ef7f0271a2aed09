"""Request/response plumbing shared by the API routers."""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from backend.errors import UnauthorizedError, ValidationError


def current_user(request: Request):
    """The user resolved from the ``jwt`` cookie by the auth middleware."""
    user = getattr(request.state, "user", None)
    if user is None:
        message = getattr(request.state, "auth_error", None)
        raise UnauthorizedError(message or "You are not logged in! Please log in to get access.")
    return user


def _uid(request: Request) -> str:
    return current_user(request).user_id


async def read_body(request: Request, required: bool = True) -> Dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        if required:
            raise ValidationError("Request body is required")
        return {}
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise ValidationError("Invalid request body") from exc
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body")
    return body


def ok(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    payload: Dict[str, Any] = {"status": "success"}
    if data is not None:
        payload["data"] = data
    if message:
        payload["message"] = message
    return JSONResponse(payload, status_code=status_code)
