"""Helpers shared by the domain stores: ids, timestamps, membership checks, input checks."""
from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from email_validator import EmailNotValidError, validate_email

from backend.errors import ForbiddenError, NotFoundError, ValidationError


def _now() -> str:
    return datetime.now().isoformat()


def _id() -> str:
    return uuid.uuid4().hex


def _conn():
    from backend.db.engine import get_conn
    return get_conn()


# =====================================================================
# MEMBERSHIP
# =====================================================================

def get_member(conn: sqlite3.Connection, workspace_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        "SELECT * FROM workspace_members WHERE workspace_id = ? AND user_id = ?",
        (workspace_id, user_id),
    ).fetchone()
    return dict(row) if row else None


def require_workspace(conn: sqlite3.Connection, workspace_id: str) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
    if row is None:
        raise NotFoundError("Workspace not found")
    return dict(row)


def require_member(
    conn: sqlite3.Connection,
    workspace_id: str,
    user_id: str,
    roles: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    """Return the caller's verified membership, failing closed.

    404 when the workspace is missing, 403 when the caller is not a verified
    member or holds none of ``roles``.
    """
    require_workspace(conn, workspace_id)
    member = get_member(conn, workspace_id, user_id)
    if member is None or not member["is_verified"]:
        raise ForbiddenError("You are not a member of this workspace")
    if roles and member["role"] not in roles:
        raise ForbiddenError("You do not have permission to perform this action")
    return member


# =====================================================================
# INPUT CHECKS
# =====================================================================

def require_text(data: Dict[str, Any], key: str, label: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    return value.strip()


def optional_text(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value.strip()


def require_choice(value: Any, choices: Iterable[str], label: str) -> str:
    if value not in tuple(choices):
        raise ValidationError(f"Invalid {label}: {value!r}")
    return value


def require_bool(data: Dict[str, Any], key: str, default: Optional[bool] = None) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be a boolean")
    return value


def require_number(
    data: Dict[str, Any], key: str, label: str,
    minimum: Optional[float] = None, maximum: Optional[float] = None,
) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{label} must be a number")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{label} must be at least {minimum:g}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{label} must be at most {maximum:g}")
    return value


def string_list(value: Any, label: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{label} must be a list of strings")
    # keep order, drop duplicates
    return list(dict.fromkeys(value))


def normalize_email(value: Any, label: str = "Email") -> str:
    """Syntax-checked, lowercased address. No DNS lookups."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    try:
        result = validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError(f"Please provide a valid email: {exc}") from exc
    return result.normalized.lower()
