from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from backend.errors import ConflictError

log = logging.getLogger("starquest.auth.users")


@dataclass
class UserRecord:
    user_id: str = ""
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone_number: Optional[str] = None
    password_hash: str = ""
    role: str = "user"                   # user | admin (platform role)
    is_active: bool = True               # False = soft-deleted
    is_verified: bool = False            # email verified
    verification_code: Optional[str] = None       # sha256 of the 6-digit code
    verification_expires: Optional[str] = None
    password_reset_token: Optional[str] = None    # sha256 of the reset token
    password_reset_expires: Optional[str] = None
    password_changed_at: Optional[str] = None     # ISO datetime of last password change
    created_at: str = ""
    updated_at: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def public(self) -> Dict[str, Any]:
        """Fields safe to return to clients."""
        return {
            "id": self.user_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "name": self.full_name,
            "email": self.email,
            "phone_number": self.phone_number,
            "role": self.role,
            "is_verified": self.is_verified,
            "created_at": self.created_at,
        }


_BOOL_COLUMNS = ("is_active", "is_verified")
_COLUMNS = (
    "first_name", "last_name", "email", "phone_number", "password_hash", "role",
    "is_active", "is_verified", "verification_code", "verification_expires",
    "password_reset_token", "password_reset_expires", "password_changed_at",
)


class UserStore:
    """SQLite-backed user storage."""

    def _conn(self):
        from backend.db.engine import get_conn
        return get_conn()

    def _record_from_row(self, row: Dict[str, Any]) -> UserRecord:
        rec = UserRecord()
        rec.user_id = row.get("id", "")
        rec.first_name = row.get("first_name", "") or ""
        rec.last_name = row.get("last_name", "") or ""
        rec.email = row.get("email", "") or ""
        rec.phone_number = row.get("phone_number")
        rec.password_hash = row.get("password_hash", "") or ""
        rec.role = row.get("role") or "user"
        rec.is_active = bool(row.get("is_active", 1))
        rec.is_verified = bool(row.get("is_verified", 0))
        rec.verification_code = row.get("verification_code")
        rec.verification_expires = row.get("verification_expires")
        rec.password_reset_token = row.get("password_reset_token")
        rec.password_reset_expires = row.get("password_reset_expires")
        rec.password_changed_at = row.get("password_changed_at")
        rec.created_at = row.get("created_at", "")
        rec.updated_at = row.get("updated_at", "")
        return rec

    # ---- CRUD ----

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            if row is None:
                return None
            return self._record_from_row(dict(row))

    def get_by_email(self, email: str) -> Optional[UserRecord]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ? COLLATE NOCASE",
                ((email or "").strip().lower(),),
            ).fetchone()
            if row is None:
                return None
            return self._record_from_row(dict(row))

    def list_users(self) -> List[UserRecord]:
        """Active accounts, oldest first."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE is_active = 1 ORDER BY created_at, email"
            ).fetchall()
            return [self._record_from_row(dict(r)) for r in rows]

    def get_by_reset_token(self, token_hash: str) -> Optional[UserRecord]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE password_reset_token = ?", (token_hash,)
            ).fetchone()
            return self._record_from_row(dict(row)) if row else None

    def create_user(self, rec: UserRecord) -> UserRecord:
        if not rec.user_id:
            rec.user_id = uuid.uuid4().hex
        now = datetime.now().isoformat()
        rec.created_at = rec.created_at or now
        rec.updated_at = now
        rec.email = rec.email.strip().lower()

        with self._conn() as conn:
            existing = conn.execute(
                "SELECT id FROM users WHERE email = ? COLLATE NOCASE", (rec.email,)
            ).fetchone()
            if existing:
                raise ConflictError("User already exists")

            conn.execute(
                """INSERT INTO users (
                    id, first_name, last_name, email, phone_number, password_hash, role,
                    is_active, is_verified, verification_code, verification_expires,
                    password_reset_token, password_reset_expires, password_changed_at,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    rec.user_id,
                    rec.first_name,
                    rec.last_name,
                    rec.email,
                    rec.phone_number,
                    rec.password_hash,
                    rec.role,
                    int(rec.is_active),
                    int(rec.is_verified),
                    rec.verification_code,
                    rec.verification_expires,
                    rec.password_reset_token,
                    rec.password_reset_expires,
                    rec.password_changed_at,
                    rec.created_at,
                    rec.updated_at,
                ),
            )
        log.info("Created user %s (%s)", rec.user_id, rec.email)
        return rec

    def update_user(self, user_id: str, updates: Dict[str, Any]) -> Optional[UserRecord]:
        with self._conn() as conn:
            existing = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            if existing is None:
                return None

            new_email = updates.get("email")
            if new_email:
                updates["email"] = new_email.strip().lower()
                dup = conn.execute(
                    "SELECT id FROM users WHERE email = ? COLLATE NOCASE AND id != ?",
                    (updates["email"], user_id),
                ).fetchone()
                if dup:
                    raise ConflictError("Email already in use")

            sql_updates = {}
            for key, value in updates.items():
                if key not in _COLUMNS:
                    continue
                sql_updates[key] = int(bool(value)) if key in _BOOL_COLUMNS else value

            if not sql_updates:
                return self._record_from_row(dict(existing))

            sql_updates["updated_at"] = datetime.now().isoformat()
            set_clause = ", ".join(f"{k} = ?" for k in sql_updates)
            values = list(sql_updates.values()) + [user_id]
            conn.execute(f"UPDATE users SET {set_clause} WHERE id = ?", values)

            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return self._record_from_row(dict(row))

    def deactivate_user(self, user_id: str) -> bool:
        """Soft delete; users are never removed."""
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE users SET is_active = 0, updated_at = ? WHERE id = ?",
                (datetime.now().isoformat(), user_id),
            )
            return cursor.rowcount > 0
