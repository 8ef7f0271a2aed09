from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi.responses import Response
from jose import JWTError, jwt

from backend.errors import UnauthorizedError
from backend.settings import Settings

from .user_store import UserRecord, UserStore

log = logging.getLogger("starquest.auth.identity")


class TokenService:
    """Stateless sessions: an HS256 JWT in an httpOnly cookie."""

    COOKIE_NAME = "jwt"
    ALGORITHM = "HS256"
    LOGGED_OUT = "loggedout"

    def __init__(self, settings: Settings, user_store: UserStore) -> None:
        self._settings = settings
        self._users = user_store

    def sign(self, user_id: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        claims = {
            "id": user_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(days=self._settings.jwt_expires_days)).timestamp()),
        }
        return jwt.encode(claims, self._settings.jwt_secret, algorithm=self.ALGORITHM)

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(token, self._settings.jwt_secret, algorithms=[self.ALGORITHM])
        except JWTError as exc:
            raise UnauthorizedError("Invalid token. Please log in again!") from exc
        if not claims.get("id") or "iat" not in claims:
            raise UnauthorizedError("Invalid token. Please log in again!")
        return claims

    def resolve(self, token: Optional[str]) -> UserRecord:
        """Token -> active user, or UnauthorizedError."""
        if not token or token == self.LOGGED_OUT:
            raise UnauthorizedError("You are not logged in! Please log in to get access.")
        claims = self.decode(token)
        user = self._users.get_user(claims["id"])
        if user is None or not user.is_active:
            raise UnauthorizedError("The user belonging to this token does no longer exist.")
        if changed_after(user, claims["iat"]):
            raise UnauthorizedError("User recently changed password! Please log in again.")
        return user

    # ---- cookies ----

    def set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            key=self.COOKIE_NAME,
            value=token,
            httponly=True,
            secure=self._settings.is_production,
            samesite="lax",
            max_age=self._settings.jwt_cookie_expires_days * 24 * 3600,
            path="/",
        )

    def clear_cookie(self, response: Response) -> None:
        response.set_cookie(
            key=self.COOKIE_NAME,
            value=self.LOGGED_OUT,
            httponly=True,
            secure=self._settings.is_production,
            samesite="lax",
            max_age=10,
            path="/",
        )


def changed_after(user: UserRecord, issued_at: int) -> bool:
    """True when the password changed after a token issued at ``issued_at``."""
    if not user.password_changed_at:
        return False
    try:
        changed = int(datetime.fromisoformat(user.password_changed_at).timestamp())
    except ValueError:
        log.warning("Unparseable password_changed_at for user %s", user.user_id)
        return False
    return issued_at < changed
