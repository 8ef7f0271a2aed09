"""Account flows: signup, login, email verification, password reset, profile."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from backend.errors import AppError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from backend.mailer import Mailer
from backend.quest.common import normalize_email, require_choice, require_text
from backend.quest.directory import WorkspaceStore
from backend.quest.invitations import InvitationService
from backend.settings import PLATFORM_ROLES, Settings

from .passwords import (
    generate_token, generate_verification_code, hash_password, hash_token,
    validate_password_strength, verify_password,
)
from .user_store import UserRecord, UserStore

log = logging.getLogger("starquest.auth.accounts")

DEFAULT_WORKSPACE = {
    "name": "Default Workspace",
    "description": "Your personal workspace",
    "rules": "Standard workspace rules",
}


class AccountService:

    def __init__(
        self,
        user_store: UserStore,
        workspace_store: WorkspaceStore,
        invitations: InvitationService,
        mailer: Mailer,
        settings: Settings,
    ) -> None:
        self._users = user_store
        self._workspaces = workspace_store
        self._invitations = invitations
        self._mailer = mailer
        self._settings = settings

    # ---- passwords ----

    def _check_new_password(self, password: Any, confirm: Any) -> str:
        if not isinstance(password, str) or not password:
            raise ValidationError("Password is required")
        if password != confirm:
            raise ValidationError("Passwords are not the same!")
        err = validate_password_strength(password, self._settings.password_policy)
        if err:
            raise ValidationError(err)
        return password

    def _password_updates(self, password: str) -> Dict[str, Any]:
        # one second back so a token signed right after the change stays valid
        changed = datetime.now() - timedelta(seconds=1)
        return {
            "password_hash": hash_password(password),
            "password_changed_at": changed.isoformat(),
            "password_reset_token": None,
            "password_reset_expires": None,
        }

    # ---- signup / verification ----

    def signup(self, data: Dict[str, Any]) -> UserRecord:
        """Register a user, give them a default workspace and apply invitations."""
        first_name = require_text(data, "firstName", "First name")
        last_name = require_text(data, "lastName", "Last name")
        email = normalize_email(data.get("email"))
        password = self._check_new_password(data.get("password"), data.get("passwordConfirm"))
        phone = data.get("phoneNumber")
        if phone is not None and not isinstance(phone, str):
            raise ValidationError("phoneNumber must be a string")

        user = self._users.create_user(UserRecord(
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone_number=phone,
            password_hash=hash_password(password),
            role="admin" if email in self._settings.platform_admin_emails else "user",
        ))
        self._workspaces.create_workspace(user.user_id, **DEFAULT_WORKSPACE)

        joined = self._invitations.process_pending_invitations(email, user.user_id)
        token = data.get("invitationToken")
        if token:
            try:
                self._invitations.accept_invitation_by_token(token, user.user_id)
            except AppError as exc:
                # already applied above, expired, or issued to someone else
                log.warning("Signup of %s: invitation token not applied: %s", user.user_id, exc.message)

        self.send_verification_code(user)
        log.info("User %s signed up (%d workspace invitation(s) applied)", user.user_id, len(joined))
        return self._users.get_user(user.user_id) or user

    def send_verification_code(self, user: UserRecord) -> None:
        code = generate_verification_code()
        expires = datetime.now() + timedelta(minutes=self._settings.verification_code_minutes)
        self._users.update_user(user.user_id, {
            "verification_code": hash_token(code),
            "verification_expires": expires.isoformat(),
        })
        self._mailer.send(
            user.email, "Your verification code", "verification",
            first_name=user.first_name, code=code, minutes=self._settings.verification_code_minutes,
        )

    def verify_email(self, email: Any, code: Any) -> UserRecord:
        if not isinstance(code, str) or not code:
            raise ValidationError("Verification code is required")
        user = self._users.get_by_email(email if isinstance(email, str) else "")
        now = datetime.now().isoformat()
        if (
            user is None
            or user.verification_code != hash_token(code)
            or (user.verification_expires or "") <= now
        ):
            raise ValidationError("Token is invalid or has expired")
        return self._users.update_user(user.user_id, {
            "is_verified": True,
            "verification_code": None,
            "verification_expires": None,
        })

    # ---- login ----

    def login(self, email: Any, password: Any) -> UserRecord:
        if not email or not password:
            raise ValidationError("Please provide email and password!")
        user = self._users.get_by_email(str(email))
        if user is None or not user.is_active or not verify_password(str(password), user.password_hash):
            raise UnauthorizedError("Incorrect email or password")
        return user

    # ---- password reset ----

    def forgot_password(self, email: Any) -> str:
        """Store a reset token digest and mail the raw token. Returns the raw token."""
        user = self._users.get_by_email(email if isinstance(email, str) else "")
        if user is None or not user.is_active:
            raise NotFoundError("There is no user with that email address.")
        token = generate_token()
        expires = datetime.now() + timedelta(minutes=self._settings.password_reset_minutes)
        self._users.update_user(user.user_id, {
            "password_reset_token": hash_token(token),
            "password_reset_expires": expires.isoformat(),
        })
        reset_url = f"{self._settings.client_url.rstrip('/')}/reset-password/{token}"
        self._mailer.send(
            user.email, "Your password reset token (valid for 10 min)", "reset_password",
            reset_url=reset_url, minutes=self._settings.password_reset_minutes,
        )
        log.info("Password reset requested for %s", user.user_id)
        return token

    def reset_password(self, token: str, password: Any, confirm: Any) -> UserRecord:
        user = self._users.get_by_reset_token(hash_token(token or ""))
        if user is None or (user.password_reset_expires or "") <= datetime.now().isoformat():
            raise ValidationError("Token is invalid or has expired")
        self._check_new_password(password, confirm)
        return self._users.update_user(user.user_id, self._password_updates(password))

    def update_password(self, user_id: str, current: Any, password: Any, confirm: Any) -> UserRecord:
        user = self._users.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not isinstance(current, str) or not verify_password(current, user.password_hash):
            raise UnauthorizedError("Your current password is wrong.")
        self._check_new_password(password, confirm)
        return self._users.update_user(user_id, self._password_updates(password))

    # ---- profile ----

    def update_me(self, user_id: str, data: Dict[str, Any]) -> UserRecord:
        user = self._users.update_user(user_id, self._profile_updates(data))
        if user is None:
            raise NotFoundError("User not found")
        return user

    def delete_me(self, user_id: str) -> None:
        self._users.deactivate_user(user_id)
        log.info("User %s deactivated their account", user_id)

    def _profile_updates(self, data: Dict[str, Any], allow_role: bool = False) -> Dict[str, Any]:
        if "password" in data or "passwordConfirm" in data:
            raise ValidationError("This route is not for password updates. Please use /updateMyPassword.")
        updates: Dict[str, Any] = {}
        if allow_role and "role" in data:
            updates["role"] = require_choice(data["role"], PLATFORM_ROLES, "role")
        if "firstName" in data:
            updates["first_name"] = require_text(data, "firstName", "First name")
        if "lastName" in data:
            updates["last_name"] = require_text(data, "lastName", "Last name")
        if "email" in data:
            updates["email"] = normalize_email(data["email"])
        if "phoneNumber" in data:
            phone: Optional[str] = data["phoneNumber"]
            if phone is not None and not isinstance(phone, str):
                raise ValidationError("phoneNumber must be a string")
            updates["phone_number"] = phone
        if not updates:
            raise ValidationError("At least one field must be provided")
        return updates

    # ---- platform administration ----

    def require_platform_admin(self, actor_id: str) -> UserRecord:
        actor = self._users.get_user(actor_id)
        if actor is None or not actor.is_active or actor.role != "admin":
            raise ForbiddenError("You do not have permission to perform this action")
        return actor

    def list_users(self, actor_id: str) -> List[UserRecord]:
        self.require_platform_admin(actor_id)
        return self._users.list_users()

    def get_user(self, actor_id: str, user_id: str) -> UserRecord:
        self.require_platform_admin(actor_id)
        user = self._users.get_user(user_id)
        if user is None or not user.is_active:
            raise NotFoundError("No user found with that ID")
        return user

    def update_user(self, actor_id: str, user_id: str, data: Dict[str, Any]) -> UserRecord:
        """Profile fields plus the platform ``role``; passwords stay with their owner."""
        self.get_user(actor_id, user_id)
        updates = self._profile_updates(data, allow_role=True)
        if user_id == actor_id and updates.get("role") == "user":
            raise ValidationError("You cannot remove your own admin role")
        user = self._users.update_user(user_id, updates)
        log.info("Platform admin %s updated user %s (%s)", actor_id, user_id, ", ".join(sorted(updates)))
        return user

    def delete_user(self, actor_id: str, user_id: str) -> None:
        """Soft delete on behalf of a platform admin."""
        self.get_user(actor_id, user_id)
        self._users.deactivate_user(user_id)
        log.info("Platform admin %s deactivated user %s", actor_id, user_id)
