from __future__ import annotations
from dataclasses import dataclass

# ====== App identity ======
APP_NAME: str = "StarQuest"
APP_VERSION: str = "1.0.0"

# ====== Domain constants ======
PLANETS = (
    "Nebulae",
    "Solaris minor",
    "Solaris major",
    "White dwarf",
    "Supernova",
    "Space station",
)
TASK_CATEGORIES = ("Learning courses", "Product refinement", "Mandatory sessions")
QUEST_STATUSES = ("Backlog", "To Do", "In Progress", "In Review", "Done")
WORKSPACE_ROLES = ("admin", "mentor", "mentee")
PLATFORM_ROLES = ("user", "admin")
INVITATION_STATUSES = ("pending", "accepted", "expired", "cancelled")
ACTIVITY_CATEGORIES = (
    "learning",
    "better me",
    "project",
    "product refinement",
    "technical sessions",
    "networking",
)
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass
class Settings:
    environment: str = "development"        # development | production
    jwt_secret: str = "change-me-starquest-secret"
    jwt_expires_days: int = 90
    jwt_cookie_expires_days: int = 90
    client_url: str = "http://localhost:3000"
    mail_from: str = "StarQuest <no-reply@starquest.local>"
    # Lifetimes
    invitation_expiry_days: int = 7
    direct_invite_token_hours: int = 1
    password_reset_minutes: int = 10
    verification_code_minutes: int = 20
    # Security: password policy ("none", "basic", "medium", "strong")
    password_policy: str = "medium"
    log_level: str = "INFO"
    # Comma-separated emails that sign up with the platform admin role
    admin_emails: str = ""

    @property
    def platform_admin_emails(self) -> frozenset:
        return frozenset(e.strip().lower() for e in self.admin_emails.split(",") if e.strip())

    @property
    def is_production(self) -> bool:
        return self.environment == "production"
