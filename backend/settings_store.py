"""settings.json persistence with STARQUEST_* environment overrides."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict

from .settings import Settings

log = logging.getLogger("starquest.settings")

FILENAME = "settings.json"

# Environment variables win over settings.json
ENV_OVERRIDES = {
    "STARQUEST_ENV": "environment",
    "STARQUEST_JWT_SECRET": "jwt_secret",
    "STARQUEST_CLIENT_URL": "client_url",
    "STARQUEST_MAIL_FROM": "mail_from",
    "STARQUEST_PASSWORD_POLICY": "password_policy",
    "STARQUEST_LOG_LEVEL": "log_level",
    "STARQUEST_ADMIN_EMAILS": "admin_emails",
}


def config_dir() -> Path:
    """$STARQUEST_CONFIG_DIR, or backend/.starquest/ when running from source."""
    configured = (os.environ.get("STARQUEST_CONFIG_DIR") or "").strip()
    if configured:
        return Path(configured).expanduser().resolve()
    return Path(__file__).resolve().parent / ".starquest"


def _settings_file() -> Path:
    directory = config_dir()
    directory.mkdir(parents=True, exist_ok=True)
    return directory / FILENAME


def _read(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        log.warning("Ignoring unreadable settings file %s", path)
        return {}
    if not isinstance(data, dict):
        log.warning("Ignoring settings file %s: top level is not an object", path)
        return {}
    return data


def load_settings() -> Settings:
    """Defaults, then settings.json, then environment variables."""
    known = {f.name for f in fields(Settings)}
    stored = {k: v for k, v in _read(_settings_file()).items() if k in known}
    settings = Settings(**stored)
    for env_name, attr in ENV_OVERRIDES.items():
        value = (os.environ.get(env_name) or "").strip()
        if value:
            setattr(settings, attr, value)
    return settings


def save_settings(settings: Settings) -> None:
    """Write settings.json through a temp file so readers never see half a file."""
    path = _settings_file()
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(asdict(settings), indent=2, ensure_ascii=False), encoding="utf-8")
    tmp.replace(path)
