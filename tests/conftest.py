"""Shared pytest fixtures for StarQuest tests."""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Ensure the project root is importable
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

# Override data/config directories so tests don't touch real data.
os.environ["STARQUEST_DATA_DIR"] = tempfile.mkdtemp(prefix="starquest_test_data_")
os.environ["STARQUEST_CONFIG_DIR"] = tempfile.mkdtemp(prefix="starquest_test_cfg_")
os.environ.setdefault("STARQUEST_ENV", "development")


@pytest.fixture(autouse=True)
def _isolated_db(tmp_path):
    """Each test gets its own database."""
    from backend.db import engine
    db_path = tmp_path / "starquest_test.db"
    engine.set_db_path(db_path)
    engine.init_db(db_path)
    yield
    engine._initialized = False
    engine._db_path = None


@pytest.fixture
def settings():
    from backend.settings import Settings
    return Settings(jwt_secret="test-secret", client_url="http://app.starquest.io")


@pytest.fixture
def mailer():
    from backend.mailer import Mailer
    return Mailer(sender="StarQuest <no-reply@starquest.io>")


@pytest.fixture
def make_user():
    """Create an account directly in the store; returns the user id."""
    from webapp.auth.passwords import hash_password
    from webapp.auth.user_store import UserRecord, UserStore

    store = UserStore()

    def _make(email: str, first_name: str = "Test", last_name: str = "User", password: str = "Passw0rd1") -> str:
        rec = store.create_user(UserRecord(
            first_name=first_name,
            last_name=last_name,
            email=email,
            password_hash=hash_password(password),
        ))
        return rec.user_id

    return _make


@pytest.fixture
def add_member():
    """Put a user straight into a workspace as a verified member."""
    from backend.db.engine import get_conn
    from backend.quest import fanout
    from backend.quest.directory import insert_member, link_user_workspace

    def _add(workspace_id: str, user_id: str, role: str = "mentee", position_id=None, planet=None) -> None:
        with get_conn() as conn:
            insert_member(conn, workspace_id, user_id, role, verified=True,
                          position_id=position_id, planet=planet)
            link_user_workspace(conn, user_id, workspace_id)
            fanout.reconcile_member(conn, workspace_id, user_id)

    return _add
