"""SQLite storage for StarQuest.

One database file (WAL journal, foreign keys enforced). Each
``with get_conn() as conn:`` block is a single transaction: it commits when
the block finishes and rolls back when the block raises. Nothing that opens
its own connection (the mailer, another store) may be called from inside
such a block once it has written.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

log = logging.getLogger("starquest.db")

SCHEMA_PATH = Path(__file__).with_name("schema.sql")
SCHEMA_VERSION = "1.0.0"

_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA foreign_keys = ON",
    "PRAGMA busy_timeout = 5000",
)

_db_path: Optional[Path] = None
_initialized = False


def get_db_path() -> Path:
    """``$STARQUEST_DATA_DIR/starquest.db``, else ``<repo>/data/starquest.db``."""
    global _db_path
    if _db_path is None:
        data_dir = os.environ.get("STARQUEST_DATA_DIR")
        base = Path(data_dir) if data_dir else Path(__file__).resolve().parents[2] / "data"
        _db_path = base / "starquest.db"
    return _db_path


def set_db_path(path: Path) -> None:
    """Point the process at another database file; it is initialised lazily."""
    global _db_path, _initialized
    _db_path = Path(path)
    _initialized = False


def new_id() -> str:
    return uuid.uuid4().hex


def _open(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(path), timeout=30)
    conn.row_factory = sqlite3.Row
    for pragma in _PRAGMAS:
        conn.execute(pragma)
    return conn


def init_db(path: Optional[Path] = None) -> None:
    """Apply schema.sql (idempotent) and record the schema version."""
    global _initialized
    if path is not None:
        set_db_path(path)
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = _open(db_path)
    try:
        conn.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
        row = conn.execute("SELECT value FROM system_config WHERE key = 'db_version'").fetchone()
        if row is not None and row["value"] != SCHEMA_VERSION:
            log.warning("Database %s was at schema %s, now %s", db_path, row["value"], SCHEMA_VERSION)
        conn.execute(
            "INSERT OR REPLACE INTO system_config (key, value) VALUES ('db_version', ?)",
            (SCHEMA_VERSION,),
        )
        conn.commit()
    finally:
        conn.close()
    _initialized = True
    log.info("Database ready at %s (schema %s)", db_path, SCHEMA_VERSION)


def ensure_initialized() -> None:
    # the file can vanish under a long-running process (tests, manual cleanup)
    if not _initialized or not get_db_path().exists():
        init_db()


@contextmanager
def get_conn() -> Iterator[sqlite3.Connection]:
    ensure_initialized()
    conn = _open(get_db_path())
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()
    finally:
        conn.close()


def fetch_one(sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute(sql, params).fetchone()
    return dict(row) if row is not None else None


def fetch_all(sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]


def get_system_config(key: str, default: str = "") -> str:
    row = fetch_one("SELECT value FROM system_config WHERE key = ?", (key,))
    return row["value"] if row else default
