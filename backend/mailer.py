"""Outgoing email: Jinja2-rendered messages recorded in the outbox table.

There is no network transport; delivery is somebody else's job. Every
message is logged and kept in ``email_outbox`` so it can be inspected.
"""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from backend.db.engine import get_conn, new_id
from backend.settings import APP_NAME

log = logging.getLogger("starquest.mail")

_TEMPLATE_DIR = Path(__file__).resolve().parent / "emails"


class Mailer:

    def __init__(self, template_dir: Optional[Path] = None, sender: str = "") -> None:
        self._env = Environment(
            loader=FileSystemLoader(str(template_dir or _TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )
        self._sender = sender

    def render(self, template: str, **context: Any) -> str:
        tpl = self._env.get_template(f"{template}.html")
        return tpl.render(app_name=APP_NAME, **context)

    def send(self, to: str, subject: str, template: str, **context: Any) -> Dict[str, Any]:
        """Render ``template`` and record the message. Returns the outbox row.

        Must not be called while the caller holds an open write transaction.
        """
        body = self.render(template, **context)
        msg = {
            "id": new_id(),
            "recipient": to,
            "subject": subject,
            "template": template,
            "body": body,
            "created_at": datetime.now().isoformat(),
        }
        with get_conn() as conn:
            conn.execute(
                """INSERT INTO email_outbox (id, recipient, subject, template, body, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (msg["id"], to, subject, template, body, msg["created_at"]),
            )
        log.info("Mail from=%s to=%s subject=%r template=%s", self._sender or "-", to, subject, template)
        return msg

    def outbox(self, recipient: Optional[str] = None) -> List[Dict[str, Any]]:
        with get_conn() as conn:
            if recipient:
                rows = conn.execute(
                    "SELECT * FROM email_outbox WHERE recipient = ? COLLATE NOCASE ORDER BY created_at, rowid",
                    (recipient,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM email_outbox ORDER BY created_at, rowid").fetchall()
            return [dict(r) for r in rows]
