"""Lightweight SQLite audit trail of provisioning outcomes with OpenTelemetry spans."""
from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

from opentelemetry.trace import get_tracer

_tracer = get_tracer(__name__)


def init_db(path: str = "audit.db") -> sqlite3.Connection:
    """Initialize the audit database and ensure the schema exists."""
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS audit (
            id INTEGER PRIMARY KEY,
            timestamp TEXT,
            actor TEXT,
            action TEXT,
            target TEXT,
            status TEXT,
            details TEXT
        )
        """
    )
    conn.commit()
    return conn


def log_action(
    actor: str,
    action: str,
    target: str,
    status: str = "Success",
    details: str = "",
    db_path: Optional[str] = None,
) -> None:
    """Persist an audit record for the provided action."""
    with _tracer.start_as_current_span("audit.log_action"):
        conn = init_db(db_path or "audit.db")
        try:
            conn.execute(
                "INSERT INTO audit (timestamp, actor, action, target, status, details) VALUES (?, ?, ?, ?, ?, ?)",
                (datetime.now(timezone.utc).isoformat(), actor, action, target, status, details),
            )
            conn.commit()
        finally:
            conn.close()


def recent_actions(db_path: str, limit: int = 20) -> List[sqlite3.Row]:
    """Return the newest audit rows first."""
    conn = init_db(db_path)
    conn.row_factory = sqlite3.Row
    try:
        return conn.execute(
            "SELECT timestamp, actor, action, target, status, details FROM audit ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
    finally:
        conn.close()
