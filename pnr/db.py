from __future__ import annotations

import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .models import ProjectStatus


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when bind-mounting a missing file),
    the journal file is placed inside it.
    """
    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "pnr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


class Journal:
    """Event log and derived-status cache kept in one SQLite file."""

    def __init__(self, path: str) -> None:
        self.path = _resolve_db_path(path)
        self.init_db()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  project TEXT,
                  service TEXT,
                  message TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS project_status (
                  project TEXT PRIMARY KEY,
                  overall TEXT NOT NULL,
                  payload TEXT NOT NULL,
                  probed_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                CREATE INDEX IF NOT EXISTS idx_events_project ON events(project);
                """
            )

    def log_event(self, level: str, message: str, project: str | None = None, service: str | None = None) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, project, service, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), project, service, message),
            )

    def latest_events(self, limit: int = 100, project: str | None = None) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if project:
                rows = conn.execute(
                    "SELECT * FROM events WHERE project=? ORDER BY id DESC LIMIT ?", (project, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    def save_status(self, status: ProjectStatus) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO project_status (project, overall, payload, probed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(project) DO UPDATE SET
                  overall=excluded.overall,
                  payload=excluded.payload,
                  probed_at=excluded.probed_at
                """,
                (status.project, status.overall, status.model_dump_json(), status.probed_at),
            )

    def cached_status(self, project: str) -> ProjectStatus | None:
        with self.connect() as conn:
            row = conn.execute("SELECT payload FROM project_status WHERE project=?", (project,)).fetchone()
        if not row:
            return None
        return ProjectStatus.model_validate(json.loads(row["payload"]))

    def forget_status(self, project: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM project_status WHERE project=?", (project,))
