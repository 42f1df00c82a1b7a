from __future__ import annotations

import logging
import os
import sqlite3
from typing import Any

from .models import utc_now
from .settings import Settings, settings as default_settings


logger = logging.getLogger("dmm")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


def resolve_file_path(path: str, default_name: str) -> str:
    """Return a file path usable for a data file.

    If a bind-mounted *file* path does not exist, Docker creates a
    *directory* at that location. When the configured path is a directory,
    the file is placed inside it. Missing parent directories are created.
    """
    p = os.path.abspath(path)

    if os.path.isdir(p):
        p = os.path.join(p, default_name)

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


class EventLog:
    """Operational event log: a sqlite `events` table mirrored to the `dmm` logger."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.path = resolve_file_path(self.settings.events_db_path, "events.db")

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init(self) -> None:
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  service_name TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )

    def log(self, level: str, message: str, service_name: str | None = None) -> None:
        level = level.upper()
        logger.log(_LEVELS.get(level, logging.INFO), "%s%s", f"[{service_name}] " if service_name else "", message)
        try:
            with self.connect() as conn:
                conn.execute(
                    "INSERT INTO events (ts, level, service_name, message) VALUES (?, ?, ?, ?)",
                    (utc_now(), level, service_name, message),
                )
        except sqlite3.Error as e:
            # best-effort
            logger.error("event log write failed: %s", e)

    def latest(self, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]
