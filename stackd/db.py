from __future__ import annotations

import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from . import envcrypt
from .settings import settings

logger = logging.getLogger("stackd")

STACK_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,62}$")


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def validate_stack_name(name: str) -> None:
    if not STACK_NAME_RE.match(name):
        raise ValueError(
            "Invalid stack name. Use letters/numbers and _.- starting with a letter or number (max 63 chars)."
        )


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    A bind-mounted data path that did not exist on the host shows up as a
    directory; in that case the DB file is placed inside it.
    """
    p = os.path.abspath(settings.db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "stackd.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS stacks (
              name TEXT PRIMARY KEY,
              yaml TEXT NOT NULL,
              env TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              stack TEXT,
              service TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_stack ON events(stack);
            """
        )


_LEVELS = {"INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}


def log_event(level: str, message: str, stack: str | None = None, service: str | None = None) -> None:
    """Record an event row and mirror it to the ``stackd`` logger."""
    level = level.upper()
    if stack and service:
        prefix = f"[{stack}/{service}] "
    elif stack:
        prefix = f"[{stack}] "
    else:
        prefix = ""
    logger.log(_LEVELS.get(level, logging.INFO), "%s%s", prefix, message)
    try:
        with connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, stack, service, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level, stack, service, message),
            )
    except sqlite3.Error as e:
        logger.warning("could not record event: %s", e)


def latest_events(limit: int = 100, stack: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if stack:
            rows = conn.execute(
                "SELECT * FROM events WHERE stack=? ORDER BY id DESC LIMIT ?", (stack, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


@dataclass(frozen=True)
class StackRow:
    name: str
    yaml: str
    env: str
    created_at: str
    updated_at: str


def list_stacks() -> list[str]:
    with connect() as conn:
        rows = conn.execute("SELECT name FROM stacks ORDER BY name").fetchall()
        return [r["name"] for r in rows]


def _stack_row(row: sqlite3.Row) -> StackRow:
    data = dict(row)
    data["env"] = envcrypt.decrypt(data["env"], settings.env_password)
    return StackRow(**data)


def get_stack(name: str) -> StackRow | None:
    """Stack row with its env decrypted. Raises EnvStoreError if that fails."""
    with connect() as conn:
        row = conn.execute("SELECT * FROM stacks WHERE name=?", (name,)).fetchone()
        return _stack_row(row) if row else None


def save_stack(name: str, yaml_text: str, env: str = "") -> StackRow:
    validate_stack_name(name)
    sealed = envcrypt.encrypt(env, settings.env_password)
    now = utc_now()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO stacks (name, yaml, env, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              yaml=excluded.yaml,
              env=excluded.env,
              updated_at=excluded.updated_at
            """,
            (name, yaml_text, sealed, now, now),
        )
        row = conn.execute("SELECT * FROM stacks WHERE name=?", (name,)).fetchone()
        return _stack_row(row)


def delete_stack(name: str) -> bool:
    with connect() as conn:
        cur = conn.execute("DELETE FROM stacks WHERE name=?", (name,))
        return cur.rowcount > 0


# Env store: per-stack dotenv text, kept encrypted beside the stack description.


def read_env(name: str) -> str:
    with connect() as conn:
        row = conn.execute("SELECT env FROM stacks WHERE name=?", (name,)).fetchone()
        return envcrypt.decrypt(row["env"], settings.env_password) if row else ""


def write_env(name: str, env: str) -> None:
    sealed = envcrypt.encrypt(env, settings.env_password)
    with connect() as conn:
        cur = conn.execute("UPDATE stacks SET env=?, updated_at=? WHERE name=?", (sealed, utc_now(), name))
        if cur.rowcount == 0:
            raise KeyError(f"unknown stack '{name}'")
