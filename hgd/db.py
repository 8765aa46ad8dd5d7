from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist on the host shows up as a
    directory inside the container; in that case the DB file goes inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "hgd.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS attempts (
              id TEXT PRIMARY KEY,
              environment TEXT NOT NULL,
              state TEXT NOT NULL,
              outcome TEXT,
              backup_ref TEXT,
              started_at TEXT NOT NULL,
              ended_at TEXT,
              payload TEXT NOT NULL -- full attempt as JSON
            );

            -- Pre-deployment snapshots per environment. Survives restarts so an
            -- interrupted attempt can still be rolled back.
            CREATE TABLE IF NOT EXISTS backups (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              environment TEXT NOT NULL,
              backup_ref TEXT NOT NULL,
              attempt_id TEXT NOT NULL,
              status TEXT NOT NULL, -- held|released|restored|orphaned
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS snapshots (
              ref TEXT PRIMARY KEY,
              environment TEXT NOT NULL,
              payload TEXT NOT NULL,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS traffic (
              environment TEXT PRIMARY KEY,
              slot TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              environment TEXT,
              attempt_id TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_attempts_env ON attempts(environment);
            CREATE INDEX IF NOT EXISTS idx_backups_env ON backups(environment);
            """
        )


def log_event(level: str, message: str, environment: str | None = None, attempt_id: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, environment, attempt_id, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), environment, attempt_id, message),
        )


def latest_events(limit: int = 100, environment: str | None = None, attempt_id: str | None = None) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if environment:
        clauses.append("environment=?")
        params.append(environment)
    if attempt_id:
        clauses.append("attempt_id=?")
        params.append(attempt_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with connect() as conn:
        rows = conn.execute(f"SELECT * FROM events {where} ORDER BY id DESC LIMIT ?", (*params, limit)).fetchall()
        return [dict(r) for r in rows]


# --- attempts ---


def save_attempt(attempt: Any) -> None:
    """Upsert a DeploymentAttempt (anything with .to_dict())."""
    data = attempt.to_dict()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO attempts (id, environment, state, outcome, backup_ref, started_at, ended_at, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              state=excluded.state,
              outcome=excluded.outcome,
              backup_ref=excluded.backup_ref,
              ended_at=excluded.ended_at,
              payload=excluded.payload
            """,
            (
                data["id"],
                data["release"]["environment"],
                data["state"],
                data["outcome"],
                data["backup_ref"],
                data["started_at"],
                data["ended_at"],
                json.dumps(data),
            ),
        )


def load_attempt(attempt_id: str) -> dict[str, Any] | None:
    with connect() as conn:
        row = conn.execute("SELECT payload FROM attempts WHERE id=?", (attempt_id,)).fetchone()
        return json.loads(row["payload"]) if row else None


def list_attempts(environment: str | None = None, states: Iterable[str] | None = None) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if environment:
        clauses.append("environment=?")
        params.append(environment)
    if states is not None:
        states = list(states)
        clauses.append(f"state IN ({','.join('?' for _ in states)})")
        params.extend(states)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with connect() as conn:
        rows = conn.execute(f"SELECT payload FROM attempts {where} ORDER BY started_at DESC, rowid DESC", params).fetchall()
        return [json.loads(r["payload"]) for r in rows]


# --- backups ---


@dataclass(frozen=True)
class BackupRow:
    id: int
    environment: str
    backup_ref: str
    attempt_id: str
    status: str
    created_at: str
    updated_at: str


def record_backup(environment: str, backup_ref: str, attempt_id: str) -> BackupRow:
    now = utc_now()
    with connect() as conn:
        cur = conn.execute(
            """
            INSERT INTO backups (environment, backup_ref, attempt_id, status, created_at, updated_at)
            VALUES (?, ?, ?, 'held', ?, ?)
            """,
            (environment, backup_ref, attempt_id, now, now),
        )
        row = conn.execute("SELECT * FROM backups WHERE id=?", (cur.lastrowid,)).fetchone()
        return BackupRow(**dict(row))


def set_backup_status(backup_ref: str, status: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE backups SET status=?, updated_at=? WHERE backup_ref=?", (status, utc_now(), backup_ref))


def last_backup(environment: str) -> BackupRow | None:
    """Most recent backup recorded for an environment (the last known good state)."""
    with connect() as conn:
        row = conn.execute(
            "SELECT * FROM backups WHERE environment=? ORDER BY id DESC LIMIT 1", (environment,)
        ).fetchone()
        return BackupRow(**dict(row)) if row else None


def list_backups(environment: str) -> list[BackupRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM backups WHERE environment=? ORDER BY id DESC", (environment,)).fetchall()
        return [BackupRow(**dict(r)) for r in rows]


# --- docker runtime snapshots and traffic ---


def save_snapshot(ref: str, environment: str, payload: dict[str, Any]) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO snapshots (ref, environment, payload, created_at) VALUES (?, ?, ?, ?)",
            (ref, environment, json.dumps(payload), utc_now()),
        )


def load_snapshot(ref: str) -> dict[str, Any] | None:
    with connect() as conn:
        row = conn.execute("SELECT payload FROM snapshots WHERE ref=?", (ref,)).fetchone()
        return json.loads(row["payload"]) if row else None


def get_traffic_slot(environment: str) -> str | None:
    with connect() as conn:
        row = conn.execute("SELECT slot FROM traffic WHERE environment=?", (environment,)).fetchone()
        return row["slot"] if row else None


def set_traffic_slot(environment: str, slot: str | None) -> None:
    with connect() as conn:
        if slot is None:
            conn.execute("DELETE FROM traffic WHERE environment=?", (environment,))
            return
        conn.execute(
            """
            INSERT INTO traffic (environment, slot, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(environment) DO UPDATE SET slot=excluded.slot, updated_at=excluded.updated_at
            """,
            (environment, slot, utc_now()),
        )
