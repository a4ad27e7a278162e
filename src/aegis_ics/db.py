from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from aegis_ics.config import DB_PATH

PathLike = str | Path


def init_db(db_path: PathLike | None = None) -> None:
    with sqlite3.connect(db_path or DB_PATH) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE,
                role TEXT NOT NULL DEFAULT 'operator' CHECK (role IN ('admin', 'operator')),
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS incidents (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL CHECK (type IN ('medical', 'fire', 'security', 'infrastructure')),
                description TEXT NOT NULL,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                location_name TEXT,
                status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'resolved', 'escalated')),
                severity TEXT CHECK (severity IN ('low', 'medium', 'high', 'critical')),
                ai_analysis TEXT,
                reported_by TEXT,
                resolved_by TEXT,
                resolved_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK ((status = 'resolved') = (resolved_at IS NOT NULL AND resolved_by IS NOT NULL))
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS helpers (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                mobile_number TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('security', 'medical', 'volunteer')),
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        # incident_id is not a foreign key; entries outlive their incident.
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
                id TEXT PRIMARY KEY,
                incident_id TEXT,
                action TEXT NOT NULL,
                actor_id TEXT,
                actor_email TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_incident_id ON audit_logs(incident_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at ON audit_logs(created_at DESC)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_helpers_active ON helpers(is_active)")
        conn.execute(
            """
            CREATE TRIGGER IF NOT EXISTS audit_logs_no_update
            BEFORE UPDATE ON audit_logs
            BEGIN
                SELECT RAISE(ABORT, 'audit_logs is append-only');
            END
            """
        )
        conn.execute(
            """
            CREATE TRIGGER IF NOT EXISTS audit_logs_no_delete
            BEFORE DELETE ON audit_logs
            BEGIN
                SELECT RAISE(ABORT, 'audit_logs is append-only');
            END
            """
        )


@contextmanager
def get_conn(db_path: PathLike | None = None) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path or DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def transaction(db_path: PathLike | None = None) -> Iterator[sqlite3.Connection]:
    """Connection holding the write lock from the first statement on."""
    with get_conn(db_path) as conn:
        conn.execute("BEGIN IMMEDIATE")
        yield conn


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)
