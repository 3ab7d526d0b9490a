# Copyright (c) Syntropy Systems
"""SQLite database layer with WAL mode and atomic operations."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional


# SQL schema for ixcheck database
SCHEMA = """
-- Study templates and their default parameters
CREATE TABLE IF NOT EXISTS template (
    template_key INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    is_locked INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS template_parameter (
    template_key INTEGER NOT NULL REFERENCES template(template_key),
    name TEXT NOT NULL,
    value TEXT,
    PRIMARY KEY (template_key, name)
);

-- Imported station data sets (versions of the record tables)
CREATE TABLE IF NOT EXISTS station_data (
    station_data_key INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    imported_at TEXT DEFAULT (datetime('now')),
    deleted INTEGER DEFAULT 0
);

-- Station records, full record kept as JSON
CREATE TABLE IF NOT EXISTS tv_record (
    station_data_key INTEGER NOT NULL REFERENCES station_data(station_data_key),
    record_id TEXT NOT NULL,
    facility_id INTEGER NOT NULL,
    channel INTEGER NOT NULL,
    is_digital INTEGER NOT NULL,
    status TEXT NOT NULL,
    country TEXT NOT NULL,
    record TEXT NOT NULL,  -- JSON
    PRIMARY KEY (station_data_key, record_id)
);

CREATE TABLE IF NOT EXISTS tv_baseline (
    station_data_key INTEGER NOT NULL REFERENCES station_data(station_data_key),
    record_id TEXT NOT NULL,
    facility_id INTEGER NOT NULL,
    channel INTEGER NOT NULL,
    pre_transition_channel INTEGER,
    country TEXT NOT NULL,
    record TEXT NOT NULL,  -- JSON
    PRIMARY KEY (station_data_key, record_id)
);

CREATE TABLE IF NOT EXISTS user_record (
    user_record_id INTEGER PRIMARY KEY,
    record TEXT NOT NULL  -- JSON
);

-- Study documents
CREATE TABLE IF NOT EXISTS study (
    study_key INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT,
    template_key INTEGER,
    station_data_key INTEGER,

    -- Lock state (see locks.py)
    study_lock INTEGER DEFAULT 0,
    lock_count INTEGER DEFAULT 0,
    share_count INTEGER DEFAULT 0,

    report TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    saved_at TEXT
);

CREATE TABLE IF NOT EXISTS study_parameter (
    study_key INTEGER NOT NULL REFERENCES study(study_key),
    name TEXT NOT NULL,
    value TEXT,
    PRIMARY KEY (study_key, name)
);

CREATE TABLE IF NOT EXISTS source (
    source_key INTEGER PRIMARY KEY AUTOINCREMENT,
    study_key INTEGER NOT NULL REFERENCES study(study_key),
    record_key TEXT NOT NULL,
    record TEXT NOT NULL,  -- JSON
    is_proposal INTEGER DEFAULT 0,
    is_pre_baseline INTEGER DEFAULT 0,
    UNIQUE (study_key, record_key)
);

CREATE TABLE IF NOT EXISTS scenario (
    scenario_key INTEGER PRIMARY KEY AUTOINCREMENT,
    study_key INTEGER NOT NULL REFERENCES study(study_key),
    parent_key INTEGER REFERENCES scenario(scenario_key),
    name TEXT NOT NULL,
    description TEXT,
    scenario_type TEXT NOT NULL,
    is_permanent INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS scenario_source (
    scenario_key INTEGER NOT NULL REFERENCES scenario(scenario_key),
    position INTEGER NOT NULL,
    source_key INTEGER NOT NULL REFERENCES source(source_key),
    is_desired INTEGER NOT NULL,
    is_undesired INTEGER NOT NULL,
    is_permanent INTEGER NOT NULL,
    PRIMARY KEY (scenario_key, position)
);

CREATE TABLE IF NOT EXISTS scenario_pair (
    pair_key INTEGER PRIMARY KEY AUTOINCREMENT,
    study_key INTEGER NOT NULL REFERENCES study(study_key),
    name TEXT NOT NULL,
    description TEXT,
    before_key INTEGER NOT NULL,
    before_desired INTEGER NOT NULL,
    after_key INTEGER NOT NULL,
    after_desired INTEGER NOT NULL
);

-- Run cache index and output name sequence
CREATE TABLE IF NOT EXISTS ix_check_status (
    study_name TEXT PRIMARY KEY,
    study_id TEXT NOT NULL,
    run_date TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ix_check_name_sequence (
    name_key INTEGER NOT NULL
);

-- Engine admission slots shared by every process using this database
CREATE TABLE IF NOT EXISTS admission_slot (
    ticket INTEGER PRIMARY KEY AUTOINCREMENT,
    pid INTEGER NOT NULL,
    weight REAL NOT NULL,
    admitted INTEGER DEFAULT 0,
    seen_at REAL NOT NULL
);

INSERT INTO ix_check_name_sequence (name_key)
SELECT 0 WHERE NOT EXISTS (SELECT 1 FROM ix_check_name_sequence);

INSERT OR IGNORE INTO template (template_key, name, is_locked)
VALUES (1, 'Interference Check', 1);

INSERT OR IGNORE INTO template_parameter (template_key, name, value)
VALUES (1, 'cell_size', '2.00');

INSERT OR IGNORE INTO template_parameter (template_key, name, value)
VALUES (1, 'profile_ppk', '1.0');

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_tv_record_channel ON tv_record(station_data_key, channel);
CREATE INDEX IF NOT EXISTS idx_tv_baseline_channel ON tv_baseline(station_data_key, channel);
CREATE INDEX IF NOT EXISTS idx_source_study ON source(study_key);
CREATE INDEX IF NOT EXISTS idx_scenario_study ON scenario(study_key, parent_key);
CREATE INDEX IF NOT EXISTS idx_pair_study ON scenario_pair(study_key);
CREATE INDEX IF NOT EXISTS idx_status_study_id ON ix_check_status(study_id);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    - check_same_thread=False so a build's connection can be handed to a worker
    """
    conn = sqlite3.connect(
        str(db_path), timeout=5.0, isolation_level=None, check_same_thread=False
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def database_path(conn: sqlite3.Connection) -> Path:
    """File path of the main database behind a connection."""
    for row in conn.execute("PRAGMA database_list").fetchall():
        if row["name"] == "main":
            return Path(row["file"])
    msg = "Connection has no main database"
    raise RuntimeError(msg)


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_days_ago(days: int) -> str:
    """UTC time `days` days ago, in the same format as utcnow()."""
    then = datetime.now(timezone.utc) - timedelta(days=days)
    return then.strftime("%Y-%m-%dT%H:%M:%SZ")


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE, committing on success.

    BEGIN IMMEDIATE takes the database write lock up front, so reads made
    inside the block cannot be invalidated by another writer before COMMIT.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


# --- Templates and station data ---

def get_template(conn: sqlite3.Connection, template_key: int) -> Optional[sqlite3.Row]:
    """Get a template row by key."""
    return conn.execute(
        "SELECT * FROM template WHERE template_key = ?",
        (template_key,),
    ).fetchone()


def get_template_parameters(conn: sqlite3.Connection, template_key: int) -> dict[str, str]:
    """Get a template's default parameter values."""
    rows = conn.execute(
        "SELECT name, value FROM template_parameter WHERE template_key = ?",
        (template_key,),
    ).fetchall()
    return {row["name"]: row["value"] for row in rows}


def get_station_data(conn: sqlite3.Connection, station_data_key: int) -> Optional[sqlite3.Row]:
    """Get a station data set row by key, None if missing or deleted."""
    return conn.execute(
        "SELECT * FROM station_data WHERE station_data_key = ? AND deleted = 0",
        (station_data_key,),
    ).fetchone()


def create_station_data(conn: sqlite3.Connection, name: str) -> int:
    """Register a new station data set and return its key."""
    cursor = conn.execute(
        "INSERT INTO station_data (name) VALUES (?)",
        (name,),
    )
    return cursor.lastrowid or 0


def list_station_data(conn: sqlite3.Connection) -> list[dict]:
    """List station data sets with record counts."""
    rows = conn.execute(
        """
        SELECT d.station_data_key, d.name, d.imported_at,
            (SELECT COUNT(*) FROM tv_record r WHERE r.station_data_key = d.station_data_key)
                AS record_count,
            (SELECT COUNT(*) FROM tv_baseline b WHERE b.station_data_key = d.station_data_key)
                AS baseline_count
        FROM station_data d
        WHERE d.deleted = 0
        ORDER BY d.station_data_key
        """
    ).fetchall()
    return [dict(row) for row in rows]
