from __future__ import annotations

"""
floorboard/db_schema.py
-----------------------
Centralized, idempotent SQLite schema management for the scan subsystem.

Design goals
- One row per external board item in job_scans (item_id is the natural key).
- scan_count is constrained to 0..3 at the DB level so a bad write cannot
  push a job past its last production stage.
- job_scan_events is an append-only audit trail: one row per scan attempt,
  including scans that arrive after the job is already Completed.
- Keep schema creation safe to call at every boot (idempotent).
- Allow destructive rebuilds (recreate=True) when starting fresh.
"""

from pathlib import Path
import sqlite3

# Bump when DDL changes in a way worth tracking (for future migrations).
LOCKED_USER_VERSION = 1

# ------------------------
# DDL: Scan state
# ------------------------
JOB_SCANS_DDL = """
CREATE TABLE IF NOT EXISTS job_scans (
    item_id         TEXT PRIMARY KEY,           -- external board item id (opaque string)
    scan_count      INTEGER NOT NULL DEFAULT 0
                    CHECK (scan_count BETWEEN 0 AND 3),
    status          TEXT NOT NULL DEFAULT 'Pending',
    last_scanned_at INTEGER                     -- host epoch ms of the most recent advance
);
"""

JOB_SCAN_EVENTS_DDL = """
-- Write-once log of every advance. Never updated or deleted by the app.
CREATE TABLE IF NOT EXISTS job_scan_events (
    event_id    INTEGER PRIMARY KEY,
    item_id     TEXT NOT NULL,
    scan_number INTEGER NOT NULL CHECK (scan_number BETWEEN 1 AND 3),
    new_status  TEXT NOT NULL,
    scanned_at  INTEGER NOT NULL                -- host epoch ms
);
CREATE INDEX IF NOT EXISTS idx_scan_events_item_time ON job_scan_events(item_id, scanned_at);
"""


# ------------------------
# Helpers
# ------------------------
def _exec_script(conn: sqlite3.Connection, script: str) -> None:
    cur = conn.cursor()
    cur.executescript(script)
    conn.commit()

def _drop_everything(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_scan_events_item_time")
    cur.execute("DROP TABLE IF EXISTS job_scan_events")
    cur.execute("DROP TABLE IF EXISTS job_scans")
    conn.commit()

def ensure_schema(db_path: str | Path, recreate: bool = False) -> None:
    """
    Create the database (and parent folder) if needed, and enforce our schema.
    Safe to call at every boot.
      - recreate=True : destructive drop & rebuild (fresh start).

    WAL mode lets the dashboard read scan states while a scanner is writing.
    """
    p = Path(db_path)
    p.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(p)
    try:
        if recreate:
            _drop_everything(conn)

        conn.execute("PRAGMA journal_mode=WAL")
        _exec_script(conn, JOB_SCANS_DDL)
        _exec_script(conn, JOB_SCAN_EVENTS_DDL)

        # Record user_version for lightweight migrations.
        cur = conn.cursor()
        cur.execute(f"PRAGMA user_version = {LOCKED_USER_VERSION}")
        conn.commit()
    finally:
        conn.close()
