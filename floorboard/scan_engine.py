from __future__ import annotations
"""
floorboard/scan_engine.py
-------------------------
Bounded scan progression for production jobs.

Every scan of a job label moves the job one stage forward:

    0 (Pending) -> 1 (stage1) -> 2 (stage2) -> 3 (stage3) -> 3 -> 3 ...

The counter saturates at 3 and never goes backwards. Every scan attempt,
saturated or not, is appended to job_scan_events.

Concurrency
- advance() holds a per-item asyncio lock for the whole read-modify-write, so
  two scans of the same label are serialized while scans of different labels
  never wait on each other's lock.
- The write itself runs inside BEGIN IMMEDIATE so a second process sharing
  the database cannot interleave either.
"""

import asyncio
import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

import aiosqlite

log = logging.getLogger("floorboard.scan")

UTC_MS = lambda: int(time.time() * 1000)

MAX_SCAN_COUNT = 3


class ScanStoreError(RuntimeError):
    """Scan storage unreachable or write failed; nothing was persisted."""


# ----------------------------- Pure progression -----------------------------
@dataclass(frozen=True)
class StageLabels:
    pending: str = "Pending"
    stage1: str = "Checked In"
    stage2: str = "In Production"
    stage3: str = "Completed"

    @classmethod
    def from_mapping(cls, m: Mapping[str, str]) -> "StageLabels":
        base = cls()
        return cls(
            pending=m.get("pending") or base.pending,
            stage1=m.get("stage1") or base.stage1,
            stage2=m.get("stage2") or base.stage2,
            stage3=m.get("stage3") or base.stage3,
        )

    def for_count(self, count: int) -> str:
        if count <= 0:
            return self.pending
        if count == 1:
            return self.stage1
        if count == 2:
            return self.stage2
        return self.stage3


def next_scan_count(current: int) -> int:
    return min(max(0, int(current)) + 1, MAX_SCAN_COUNT)


@dataclass(frozen=True)
class ScanResult:
    item_id: str
    scan_count: int
    status: str

    def as_dict(self) -> Dict[str, Any]:
        return {"scan_count": self.scan_count, "status": self.status}


# ----------------------------- Per-item locks -----------------------------
class ItemLocks:
    """asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ----------------------------- Store -----------------------------
async def _fetch_one(db: aiosqlite.Connection, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
    cur = await db.execute(sql, params)
    row = await cur.fetchone()
    await cur.close()
    return row


class ScanStateStore:
    def __init__(
        self,
        db_path: str | Path,
        labels: StageLabels,
        *,
        busy_timeout_s: float = 5.0,
        clock_ms: Callable[[], int] = UTC_MS,
    ):
        self.db_path = str(db_path)
        self.labels = labels
        self.busy_timeout_s = busy_timeout_s
        self._clock_ms = clock_ms
        self._locks = ItemLocks()

    def _connect(self):
        # isolation_level=None: we issue BEGIN/COMMIT ourselves.
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout_s, isolation_level=None)

    async def advance(self, item_id: str) -> ScanResult:
        item_id = str(item_id or "").strip()
        if not item_id:
            raise ValueError("item_id required")

        async with self._locks.hold(item_id):
            try:
                async with self._connect() as db:
                    await db.execute("BEGIN IMMEDIATE")
                    try:
                        result = await self._advance_locked(db, item_id)
                        await db.execute("COMMIT")
                    except Exception:
                        await db.execute("ROLLBACK")
                        raise
            except sqlite3.Error as ex:
                log.error("[scan] advance failed item=%s: %s: %s", item_id, type(ex).__name__, ex)
                raise ScanStoreError(f"scan storage unavailable: {type(ex).__name__}") from ex

        log.info(
            "scan advanced",
            extra={"item_id": item_id, "scan_count": result.scan_count, "status": result.status},
        )
        return result

    async def _advance_locked(self, db: aiosqlite.Connection, item_id: str) -> ScanResult:
        await db.execute(
            "INSERT OR IGNORE INTO job_scans (item_id, scan_count, status) VALUES (?, 0, ?)",
            (item_id, self.labels.pending),
        )
        row = await _fetch_one(db, "SELECT scan_count FROM job_scans WHERE item_id=?", (item_id,))
        current = int(row[0] or 0) if row else 0
        count = next_scan_count(current)
        status = self.labels.for_count(count)
        now = self._clock_ms()

        await db.execute(
            "UPDATE job_scans SET scan_count=?, status=?, last_scanned_at=? WHERE item_id=?",
            (count, status, now, item_id),
        )
        await db.execute(
            "INSERT INTO job_scan_events (item_id, scan_number, new_status, scanned_at) VALUES (?,?,?,?)",
            (item_id, count, status, now),
        )
        return ScanResult(item_id=item_id, scan_count=count, status=status)

    async def all_states(self) -> Dict[str, Dict[str, Any]]:
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout_s) as db:
                db.row_factory = aiosqlite.Row
                cur = await db.execute("SELECT item_id, scan_count, status FROM job_scans")
                rows = await cur.fetchall()
                await cur.close()
        except sqlite3.Error as ex:
            raise ScanStoreError(f"scan storage unavailable: {type(ex).__name__}") from ex
        return {
            r["item_id"]: {"scan_count": int(r["scan_count"]), "status": r["status"]}
            for r in rows
        }

    async def get(self, item_id: str) -> Optional[Dict[str, Any]]:
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout_s) as db:
                db.row_factory = aiosqlite.Row
                row = await _fetch_one(
                    db,
                    "SELECT item_id, scan_count, status, last_scanned_at FROM job_scans WHERE item_id=?",
                    (str(item_id),),
                )
        except sqlite3.Error as ex:
            raise ScanStoreError(f"scan storage unavailable: {type(ex).__name__}") from ex
        return dict(row) if row else None

    async def events(self, item_id: str) -> List[Dict[str, Any]]:
        """Audit trail for one item, oldest first."""
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout_s) as db:
                db.row_factory = aiosqlite.Row
                cur = await db.execute(
                    """
                    SELECT item_id, scan_number, new_status, scanned_at
                    FROM job_scan_events
                    WHERE item_id=?
                    ORDER BY event_id
                    """,
                    (str(item_id),),
                )
                rows = await cur.fetchall()
                await cur.close()
        except sqlite3.Error as ex:
            raise ScanStoreError(f"scan storage unavailable: {type(ex).__name__}") from ex
        return [dict(r) for r in rows]
