"""
floorboard/column_updater.py
----------------------------
Mirror a committed scan transition onto the Monday board.

    scan_count == 1  -> checked-in checkbox column set to true
    scan_count == 2  -> status column label = stage2 label
    scan_count == 3  -> status column label = stage3 label

The local scan counter is authoritative. A failed push never touches it; the
board may lag and is put right by the next scan or a manual edit. Setting the
same value twice is harmless, so a rescan is a safe retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .monday_client import MondayClient, MondayError
from .scan_engine import StageLabels

log = logging.getLogger("floorboard.scan")


class ColumnUpdateError(RuntimeError):
    def __init__(self, item_id: str, column_id: str, cause: Exception):
        super().__init__(f"column {column_id} on item {item_id}: {type(cause).__name__}: {cause}")
        self.item_id = item_id
        self.column_id = column_id
        self.cause = cause


@dataclass(frozen=True)
class ColumnUpdate:
    column_id: str
    value: Dict[str, Any]


class ExternalColumnUpdater:
    def __init__(
        self,
        client: MondayClient,
        labels: StageLabels,
        *,
        status_column_id: Optional[str] = None,
        checked_in_column_id: Optional[str] = None,
    ):
        self.client = client
        self.labels = labels
        self.status_column_id = (status_column_id or "").strip() or None
        self.checked_in_column_id = (checked_in_column_id or "").strip() or None

    def plan(self, scan_count: int) -> List[ColumnUpdate]:
        """Field writes for a transition that landed on scan_count."""
        updates: List[ColumnUpdate] = []
        if scan_count == 1 and self.checked_in_column_id:
            updates.append(ColumnUpdate(self.checked_in_column_id, {"checked": "true"}))
        if scan_count >= 2 and self.status_column_id:
            label = self.labels.stage2 if scan_count == 2 else self.labels.stage3
            updates.append(ColumnUpdate(self.status_column_id, {"label": label}))
        return updates

    async def push(self, item_id: str, scan_count: int) -> List[ColumnUpdate]:
        """
        Apply plan(scan_count) to the board. Each write is its own call; the
        first failure is logged and raised as ColumnUpdateError.
        """
        applied: List[ColumnUpdate] = []
        for upd in self.plan(scan_count):
            try:
                await self.client.change_column_value(item_id, upd.column_id, upd.value)
            except MondayError as ex:
                log.warning(
                    "board column update failed",
                    extra={"item_id": item_id, "column_id": upd.column_id, "err": str(ex)},
                )
                raise ColumnUpdateError(item_id, upd.column_id, ex) from ex
            applied.append(upd)
        return applied
