"""
Test scan progression and the durable scan store.

Tests verify:
1. Status is a pure function of the count for any label set
2. Repeated scans give 1, 2, 3, 3, 3 ... and never go backwards
3. Every scan, including saturated ones, appends one audit event
4. Concurrent scans of the SAME item never double-increment
5. Scans of DIFFERENT items proceed independently
6. Storage failure raises ScanStoreError and records nothing
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

import pytest

from floorboard.db_schema import ensure_schema
from floorboard.scan_engine import (
    ItemLocks,
    ScanStateStore,
    ScanStoreError,
    StageLabels,
    next_scan_count,
)

LABELS = StageLabels()


def make_store(tmp_path, labels: StageLabels = LABELS) -> ScanStateStore:
    db = tmp_path / "scans.sqlite"
    ensure_schema(db)
    return ScanStateStore(db, labels)


# ----------------------------- pure functions -----------------------------
def test_next_scan_count_saturates():
    assert [next_scan_count(c) for c in (0, 1, 2, 3, 7)] == [1, 2, 3, 3, 3]
    assert next_scan_count(-4) == 1


@pytest.mark.parametrize("labels", [
    StageLabels(),
    StageLabels(pending="Waiting", stage1="Received", stage2="Printing", stage3="Dispatched"),
])
def test_status_is_pure_function_of_count(labels):
    assert labels.for_count(0) == labels.pending
    assert labels.for_count(1) == labels.stage1
    assert labels.for_count(2) == labels.stage2
    assert labels.for_count(3) == labels.stage3


def test_labels_from_mapping_fills_defaults():
    labels = StageLabels.from_mapping({"stage2": "On Press", "stage3": ""})
    assert labels.stage2 == "On Press"
    assert labels.stage3 == "Completed"
    assert labels.pending == "Pending"


# ----------------------------- store -----------------------------
def test_three_scans_walk_through_the_stages(tmp_path):
    store = make_store(tmp_path)

    async def run():
        return [await store.advance("501") for _ in range(3)], await store.events("501")

    results, events = asyncio.run(run())
    assert [r.scan_count for r in results] == [1, 2, 3]
    assert [r.status for r in results] == ["Checked In", "In Production", "Completed"]
    assert [e["scan_number"] for e in events] == [1, 2, 3]
    assert [e["new_status"] for e in events] == ["Checked In", "In Production", "Completed"]


def test_fourth_scan_is_capped_but_still_logged(tmp_path):
    store = make_store(tmp_path)

    async def run():
        for _ in range(3):
            await store.advance("501")
        fourth = await store.advance("501")
        return fourth, await store.events("501"), await store.get("501")

    fourth, events, row = asyncio.run(run())
    assert fourth.scan_count == 3
    assert fourth.status == "Completed"
    assert len(events) == 4
    assert events[-1]["scan_number"] == 3
    assert row["scan_count"] == 3
    assert row["last_scanned_at"] is not None


def test_sequence_is_non_decreasing(tmp_path):
    store = make_store(tmp_path)

    async def run():
        return [(await store.advance("X-9")).scan_count for _ in range(8)]

    counts = asyncio.run(run())
    assert counts == [1, 2, 3, 3, 3, 3, 3, 3]
    assert all(a <= b for a, b in zip(counts, counts[1:]))


def test_concurrent_scans_of_same_item_do_not_double_increment(tmp_path):
    store = make_store(tmp_path)
    n = 6

    async def run():
        results = await asyncio.gather(*(store.advance("501") for _ in range(n)))
        return results, await store.events("501"), await store.get("501")

    results, events, row = asyncio.run(run())
    assert sorted(r.scan_count for r in results) == [1, 2, 3, 3, 3, 3]
    assert len(events) == n
    assert row["scan_count"] == min(n, 3)


def test_concurrent_two_scans_final_count_is_two(tmp_path):
    store = make_store(tmp_path)

    async def run():
        await asyncio.gather(store.advance("77"), store.advance("77"))
        return await store.get("77")

    assert asyncio.run(run())["scan_count"] == 2


def test_different_items_are_independent(tmp_path):
    store = make_store(tmp_path)

    async def run():
        await asyncio.gather(
            store.advance("A"), store.advance("B"), store.advance("A"), store.advance("C"),
        )
        return await store.all_states()

    states = asyncio.run(run())
    assert states == {
        "A": {"scan_count": 2, "status": "In Production"},
        "B": {"scan_count": 1, "status": "Checked In"},
        "C": {"scan_count": 1, "status": "Checked In"},
    }


def test_configured_labels_are_persisted(tmp_path):
    labels = StageLabels(stage1="Received", stage2="Printing", stage3="Dispatched")
    store = make_store(tmp_path, labels)

    async def run():
        await store.advance("9")
        await store.advance("9")
        return await store.all_states()

    assert asyncio.run(run())["9"] == {"scan_count": 2, "status": "Printing"}


def test_blank_item_id_rejected(tmp_path):
    store = make_store(tmp_path)
    with pytest.raises(ValueError):
        asyncio.run(store.advance("   "))


def test_unreachable_storage_raises_and_records_nothing(tmp_path):
    store = ScanStateStore(tmp_path / "missing" / "dir" / "scans.sqlite", LABELS)
    with pytest.raises(ScanStoreError):
        asyncio.run(store.advance("501"))
    with pytest.raises(ScanStoreError):
        asyncio.run(store.all_states())


def test_missing_schema_rolls_back(tmp_path):
    # Tables absent: the advance must fail without leaving partial rows.
    db = tmp_path / "bare.sqlite"
    db.touch()
    store = ScanStateStore(db, LABELS)
    with pytest.raises(ScanStoreError):
        asyncio.run(store.advance("501"))


def test_item_locks_are_released():
    locks = ItemLocks()

    async def run():
        async with locks.hold("a"):
            assert len(locks) == 1
        await asyncio.gather(*(_hold(locks, k) for k in ("a", "b", "a")))
        return len(locks)

    assert asyncio.run(run()) == 0


async def _hold(locks: ItemLocks, key: str) -> None:
    async with locks.hold(key):
        await asyncio.sleep(0)
