from __future__ import annotations
"""
floorboard/board_cache.py
-------------------------
Cached, coalesced snapshot of the Monday board for the dashboard.

Cache states (one cache instance per board):

    EMPTY --fetch--> POPULATED(ttl) --expiry--> STALE --fetch--> POPULATED(ttl) ...

get()
- Fresh snapshot cached         -> returned, no network call.
- A refresh already in flight   -> every caller awaits that same task.
- Otherwise                     -> one refresh task is started and published.
The in-flight marker is cleared in a finally block inside the refresh task, so
a failed or timed-out refresh never wedges the cache. A failed refresh never
replaces the last good snapshot; stale() still returns it.

Paging
- items_page is requested page_limit items at a time, following the cursor
  until the API stops returning one or max_pages is reached.
- Complexity rejections are handled by the configured policy:
    partial : stop paging and keep what was fetched. A rejection on the very
              first page has nothing to keep; it raises FirstPageRejected so
              the cache keeps its last snapshot, and the board route answers
              with that snapshot or an empty board, never an error.
    halve   : sleep retry_in_seconds (capped at backoff_max_s), halve the page
              size (floor min_page_limit) and retry the same cursor, at most
              complexity_retries times before raising.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .monday_client import ComplexityBudgetExhausted, MondayClient, MondayError
from .titles import parse_item_title

log = logging.getLogger("floorboard.board")

PARTIAL = "partial"
HALVE = "halve"
UNGROUPED = "Ungrouped"

PageFetcher = Callable[[int, Optional[str]], Awaitable[Tuple[List[Dict[str, Any]], Optional[str]]]]


class BoardRefreshTimeout(MondayError):
    pass


class FirstPageRejected(ComplexityBudgetExhausted):
    """Complexity rejection before any page arrived under the partial policy."""


# ----------------------------------------------------------------------
# Paginated fetch
# ----------------------------------------------------------------------
async def fetch_items_paged(
    fetch_page: PageFetcher,
    *,
    page_limit: int = 50,
    max_pages: int = 2,
    on_complexity: str = PARTIAL,
    complexity_retries: int = 3,
    min_page_limit: int = 5,
    backoff_max_s: float = 10.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> List[Dict[str, Any]]:
    if on_complexity not in (PARTIAL, HALVE):
        raise ValueError(f"unknown complexity policy: {on_complexity!r}")

    items: List[Dict[str, Any]] = []
    cursor: Optional[str] = None
    pages = 0
    limit = max(1, int(page_limit))
    retries_left = max(0, int(complexity_retries))

    while pages < max_pages:
        try:
            page_items, next_cursor = await fetch_page(limit, cursor)
        except ComplexityBudgetExhausted as ex:
            if on_complexity == PARTIAL:
                if pages == 0:
                    raise FirstPageRejected(str(ex), retry_in_s=ex.retry_in_s) from ex
                log.warning(
                    "[board] complexity budget hit on page %d; keeping %d item(s) from %d page(s)",
                    pages + 1, len(items), pages,
                )
                break

            if retries_left <= 0:
                log.error("[board] complexity retries exhausted on page %d", pages + 1)
                raise
            retries_left -= 1
            pause = min(ex.retry_in_s if ex.retry_in_s is not None else 1.0, backoff_max_s)
            limit = max(min_page_limit, limit // 2)
            log.warning(
                "[board] complexity budget hit on page %d; retrying in %.1fs with limit=%d",
                pages + 1, pause, limit,
            )
            await sleep(max(0.0, pause))
            continue

        items.extend(page_items)
        pages += 1
        cursor = next_cursor
        if not cursor:
            break

    log.info("[board] fetched %d item(s) in %d page(s)", len(items), pages)
    return items


def group_items(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Group by containing board group, keeping first-seen order, into the dashboard shape."""
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for it in items:
        title = it.get("group") or UNGROUPED
        job = parse_item_title(it.get("name"), it.get("id"))
        grouped.setdefault(title, []).append({
            "id": it.get("id"),
            "name": it.get("name", ""),
            "job": job["job"],
            "customer": job["customer"],
            "job_name": job["name"],
            "subitems": it.get("subitems") or [],
        })
    groups = [{"title": title, "items_page": {"items": arr}} for title, arr in grouped.items()]
    return {"boards": [{"groups": groups}]}


def make_board_fetcher(client: MondayClient, board_cfg: Dict[str, Any]) -> Callable[[], Awaitable[Dict[str, Any]]]:
    """Bind a MondayClient and the board: config block into a zero-arg snapshot fetcher."""
    columns = list(board_cfg.get("subitem_columns") or [])

    async def fetch_page(limit: int, cursor: Optional[str]):
        return await client.fetch_items_page(limit, cursor, columns)

    async def fetch_snapshot() -> Dict[str, Any]:
        items = await fetch_items_paged(
            fetch_page,
            page_limit=int(board_cfg.get("page_limit", 50)),
            max_pages=int(board_cfg.get("max_pages", 2)),
            on_complexity=str(board_cfg.get("on_complexity", PARTIAL)).lower(),
            complexity_retries=int(board_cfg.get("complexity_retries", 3)),
            min_page_limit=int(board_cfg.get("min_page_limit", 5)),
            backoff_max_s=float(board_cfg.get("backoff_max_s", 10.0)),
        )
        return group_items(items)

    return fetch_snapshot


# ----------------------------------------------------------------------
# Cache
# ----------------------------------------------------------------------
class BoardSyncCache:
    def __init__(
        self,
        fetcher: Callable[[], Awaitable[Dict[str, Any]]],
        *,
        ttl_s: float = 300.0,
        refresh_timeout_s: Optional[float] = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self.ttl_s = float(ttl_s)
        self.refresh_timeout_s = refresh_timeout_s
        self._clock = clock

        self._data: Optional[Dict[str, Any]] = None
        self._expires_at: float = 0.0
        self._in_flight: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

        self.fetch_count = 0

    @property
    def state(self) -> str:
        if self._data is None:
            return "EMPTY"
        return "POPULATED" if self._fresh() else "STALE"

    @property
    def refreshing(self) -> bool:
        return self._in_flight is not None

    def _fresh(self) -> bool:
        return self._data is not None and self._clock() < self._expires_at

    def stale(self) -> Optional[Dict[str, Any]]:
        """Last good snapshot regardless of expiry (None if never populated)."""
        return self._data

    def invalidate(self) -> None:
        self._expires_at = 0.0

    async def get(self) -> Dict[str, Any]:
        if self._fresh():
            return self._data  # type: ignore[return-value]

        async with self._lock:
            if self._fresh():
                return self._data  # type: ignore[return-value]
            task = self._in_flight
            if task is None:
                task = asyncio.ensure_future(self._refresh())
                task.add_done_callback(_consume_exception)
                self._in_flight = task

        # shield: a caller that goes away must not cancel the shared refresh
        return await asyncio.shield(task)

    async def _refresh(self) -> Dict[str, Any]:
        self.fetch_count += 1
        t0 = time.perf_counter()
        try:
            if self.refresh_timeout_s:
                try:
                    data = await asyncio.wait_for(self._fetcher(), timeout=self.refresh_timeout_s)
                except asyncio.TimeoutError as ex:
                    raise BoardRefreshTimeout(
                        f"board refresh timed out after {self.refresh_timeout_s}s"
                    ) from ex
            else:
                data = await self._fetcher()
            self._data = data
            self._expires_at = self._clock() + self.ttl_s
            log.info(
                "board refreshed",
                extra={"latency_ms": round((time.perf_counter() - t0) * 1000, 1)},
            )
            return data
        except Exception as ex:
            log.warning("[board] refresh failed: %s: %s", type(ex).__name__, ex)
            raise
        finally:
            self._in_flight = None


def _consume_exception(task: asyncio.Task) -> None:
    # Every waiter may have been cancelled; mark the exception retrieved.
    if not task.cancelled():
        task.exception()
