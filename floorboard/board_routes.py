"""
Board snapshot endpoints.

- GET  /api/board          cached, grouped board tree for the dashboard
- POST /api/board/refresh  expire the cache and fetch now (manual resync)

When a refresh fails but an earlier snapshot exists, that snapshot is served
with an X-Board-Stale: 1 header instead of an error. A complexity rejection of
the very first page with nothing cached yields an empty board marked
X-Board-Partial: 1; only other failures with nothing cached return 500.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from .board_cache import FirstPageRejected, group_items
from .monday_client import MondayAuthError, MondayError
from .services import Services, get_services

log = logging.getLogger("floorboard.board")

router = APIRouter(tags=["board"])


async def _serve_board(svc: Services):
    if not svc.credentials.is_authenticated:
        return JSONResponse({"error": "Not authenticated with Monday"}, status_code=401)
    if not svc.monday.board_id:
        return JSONResponse({"error": "BOARD_ID is not set."}, status_code=400)

    try:
        return await svc.board_cache.get()
    except MondayAuthError as ex:
        log.warning("[board] auth rejected: %s", ex)
        return JSONResponse({"error": "Not authenticated with Monday"}, status_code=401)
    except MondayError as ex:
        stale = svc.board_cache.stale()
        if stale is not None:
            log.warning("[board] serving stale snapshot after failed refresh: %s", ex)
            return JSONResponse(stale, headers={"X-Board-Stale": "1"})
        if isinstance(ex, FirstPageRejected):
            # Not cached, so the next request tries again.
            log.warning("[board] complexity budget hit on first fetch; serving empty board")
            return JSONResponse(group_items([]), headers={"X-Board-Partial": "1"})
        log.error("[board] fetch failed with nothing cached: %s", ex)
        return JSONResponse({"error": "Failed to fetch board"}, status_code=500)


@router.get("/api/board")
async def board(svc: Services = Depends(get_services)):
    return await _serve_board(svc)


@router.post("/api/board/refresh")
async def board_refresh(svc: Services = Depends(get_services)):
    svc.board_cache.invalidate()
    return await _serve_board(svc)
