"""
floorboard/scan_routes.py
-------------------------
FastAPI router for the job-label scan protocol.

Endpoints
- GET  /api/scan-url?itemId=<id>
     Mint a signed scan URL for a label: {url}
- GET  /scan?i=<id>&ts=<ms>&sig=<hex>[&json=1]
     Verify, advance the job one stage, push the new state to the board.
     HTML confirmation by default, {ok, scan_count, status} with json=1.
- POST /api/scanner   {scan: "<full url or query fragment>"}
     Same sequence for handheld scanners that type the URL into a field.
     Returns {ok, item, scan_count, status}.
- GET  /api/scan-states
     {ok, map: {item_id: {scan_count, status}}} for progress badges.
- GET  /api/scan-events?itemId=<id>
     Audit trail for one item.

Status codes
- 400 missing/malformed parameters       (nothing recorded)
- 403 signature mismatch or expired      (nothing recorded)
- 401 no Monday session                  (nothing recorded)
- 500 scan storage unavailable           (nothing recorded, rescan to retry)
- 500 board update failed                (scan IS recorded; body carries the count)
"""

from __future__ import annotations

import html
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, field_validator

from .column_updater import ColumnUpdateError
from .scan_engine import ScanResult, ScanStoreError
from .services import Services, get_services
from .signed_url import build_scan_url, parse_scan_string

log = logging.getLogger("floorboard.scan")

router = APIRouter(tags=["scan"])


class ScannerIn(BaseModel):
    scan: Optional[str] = None

    @field_validator("scan", mode="before")
    @classmethod
    def _only_text(cls, v: Any) -> Optional[str]:
        if not isinstance(v, str):
            return None
        return v.strip() or None


class ScanOut(BaseModel):
    ok: bool = True
    item: Optional[str] = None
    scan_count: int
    status: str


class ScanFailure(Exception):
    def __init__(self, status_code: int, message: str, result: Optional[ScanResult] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.result = result


def _base_url(request: Request) -> str:
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto}://{host}"


async def _record_scan(svc: Services, item_id: str) -> ScanResult:
    """Advance + board push shared by /scan and /api/scanner."""
    if not svc.credentials.is_authenticated:
        raise ScanFailure(401, "Not authenticated with Monday")

    try:
        result = await svc.store.advance(item_id)
    except ScanStoreError:
        raise ScanFailure(500, "Scan not recorded, please rescan")

    try:
        await svc.updater.push(item_id, result.scan_count)
    except ColumnUpdateError:
        # The advance is committed and stays; only the board mirror lags.
        log.exception("[scan] board update failed after advance item=%s count=%d", item_id, result.scan_count)
        raise ScanFailure(500, "Failed to update", result)
    return result


def _failure_response(fail: ScanFailure, as_json: bool, item_id: Optional[str] = None) -> Response:
    if not as_json:
        return PlainTextResponse(fail.message, status_code=fail.status_code)
    body: dict = {"ok": False, "error": fail.message}
    if item_id:
        body["item"] = item_id
    if fail.result is not None:
        body.update(fail.result.as_dict())
    return JSONResponse(body, status_code=fail.status_code)


def _confirmation_page(result: ScanResult) -> str:
    return (
        '<html><body style="font-family:Arial;padding:20px">'
        "<div>Scan recorded</div>"
        f"<div>Count: {result.scan_count} &mdash; Status: <b>{html.escape(result.status)}</b></div>"
        "<script>setTimeout(()=>{ try{window.close()}catch(e){} }, 1200)</script>"
        "</body></html>"
    )


@router.get("/api/scan-url")
async def scan_url(request: Request, itemId: Optional[str] = None, svc: Services = Depends(get_services)):
    item_id = (itemId or "").strip()
    if not item_id:
        return JSONResponse({"error": "itemId required"}, status_code=400)
    token = svc.codec.issue(item_id)
    return {"url": build_scan_url(_base_url(request), token)}


@router.get("/scan")
async def scan(
    i: Optional[str] = None,
    ts: Optional[str] = None,
    sig: Optional[str] = None,
    json: Optional[str] = None,
    svc: Services = Depends(get_services),
):
    as_json = bool(json)
    try:
        if not i or not ts or not sig:
            raise ScanFailure(400, "Invalid scan URL")
        if not svc.codec.verify(i, ts, sig):
            raise ScanFailure(403, "Signature check failed")
        result = await _record_scan(svc, i)
    except ScanFailure as fail:
        return _failure_response(fail, as_json)

    if as_json:
        return ScanOut(scan_count=result.scan_count, status=result.status).model_dump(exclude_none=True)
    return HTMLResponse(_confirmation_page(result))


@router.post("/api/scanner")
async def scanner(payload: ScannerIn, svc: Services = Depends(get_services)):
    if not payload.scan:
        return JSONResponse({"ok": False, "error": "No scan data"}, status_code=400)

    parsed = parse_scan_string(payload.scan)
    item_id = parsed["i"]
    try:
        if not item_id:
            raise ScanFailure(400, "Invalid scan string - no item id")
        if parsed["ts"] and parsed["sig"]:
            if not svc.codec.verify(item_id, parsed["ts"], parsed["sig"]):
                raise ScanFailure(403, "Signature check failed")
        elif svc.allow_unsigned_scanner:
            log.info("[scan] accepting unsigned scanner input item=%s", item_id)
        else:
            raise ScanFailure(403, "Unsigned scan rejected")
        result = await _record_scan(svc, item_id)
    except ScanFailure as fail:
        return _failure_response(fail, True, item_id)

    return ScanOut(item=item_id, scan_count=result.scan_count, status=result.status).model_dump()


@router.get("/api/scan-states")
async def scan_states(svc: Services = Depends(get_services)):
    try:
        states = await svc.store.all_states()
    except ScanStoreError as ex:
        log.error("[scan] scan-states failed: %s", ex)
        return JSONResponse({"ok": False, "error": "failed"}, status_code=500)
    return {"ok": True, "map": states}


@router.get("/api/scan-events")
async def scan_events(itemId: Optional[str] = None, svc: Services = Depends(get_services)):
    item_id = (itemId or "").strip()
    if not item_id:
        return JSONResponse({"ok": False, "error": "itemId required"}, status_code=400)
    try:
        events = await svc.store.events(item_id)
    except ScanStoreError as ex:
        log.error("[scan] scan-events failed: %s", ex)
        return JSONResponse({"ok": False, "error": "failed"}, status_code=500)
    return {"ok": True, "item": item_id, "events": events}
