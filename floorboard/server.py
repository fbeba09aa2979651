from __future__ import annotations

"""
floorboard/server.py
--------------------
FastAPI app for the production floor dashboard backend.

- Scan protocol (signed job labels -> stage progression -> board columns)
  lives in scan_routes.py.
- Cached Monday board snapshot lives in board_routes.py.
- This module wires the collaborators (services.py), registers routers,
  and exposes status and health probes:
    /api/status : {ok, mondayAuthenticated}
    /healthz    : liveness (no DB access)
    /readyz     : readiness (touches SQLite to confirm schema presence)

Run:
    uvicorn floorboard.server:app --host 0.0.0.0 --port 3000
    python -m floorboard.server
"""

import logging
from typing import Any, Dict, Optional

import aiosqlite
import httpx
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .board_routes import router as board_router
from .config_loader import CONFIG, get_cors_origins, get_log_level, get_server_bind
from .db_schema import ensure_schema
from .scan_routes import router as scan_router
from .services import Services, build_services

log = logging.getLogger("floorboard")
log.setLevel(get_log_level())


def create_app(
    cfg: Optional[Dict[str, Any]] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    cfg = CONFIG if cfg is None else cfg
    services = build_services(cfg, transport=transport)

    # Schema first so the very first scan cannot race table creation.
    ensure_schema(services.db_path)

    app = FastAPI(title="Floorboard Backend", version="0.3.0")
    app.state.services = services

    origins = get_cors_origins(cfg)
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    app.include_router(scan_router)
    app.include_router(board_router)

    @app.on_event("startup")
    async def announce_startup() -> None:
        svc: Services = app.state.services
        log.info("db_path=%s", svc.db_path.resolve())
        log.info(
            "monday authenticated=%s board_id=%s",
            svc.credentials.is_authenticated, svc.monday.board_id or "<unset>",
        )
        await svc.monday.start()

    @app.on_event("shutdown")
    async def stop_clients() -> None:
        try:
            await app.state.services.monday.stop()
        except Exception:
            log.exception("Error closing Monday client")

    @app.get("/api/status")
    async def api_status(request: Request):
        svc: Services = request.app.state.services
        return {"ok": True, "mondayAuthenticated": svc.credentials.is_authenticated}

    # ------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------
    @app.get("/healthz")
    async def healthz():
        """Lightweight liveness probe. Does not touch the database."""
        return {"status": "ok", "service": "floorboard-backend"}

    @app.get("/readyz")
    async def readyz(request: Request):
        """
        Readiness probe. Verifies DB is reachable and schema is present.
        Returns 200 with basic info if good; 503 if DB check fails.
        """
        db_path = request.app.state.services.db_path
        try:
            async with aiosqlite.connect(str(db_path)) as db:
                await db.execute("SELECT 1 FROM job_scans LIMIT 1")
            return {"status": "ok", "db_path": str(db_path)}
        except Exception as e:
            return Response(
                content='{"status":"degraded","error":"%s"}' % type(e).__name__,
                media_type="application/json",
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )

    return app


_app: Optional[FastAPI] = None


def get_app() -> FastAPI:
    """Default app built from the loaded config, created on first use."""
    global _app
    if _app is None:
        _app = create_app()
    return _app


def __getattr__(name: str):
    # `uvicorn floorboard.server:app` lands here; importing the module alone
    # never touches the configured database.
    if name == "app":
        return get_app()
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def main() -> None:
    import uvicorn

    logging.basicConfig(level=get_log_level(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    host, port = get_server_bind()
    uvicorn.run("floorboard.server:app", host=host, port=port, log_level=get_log_level().lower())


if __name__ == "__main__":
    main()
