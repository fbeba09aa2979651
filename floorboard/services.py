"""
Process-wide collaborators, built once from the config dict and hung on
app.state.services. Routers reach them through the get_services dependency.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from fastapi import Request

from .board_cache import BoardSyncCache, make_board_fetcher
from .column_updater import ExternalColumnUpdater
from .config_loader import (
    get_board_cfg,
    get_db_path,
    get_monday_cfg,
    get_scan_cfg,
    get_stage_labels,
)
from .monday_client import DEFAULT_API_URL, CredentialHolder, MondayClient
from .scan_engine import ScanStateStore, StageLabels
from .signed_url import SignedURLCodec


@dataclass
class Services:
    db_path: Path
    labels: StageLabels
    credentials: CredentialHolder
    codec: SignedURLCodec
    store: ScanStateStore
    monday: MondayClient
    updater: ExternalColumnUpdater
    board_cache: BoardSyncCache
    allow_unsigned_scanner: bool = False


def build_services(
    cfg: Dict[str, Any],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    scan_cfg = get_scan_cfg(cfg)
    monday_cfg = get_monday_cfg(cfg)
    board_cfg = get_board_cfg(cfg)
    columns = monday_cfg.get("columns") or {}

    db_path = get_db_path(cfg)
    labels = StageLabels.from_mapping(get_stage_labels(cfg))
    credentials = CredentialHolder(monday_cfg.get("api_token"))

    monday = MondayClient(
        credentials,
        board_id=str(monday_cfg.get("board_id") or ""),
        api_url=str(monday_cfg.get("api_url") or DEFAULT_API_URL),
        timeout_s=float(monday_cfg.get("timeout_s", 10.0)),
        transport=transport,
    )
    board_cache = BoardSyncCache(
        make_board_fetcher(monday, board_cfg),
        ttl_s=float(board_cfg.get("cache_s", 300)),
        refresh_timeout_s=float(board_cfg.get("refresh_timeout_s", 30.0)),
    )

    return Services(
        db_path=db_path,
        labels=labels,
        credentials=credentials,
        codec=SignedURLCodec.from_config(scan_cfg),
        store=ScanStateStore(db_path, labels),
        monday=monday,
        updater=ExternalColumnUpdater(
            monday,
            labels,
            status_column_id=columns.get("status"),
            checked_in_column_id=columns.get("checked_in"),
        ),
        board_cache=board_cache,
        allow_unsigned_scanner=bool(scan_cfg.get("allow_unsigned_scanner", False)),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
