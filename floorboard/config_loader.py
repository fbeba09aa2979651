# floorboard/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for the production floor backend.

Single source of truth:
    config/config.yaml   (or the file named by $FLOORBOARD_CONFIG)

Design notes
------------
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return {} or sensible defaults when sections are absent.
- Secrets can be injected through the environment so they never need to live
  in the YAML file: SCAN_SECRET, MONDAY_API_TOKEN, BOARD_ID, FLOORBOARD_DB.
- Paths are absolute (resolved against the repo root) unless already absolute.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of the config file
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_db_path(cfg=None) -> pathlib.Path
- get_scan_cfg(cfg=None) -> dict
- get_stage_labels(cfg=None) -> dict
- get_monday_cfg(cfg=None) -> dict
- get_board_cfg(cfg=None) -> dict
- get_cors_origins(cfg=None) -> list[str]
- get_log_level(default="INFO", cfg=None) -> str
- get_server_bind(cfg=None) -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"

DEFAULT_LABELS = {
    "pending": "Pending",
    "stage1":  "Checked In",
    "stage2":  "In Production",
    "stage3":  "Completed",
}


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with an 'app:' section.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except Exception as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except Exception as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    """Environment wins over YAML for secrets and deployment-specific values."""
    env_secret = os.getenv("SCAN_SECRET", "").strip()
    if env_secret:
        cfg.setdefault("scan", {})["secret"] = env_secret

    env_token = os.getenv("MONDAY_API_TOKEN", "").strip()
    if env_token:
        cfg.setdefault("monday", {})["api_token"] = env_token

    env_board = os.getenv("BOARD_ID", "").strip()
    if env_board:
        cfg.setdefault("monday", {})["board_id"] = env_board

    env_db = os.getenv("FLOORBOARD_DB", "").strip()
    if env_db:
        cfg.setdefault("app", {}).setdefault("persistence", {})["sqlite_path"] = env_db


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: config/config.yaml), apply environment
    overrides, validate required shape, and return the dict.
    """
    if path is None:
        path = os.getenv("FLOORBOARD_CONFIG") or None
    cfg_path = resolve_path(path) if path else DEFAULT_CFG
    cfg = _load_yaml(cfg_path)
    _apply_env_overrides(cfg)

    # Minimal structural contract for startup:
    try:
        sqlite_path = cfg["app"]["persistence"]["sqlite_path"]
        if not isinstance(sqlite_path, (str, os.PathLike)) or not str(sqlite_path).strip():
            raise KeyError("app.persistence.sqlite_path must be a non-empty string")
    except KeyError as ke:
        raise RuntimeError(
            "CONFIG missing required key: app.persistence.sqlite_path\n"
            "Your config must contain a single top-level 'app:' mapping with a "
            "'persistence.sqlite_path' entry. See config/config.yaml template."
        ) from ke

    return cfg


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()



# ---------- Accessors ----------
# Each accessor reads the eager CONFIG unless an explicit cfg dict is passed
# (tests and tools build apps from their own dicts).
def _cfg(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return CONFIG if cfg is None else cfg


def get_db_path(cfg: Optional[Dict[str, Any]] = None) -> Path:
    """Return absolute filesystem path to the SQLite database."""
    sqlite_path = (
        _cfg(cfg).get("app", {})
                 .get("persistence", {})
                 .get("sqlite_path")
    )
    if not sqlite_path:
        # Unreachable once load_config has validated the file.
        raise RuntimeError("CONFIG missing app.persistence.sqlite_path")
    return resolve_path(sqlite_path)


def get_scan_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the scan token / progression block or {}."""
    return _cfg(cfg).get("scan", {}) or {}


def get_stage_labels(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """Return status labels keyed pending/stage1/stage2/stage3, defaults filled in."""
    labels = dict(DEFAULT_LABELS)
    for key, val in (get_scan_cfg(cfg).get("labels") or {}).items():
        if key in labels and isinstance(val, str) and val.strip():
            labels[key] = val.strip()
    return labels


def get_monday_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the external board API block or {}."""
    return _cfg(cfg).get("monday", {}) or {}


def get_board_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return board paging/cache settings or {}."""
    return _cfg(cfg).get("board", {}) or {}


def get_cors_origins(cfg: Optional[Dict[str, Any]] = None) -> List[str]:
    server = _cfg(cfg).get("app", {}).get("server", {}) or {}
    return [str(o) for o in (server.get("cors_origins") or [])]


def get_log_level(default: str = "INFO", cfg: Optional[Dict[str, Any]] = None) -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = (_cfg(cfg).get("log", {}) or {}).get("level", default)
    return str(lvl).upper()


def get_server_bind(cfg: Optional[Dict[str, Any]] = None) -> Tuple[str, int]:
    """Return (host, port); defaults to ('127.0.0.1', 3000)."""
    server = _cfg(cfg).get("app", {}).get("server", {}) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port
    return "127.0.0.1", 3000
# ---------- End of config_loader.py ----------
