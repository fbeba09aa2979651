"""
floorboard/signed_url.py
------------------------
Tamper-proof scan tokens for printed job labels.

A token binds an external item id to the moment it was issued:

    sig = hex( HMAC-SHA256(secret, f"{item_id}.{ts_ms}") )

and travels as the query string of a scan URL:

    https://<host>/scan?i=<item_id>&ts=<ts_ms>&sig=<hex>

Lifetime policy
---------------
- token_max_age_s > 0 : tokens older than this are rejected.
- clock_skew_s        : tokens dated further than this into the future are rejected.
- legacy_accept_until : until this instant (epoch ms), correctly signed tokens
                        that are past token_max_age_s are still accepted so labels
                        printed before the age bound existed keep working.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

log = logging.getLogger("floorboard.scan")

UTC_MS = lambda: int(time.time() * 1000)


def _parse_deadline(raw: Any) -> Optional[int]:
    """Accept an ISO date/datetime (or epoch ms) and return epoch ms, or None."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        return int(raw)
    if hasattr(raw, "isoformat") and not isinstance(raw, str):
        # PyYAML turns bare dates into datetime.date
        raw = raw.isoformat()
    try:
        dt = datetime.fromisoformat(str(raw).strip())
    except ValueError:
        raise RuntimeError(f"scan.legacy_accept_until is not an ISO date: {raw!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


class SignedURLCodec:
    def __init__(
        self,
        secret: str,
        *,
        token_max_age_s: int = 0,
        clock_skew_s: int = 300,
        legacy_accept_until: Any = None,
        clock_ms: Callable[[], int] = UTC_MS,
    ):
        if not secret:
            raise ValueError("scan secret must be a non-empty string")
        self._key = secret.encode("utf-8")
        self.token_max_age_ms = max(0, int(token_max_age_s)) * 1000
        self.clock_skew_ms = max(0, int(clock_skew_s)) * 1000
        self.legacy_accept_until_ms = _parse_deadline(legacy_accept_until)
        self._clock_ms = clock_ms

    @classmethod
    def from_config(cls, scan_cfg: Dict[str, Any], **kw) -> "SignedURLCodec":
        return cls(
            str(scan_cfg.get("secret") or ""),
            token_max_age_s=int(scan_cfg.get("token_max_age_s") or 0),
            clock_skew_s=int(scan_cfg.get("clock_skew_s", 300) or 0),
            legacy_accept_until=scan_cfg.get("legacy_accept_until"),
            **kw,
        )

    def sign(self, item_id: str, timestamp: str) -> str:
        msg = f"{item_id}.{timestamp}".encode("utf-8", "surrogatepass")
        return hmac.new(self._key, msg, hashlib.sha256).hexdigest()

    def issue(self, item_id: str) -> Dict[str, str]:
        ts = str(self._clock_ms())
        item_id = str(item_id)
        return {"item_id": item_id, "timestamp": ts, "signature": self.sign(item_id, ts)}

    def verify(self, item_id: Any, timestamp: Any, signature: Any) -> bool:
        """
        True only for an exact signature match on a token inside the lifetime
        policy. Anything malformed is simply invalid.
        """
        if not all(isinstance(v, str) and v for v in (item_id, timestamp, signature)):
            return False
        if not (timestamp.isascii() and timestamp.isdigit()):
            return False
        # Hex digests are ASCII; compare_digest raises on non-ASCII str input.
        if not signature.isascii():
            return False
        expected = self.sign(item_id, timestamp)
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii")):
            return False
        return self._within_lifetime(item_id, int(timestamp))

    def _within_lifetime(self, item_id: str, ts_ms: int) -> bool:
        now = self._clock_ms()
        if ts_ms - now > self.clock_skew_ms:
            log.warning("scan token from the future rejected", extra={"item_id": item_id, "ts": ts_ms})
            return False
        if not self.token_max_age_ms or now - ts_ms <= self.token_max_age_ms:
            return True
        if self.legacy_accept_until_ms is not None and now <= self.legacy_accept_until_ms:
            log.info("accepting expired scan token during legacy window", extra={"item_id": item_id, "ts": ts_ms})
            return True
        log.warning("expired scan token rejected", extra={"item_id": item_id, "ts": ts_ms})
        return False


# ------------------------------------------------------------
# URL helpers
# ------------------------------------------------------------
def build_scan_url(base_url: str, token: Dict[str, str]) -> str:
    query = urlencode({"i": token["item_id"], "ts": token["timestamp"], "sig": token["signature"]})
    return f"{base_url.rstrip('/')}/scan?{query}"


def parse_scan_string(raw: str) -> Dict[str, Optional[str]]:
    """
    Accept what a handheld scanner types: a full scan URL, a path like
    "/scan?i=..", or a bare query fragment "i=..&ts=..&sig=..".
    Returns {"i", "ts", "sig"} with None for anything absent.
    """
    s = (raw or "").strip()
    parts = urlsplit(s)
    if parts.scheme and parts.netloc:
        query = parts.query
    elif "?" in s:
        query = s.split("?", 1)[1]
    else:
        query = s
    params = parse_qs(query, keep_blank_values=False)

    def first(key: str) -> Optional[str]:
        vals = params.get(key)
        return vals[0].strip() if vals and vals[0].strip() else None

    return {"i": first("i"), "ts": first("ts"), "sig": first("sig")}
