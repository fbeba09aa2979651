"""
floorboard/monday_client.py
---------------------------
Thin async GraphQL client for the Monday.com board that mirrors the shop floor.

- One shared httpx.AsyncClient with an explicit timeout on every call.
- The access token is held by a CredentialHolder owned by the app and passed in;
  nothing here keeps module-level token state.
- GraphQL responses are loosely typed and fields come and go between API
  versions, so every read goes through _get(), which walks a dotted path and
  falls back to a default instead of raising.

Errors
- MondayAuthError            : no token, or the API rejected it (HTTP 401/403).
- ComplexityBudgetExhausted  : the cost-based limiter refused the query.
- MondayError                : anything else (network, timeout, bad payload).
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

log = logging.getLogger("floorboard.monday")

DEFAULT_API_URL = "https://api.monday.com/v2"

COMPLEXITY_CODES = {"ComplexityException", "COMPLEXITY_BUDGET_EXHAUSTED", "complexityBudgetExhausted"}
AUTH_CODES = {"UserUnauthorizedException", "USER_UNAUTHORIZED", "Unauthorized", "UNAUTHENTICATED"}

_RESET_IN_RE = re.compile(r"reset in (\d+(?:\.\d+)?) seconds?", re.IGNORECASE)


class MondayError(RuntimeError):
    pass


class MondayAuthError(MondayError):
    pass


class ComplexityBudgetExhausted(MondayError):
    def __init__(self, message: str, retry_in_s: Optional[float] = None):
        super().__init__(message)
        self.retry_in_s = retry_in_s


class CredentialHolder:
    """Process-owned access token for the external board API."""

    def __init__(self, token: Optional[str] = None):
        self._token: Optional[str] = None
        self.set(token)

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return bool(self._token)

    def set(self, token: Optional[str]) -> None:
        self._token = (str(token).strip() or None) if token else None

    def clear(self) -> None:
        self._token = None


# ------------------------------------------------------------
# Partial-tolerant response access
# ------------------------------------------------------------
def _get(d: Any, path: str, default=None):
    """Walk 'a.b.0.c' through dicts and lists; any miss returns default."""
    cur = d
    for part in path.split("."):
        if isinstance(cur, dict):
            if part not in cur or cur[part] is None:
                return default
            cur = cur[part]
        elif isinstance(cur, list) and part.isdigit():
            idx = int(part)
            if idx >= len(cur) or cur[idx] is None:
                return default
            cur = cur[idx]
        else:
            return default
    return cur


def _as_list(v: Any) -> List[Any]:
    return v if isinstance(v, list) else []


def _as_str(v: Any, default: str = "") -> str:
    if v is None:
        return default
    return str(v)


def parse_subitem(raw: Any, column_ids: Iterable[str] = ()) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict) or raw.get("id") is None:
        return None
    wanted = list(column_ids)
    by_id = {
        _as_str(cv.get("id")): _as_str(cv.get("text"))
        for cv in _as_list(raw.get("column_values"))
        if isinstance(cv, dict) and cv.get("id") is not None
    }
    ids = wanted or list(by_id)
    return {
        "id": _as_str(raw["id"]),
        "name": _as_str(raw.get("name")),
        "column_values": [{"id": cid, "text": by_id.get(cid, "")} for cid in ids],
    }


def parse_item(raw: Any, column_ids: Iterable[str] = ()) -> Optional[Dict[str, Any]]:
    """Normalize one board item; returns None when the row has no id at all."""
    if not isinstance(raw, dict) or raw.get("id") is None:
        return None
    column_ids = list(column_ids)
    subitems = []
    for s in _as_list(raw.get("subitems")):
        parsed = parse_subitem(s, column_ids)
        if parsed is not None:
            subitems.append(parsed)
    group = _get(raw, "group.title")
    return {
        "id": _as_str(raw["id"]),
        "name": _as_str(raw.get("name")),
        "group": _as_str(group).strip() or None,
        "subitems": subitems,
    }


# ------------------------------------------------------------
# Error classification
# ------------------------------------------------------------
def _raise_for_errors(body: Dict[str, Any]) -> None:
    errors = [e for e in _as_list(body.get("errors")) if isinstance(e, dict)]
    # Older API versions report a single top-level error_code instead.
    if body.get("error_code"):
        errors.append({
            "message": body.get("error_message") or body.get("error_code"),
            "extensions": {"code": body.get("error_code")},
        })
    if not errors:
        return

    for err in errors:
        code = _as_str(_get(err, "extensions.code"))
        message = _as_str(err.get("message"))
        if code in COMPLEXITY_CODES or "complexity budget" in message.lower():
            retry = _get(err, "extensions.retry_in_seconds")
            if retry is None:
                m = _RESET_IN_RE.search(message)
                retry = m.group(1) if m else None
            try:
                retry_s = float(retry) if retry is not None else None
            except (TypeError, ValueError):
                retry_s = None
            raise ComplexityBudgetExhausted(message or code, retry_in_s=retry_s)
        if code in AUTH_CODES:
            raise MondayAuthError(message or code)

    raise MondayError(json.dumps(errors)[:500])


class MondayClient:
    def __init__(
        self,
        credentials: CredentialHolder,
        *,
        board_id: str,
        api_url: str = DEFAULT_API_URL,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.board_id = str(board_id or "")
        self.api_url = api_url
        self.timeout = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # Observability counters (simple integers; emit in logs)
        self.requests_sent = 0
        self.requests_failed = 0

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def gql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        token = self.credentials.token
        if not token:
            raise MondayAuthError("Not authenticated with Monday")
        await self.start()
        assert self._client is not None

        self.requests_sent += 1
        try:
            resp = await self._client.post(
                self.api_url,
                json={"query": query, "variables": variables or {}},
                headers={"Authorization": token, "Content-Type": "application/json"},
            )
        except httpx.TimeoutException as ex:
            self.requests_failed += 1
            raise MondayError(f"timeout after {self.timeout}s") from ex
        except httpx.HTTPError as ex:
            self.requests_failed += 1
            raise MondayError(f"{type(ex).__name__}: {ex}") from ex

        if resp.status_code in (401, 403):
            self.requests_failed += 1
            raise MondayAuthError(f"Monday rejected the token (HTTP {resp.status_code})")

        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            self.requests_failed += 1
            raise MondayError(f"non-JSON response (HTTP {resp.status_code})")

        try:
            _raise_for_errors(body)
        except MondayError:
            self.requests_failed += 1
            raise
        if not 200 <= resp.status_code < 300:
            self.requests_failed += 1
            raise MondayError(f"HTTP {resp.status_code}")

        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def change_column_value(self, item_id: str, column_id: str, value: Dict[str, Any]) -> Dict[str, Any]:
        query = """
          mutation ChangeValue($board: ID!, $item: ID!, $col: String!, $val: JSON!) {
            change_column_value(board_id: $board, item_id: $item, column_id: $col, value: $val) { id }
          }
        """
        return await self.gql(query, {
            "board": self.board_id,
            "item": str(item_id),
            "col": column_id,
            "val": json.dumps(value),
        })

    async def fetch_items_page(
        self,
        limit: int,
        cursor: Optional[str],
        subitem_columns: Iterable[str] = (),
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """One page of board items. Returns (normalized items, next cursor or None)."""
        column_ids = list(subitem_columns)
        query = """
          query($boardId: [ID!], $limit: Int!, $cursor: String, $cols: [String!]) {
            boards(ids: $boardId) {
              items_page(limit: $limit, cursor: $cursor) {
                cursor
                items {
                  id
                  name
                  group { title }
                  subitems {
                    id
                    name
                    column_values(ids: $cols) { id text }
                  }
                }
              }
            }
          }
        """
        data = await self.gql(query, {
            "boardId": [self.board_id],
            "limit": int(limit),
            "cursor": cursor,
            "cols": column_ids or None,
        })
        page = _get(data, "boards.0.items_page", {})
        items = []
        for raw in _as_list(_get(page, "items", [])):
            parsed = parse_item(raw, column_ids)
            if parsed is not None:
                items.append(parsed)
        next_cursor = _get(page, "cursor")
        return items, (str(next_cursor) if next_cursor else None)
