"""
End-to-end tests for the HTTP surface with a fake Monday API.

Tests verify:
1. scan-url -> /scan walks item "501" through Checked In / In Production / Completed
2. Board columns are pushed: checkbox on scan 1, status label on scans 2 and 3
3. 400 / 403 / 401 reject without recording anything
4. A failed board write returns 500 but the scan stays recorded
5. /api/scanner accepts full URLs and bare fragments, refuses unsigned input by default
6. /api/board serves the grouped snapshot, and a stale copy when a refresh fails
7. A complexity rejection with nothing cached serves an empty board, not an error
8. Importing the server module builds no app until `app` is first used
"""

import json
import sys
from pathlib import Path
from urllib.parse import urlsplit

sys.path.insert(0, str(Path(__file__).parent))

import httpx
import pytest
from fastapi.testclient import TestClient

from floorboard.server import create_app


class FakeMonday:
    def __init__(self):
        self.mutations = []
        self.board_queries = 0
        self.fail_mutations = False
        self.fail_board = False
        self.complexity_board = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if "mutation" in body["query"]:
            if self.fail_mutations:
                return httpx.Response(500, json={"errors": [{"message": "internal"}]})
            v = body["variables"]
            self.mutations.append((v["item"], v["col"], json.loads(v["val"])))
            return httpx.Response(200, json={"data": {"change_column_value": {"id": v["item"]}}})

        self.board_queries += 1
        if self.fail_board:
            return httpx.Response(503, json={"errors": [{"message": "maintenance"}]})
        if self.complexity_board:
            return httpx.Response(429, json={"errors": [{
                "message": "Complexity budget exhausted",
                "extensions": {"code": "COMPLEXITY_BUDGET_EXHAUSTED", "retry_in_seconds": 9},
            }]})
        return httpx.Response(200, json={"data": {"boards": [{"items_page": {
            "cursor": None,
            "items": [
                {"id": "501", "name": "501 - Tonic - Bags", "group": {"title": "Production"},
                 "subitems": [{"id": "5011", "name": "Navy M",
                               "column_values": [{"id": "size_col", "text": "M"}, {"id": "qty_col", "text": "12"}]}]},
                {"id": "502", "name": "502 - Acme - Hoodies", "group": None, "subitems": []},
            ],
        }}]}})


def make_cfg(tmp_path, **scan_overrides):
    scan = {"secret": "test-secret", "token_max_age_s": 0, "clock_skew_s": 300}
    scan.update(scan_overrides)
    return {
        "app": {"persistence": {"sqlite_path": str(tmp_path / "floor.sqlite")},
                "server": {"cors_origins": ["*"]}},
        "scan": scan,
        "monday": {
            "api_url": "https://api.example.test/v2",
            "api_token": "tok-abc",
            "board_id": "42",
            "timeout_s": 2.0,
            "columns": {"status": "status", "checked_in": "checkbox"},
        },
        "board": {"page_limit": 50, "max_pages": 2, "cache_s": 300,
                  "subitem_columns": ["size_col", "qty_col"]},
    }


@pytest.fixture
def monday():
    return FakeMonday()


@pytest.fixture
def client(tmp_path, monday):
    app = create_app(make_cfg(tmp_path), transport=httpx.MockTransport(monday))
    with TestClient(app) as c:
        yield c


def scan_path(client: TestClient, item_id: str) -> str:
    resp = client.get("/api/scan-url", params={"itemId": item_id})
    assert resp.status_code == 200
    parts = urlsplit(resp.json()["url"])
    assert parts.path == "/scan"
    return f"{parts.path}?{parts.query}"


# ----------------------------- /scan -----------------------------
def test_three_scans_progress_and_push_columns(client, monday):
    path = scan_path(client, "501")
    statuses = []
    for expected in (1, 2, 3):
        resp = client.get(path + "&json=1")
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["scan_count"] == expected
        statuses.append(body["status"])

    assert statuses == ["Checked In", "In Production", "Completed"]
    assert monday.mutations == [
        ("501", "checkbox", {"checked": "true"}),
        ("501", "status", {"label": "In Production"}),
        ("501", "status", {"label": "Completed"}),
    ]

    events = client.get("/api/scan-events", params={"itemId": "501"}).json()["events"]
    assert [e["scan_number"] for e in events] == [1, 2, 3]


def test_fourth_scan_stays_completed(client):
    path = scan_path(client, "501") + "&json=1"
    for _ in range(3):
        client.get(path)
    body = client.get(path).json()
    assert (body["scan_count"], body["status"]) == (3, "Completed")
    events = client.get("/api/scan-events", params={"itemId": "501"}).json()["events"]
    assert len(events) == 4


def test_html_confirmation(client):
    resp = client.get(scan_path(client, "501"))
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert "Scan recorded" in resp.text
    assert "Checked In" in resp.text


def test_scan_url_requires_item_id(client):
    assert client.get("/api/scan-url").status_code == 400


def test_missing_params_400(client):
    assert client.get("/scan", params={"i": "501", "ts": "1"}).status_code == 400
    assert client.get("/api/scan-states").json()["map"] == {}


def test_bad_signature_403_records_nothing(client, monday):
    path = scan_path(client, "501")
    tampered = path[:-1] + ("0" if path[-1] != "0" else "1")
    resp = client.get(tampered + "&json=1")
    assert resp.status_code == 403
    assert resp.json()["ok"] is False
    assert client.get("/api/scan-states").json()["map"] == {}
    assert monday.mutations == []


def test_non_ascii_signature_403(client, monday):
    ts = scan_path(client, "501").split("ts=")[1].split("&")[0]
    resp = client.get("/scan", params={"i": "501", "ts": ts, "sig": "é" * 64, "json": "1"})
    assert resp.status_code == 403
    assert resp.json()["ok"] is False

    resp = client.post("/api/scanner", json={"scan": "i=501&ts=1&sig=%C3%A9"})
    assert resp.status_code == 403
    resp = client.post("/api/scanner", json={"scan": f"i=501&ts={ts}&sig=" + "é" * 64})
    assert resp.status_code == 403

    assert client.get("/api/scan-states").json()["map"] == {}
    assert monday.mutations == []


def test_no_monday_session_401(client, monday):
    path = scan_path(client, "501")
    client.app.state.services.credentials.clear()
    assert client.get(path).status_code == 401
    assert client.get("/api/scan-states").json()["map"] == {}
    assert client.get("/api/status").json() == {"ok": True, "mondayAuthenticated": False}


def test_board_write_failure_keeps_scan(client, monday):
    path = scan_path(client, "501") + "&json=1"
    monday.fail_mutations = True
    resp = client.get(path)
    assert resp.status_code == 500
    body = resp.json()
    assert body["ok"] is False
    assert body["scan_count"] == 1
    assert client.get("/api/scan-states").json()["map"]["501"]["scan_count"] == 1

    monday.fail_mutations = False
    assert client.get(path).json()["scan_count"] == 2


def test_storage_failure_500_and_no_board_write(client, monday, tmp_path):
    path = scan_path(client, "501") + "&json=1"
    client.app.state.services.store.db_path = str(tmp_path / "nope" / "x.sqlite")
    resp = client.get(path)
    assert resp.status_code == 500
    assert "scan_count" not in resp.json()
    assert monday.mutations == []


def test_scan_json_has_cors_header(client):
    resp = client.get(scan_path(client, "501") + "&json=1", headers={"Origin": "https://labels.example"})
    assert resp.headers.get("access-control-allow-origin") == "*"


# ----------------------------- /api/scanner -----------------------------
def test_scanner_accepts_full_url_and_fragment(client):
    url = client.get("/api/scan-url", params={"itemId": "777"}).json()["url"]
    first = client.post("/api/scanner", json={"scan": url})
    assert first.status_code == 200
    assert first.json() == {"ok": True, "item": "777", "scan_count": 1, "status": "Checked In"}

    fragment = urlsplit(url).query
    second = client.post("/api/scanner", json={"scan": f"  {fragment}\n"})
    assert second.json()["scan_count"] == 2


def test_scanner_rejects_bad_input(client):
    assert client.post("/api/scanner", json={}).status_code == 400
    assert client.post("/api/scanner", json={"scan": 12}).status_code == 400
    resp = client.post("/api/scanner", json={"scan": "ts=1&sig=ab"})
    assert resp.status_code == 400
    assert "no item id" in resp.json()["error"]
    assert client.post("/api/scanner", json={"scan": "i=501&ts=1&sig=ab"}).status_code == 403


def test_scanner_unsigned_policy(tmp_path, monday):
    app = create_app(make_cfg(tmp_path, allow_unsigned_scanner=True), transport=httpx.MockTransport(monday))
    with TestClient(app) as c:
        assert c.post("/api/scanner", json={"scan": "i=900"}).json()["scan_count"] == 1

    strict = create_app(make_cfg(tmp_path), transport=httpx.MockTransport(monday))
    with TestClient(strict) as c:
        assert c.post("/api/scanner", json={"scan": "i=900"}).status_code == 403


# ----------------------------- /api/board -----------------------------
def test_board_grouped_snapshot_and_cache(client, monday):
    resp = client.get("/api/board")
    assert resp.status_code == 200
    groups = resp.json()["boards"][0]["groups"]
    assert [g["title"] for g in groups] == ["Production", "Ungrouped"]
    item = groups[0]["items_page"]["items"][0]
    assert item["id"] == "501"
    assert item["customer"] == "Tonic"
    assert item["subitems"][0]["column_values"] == [
        {"id": "size_col", "text": "M"},
        {"id": "qty_col", "text": "12"},
    ]

    client.get("/api/board")
    assert monday.board_queries == 1


def test_board_requires_token(client):
    client.app.state.services.credentials.clear()
    assert client.get("/api/board").status_code == 401


def test_board_serves_stale_on_refresh_failure(client, monday):
    fresh = client.get("/api/board").json()
    monday.fail_board = True
    resp = client.post("/api/board/refresh")
    assert resp.status_code == 200
    assert resp.headers.get("x-board-stale") == "1"
    assert resp.json() == fresh


def test_board_fails_with_nothing_cached(client, monday):
    monday.fail_board = True
    assert client.get("/api/board").status_code == 500


def test_board_complexity_on_first_fetch_serves_empty_board(client, monday):
    monday.complexity_board = True
    resp = client.get("/api/board")
    assert resp.status_code == 200
    assert resp.headers.get("x-board-partial") == "1"
    assert resp.json() == {"boards": [{"groups": []}]}

    # Nothing was cached: the next request fetches again and gets the real board.
    monday.complexity_board = False
    resp = client.get("/api/board")
    assert resp.status_code == 200
    assert "x-board-partial" not in resp.headers
    assert [g["title"] for g in resp.json()["boards"][0]["groups"]] == ["Production", "Ungrouped"]
    assert monday.board_queries == 2


def test_board_complexity_after_snapshot_serves_stale(client, monday):
    fresh = client.get("/api/board").json()
    monday.complexity_board = True
    resp = client.post("/api/board/refresh")
    assert resp.status_code == 200
    assert resp.headers.get("x-board-stale") == "1"
    assert resp.json() == fresh


# ----------------------------- probes -----------------------------
def test_probes(client):
    assert client.get("/healthz").json()["status"] == "ok"
    assert client.get("/readyz").status_code == 200
    assert client.get("/api/status").json() == {"ok": True, "mondayAuthenticated": True}


def test_default_app_is_built_on_first_access(tmp_path, monkeypatch):
    import floorboard.server as server

    cfg = make_cfg(tmp_path)
    monkeypatch.setattr(server, "CONFIG", cfg)
    monkeypatch.setattr(server, "_app", None)
    db = Path(cfg["app"]["persistence"]["sqlite_path"])
    assert not db.exists()

    app = server.app
    assert db.exists()
    assert server.app is app is server.get_app()
    with pytest.raises(AttributeError):
        server.no_such_attribute
