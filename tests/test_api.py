"""
tests/test_api.py
"""
from __future__ import annotations

import pytest

from guestbook import app as app_module
from guestbook.app import app
from guestbook.cooldown import CooldownError, MemoryCooldown
from guestbook.store import StoreError

VALID = {
    "text": "Test note",
    "author": "Tester",
    "page_index": 2,
    "row_start": 1,
    "row_end": 3,
    "col_start": 1,
    "col_end": 3,
}


def _post(client, path: str = "/notes", **overrides):
    return client.post(path, json={**VALID, **overrides})


@pytest.fixture
def memory_cooldown(monkeypatch) -> MemoryCooldown:
    cd = MemoryCooldown()
    monkeypatch.setattr(app_module, "get_cooldown", lambda: cd)
    return cd


# ───────────────────────── write path ───────────────────────────────
def test_create_returns_201_with_note(client):
    resp = _post(client, text="Hi", author="T", row_end=5, col_end=5)
    assert resp.status_code == 201
    note = resp.get_json()
    assert note["id"]
    assert note["created_at"]
    assert (note["row_start"], note["row_end"], note["col_start"], note["col_end"]) == (1, 2, 1, 3)
    assert note["profanity_flags"] == []


@pytest.mark.parametrize("overrides, needle", [
    ({"col_start": 1.5}, "column bounds"),
    ({"col_end": 3.7}, "column bounds"),
    ({"row_start": 1.5}, "row bounds"),
    ({"row_end": 3.2}, "row bounds"),
    ({"page_index": -1}, "page_index"),
    ({"page_index": 0.5}, "page_index"),
    ({"page_index": "abc"}, "page_index"),
    ({"page_index": None}, "page_index"),
    ({"text": ""}, "Text"),
    ({"author": "a" * 101}, "Author"),
])
def test_validation_errors_are_400(client, overrides, needle):
    resp = _post(client, **overrides)
    assert resp.status_code == 400
    assert needle in resp.get_json()["error"]


def test_garbage_body_is_400(client):
    resp = client.post("/notes", data="not json", content_type="application/json")
    assert resp.status_code == 400
    assert "JSON object" in resp.get_json()["error"]


def test_overlap_is_409(client):
    dense = "AB CD EF GH IJ KL MN OP"
    body = dict(text=dense, page_index=20, row_start=1, row_end=5, col_start=1, col_end=3)
    assert _post(client, **body).status_code == 201

    second = _post(client, **body)
    assert second.status_code == 409
    assert "overlaps" in second.get_json()["error"]


def test_alias_route(client):
    assert _post(client, "/api/guestbook/notes", page_index=10).status_code == 201
    resp = client.get("/api/guestbook/notes?page=10")
    assert len(resp.get_json()) == 1


def test_rate_limited_after_success(client, memory_cooldown):
    client.environ_base["REMOTE_ADDR"] = "198.51.100.20"
    assert _post(client, page_index=1).status_code == 201
    resp = _post(client, page_index=2)
    assert resp.status_code == 429
    assert "come back" in resp.get_json()["error"]


def test_trusted_header_wins_over_forwarded_for(client, memory_cooldown):
    headers = {"X-Vercel-Forwarded-For": "203.0.113.5"}
    assert client.post("/notes", json={**VALID, "page_index": 1}, headers=headers).status_code == 201
    assert memory_cooldown.get("guestbook:cooldown:203.0.113.5")

    # spoofing X-Forwarded-For does not dodge the cooldown
    headers["X-Forwarded-For"] = "1.2.3.4, 5.6.7.8"
    resp = client.post("/notes", json={**VALID, "page_index": 2}, headers=headers)
    assert resp.status_code == 429


def test_no_identity_is_not_rate_limited(client, memory_cooldown):
    client.environ_base["REMOTE_ADDR"] = ""
    assert _post(client, page_index=11).status_code == 201
    assert _post(client, page_index=12).status_code == 201
    assert memory_cooldown.get("guestbook:cooldown:") is None


def test_forwarded_for_without_trusted_header_still_works(client):
    resp = client.post(
        "/notes",
        json={**VALID, "page_index": 30},
        headers={"X-Forwarded-For": "1.2.3.4, 5.6.7.8"},
    )
    assert resp.status_code == 201


def test_cooldown_outage_does_not_block(client, monkeypatch):
    class _Down:
        def get(self, key):
            raise CooldownError("down")

        def set(self, key, value, ttl):
            raise CooldownError("down")

    monkeypatch.setattr(app_module, "get_cooldown", lambda: _Down())
    assert _post(client).status_code == 201


def test_store_outage_is_generic_500(client, monkeypatch):
    class _Broken:
        def insert_if_no_overlap(self, draft):
            raise StoreError("/var/lib/secret.sqlite3 is locked")

        def get_notes_by_page(self, page):
            raise StoreError("/var/lib/secret.sqlite3 is locked")

        get_all_notes = get_notes_by_page

    monkeypatch.setattr(app_module, "get_store", lambda: _Broken())
    resp = _post(client)
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Failed to create note"}

    resp = client.get("/notes?page=1")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Failed to fetch notes"}


def test_unconfigured_store_says_so(client):
    app.config.update(GUESTBOOK_STORE="sqlite", DATABASE=None)
    resp = _post(client)
    assert resp.status_code == 500
    assert "not configured" in resp.get_json()["error"]
    assert client.get("/notes").status_code == 500


def test_sqlite_backend_end_to_end(client, sqlite_path):
    app.config.update(GUESTBOOK_STORE="", DATABASE=sqlite_path)
    assert app_module.store_kind() == "sqlite"
    assert _post(client, page_index=5).status_code == 201
    assert _post(client, page_index=5).status_code == 409
    assert len(client.get("/notes?page=5").get_json()) == 1


# ───────────────────────── read path ────────────────────────────────
def test_huge_page_index_is_400_on_sqlite(client, sqlite_path):
    app.config.update(GUESTBOOK_STORE="sqlite", DATABASE=sqlite_path)
    resp = _post(client, page_index=2**63)
    assert resp.status_code == 400
    assert "page_index" in resp.get_json()["error"]

    resp = client.get(f"/notes?page={2**63}")
    assert resp.status_code == 400
    assert client.get(f"/notes?page={2**63 - 1}").get_json() == []


def test_read_by_page_and_all(client):
    _post(client, page_index=1, text="one")
    _post(client, page_index=0, text="zero")
    _post(client, page_index=1, row_start=5, row_end=7, text="one again")

    page1 = client.get("/notes?page=1").get_json()
    assert [n["text"] for n in page1] == ["one", "one again"]

    everything = client.get("/notes").get_json()
    assert [n["text"] for n in everything] == ["zero", "one", "one again"]

    assert client.get("/notes?page=9").get_json() == []


@pytest.mark.parametrize("page", ["-1", "abc", "1.5", "", str(2**63)])
def test_read_bad_page_is_400(client, page):
    resp = client.get(f"/notes?page={page}")
    assert resp.status_code == 400
    assert "page" in resp.get_json()["error"]


# ───────────────────────── clear ────────────────────────────────────
def test_delete_clears_outside_production(client):
    _post(client)
    resp = client.delete("/notes")
    assert resp.status_code == 200
    assert client.get("/notes").get_json() == []


def test_delete_forbidden_in_production(client):
    _post(client)
    app.config["ENV_NAME"] = "production"
    assert client.delete("/notes").status_code == 403
    assert len(client.get("/notes").get_json()) == 1


# ───────────────────────── occupancy ────────────────────────────────
def test_occupancy_summary_and_region(client):
    _post(client, page_index=4, text="AB CD EF GH IJ KL", row_start=1, row_end=3, col_start=1, col_end=3)

    resp = client.get("/notes/occupancy?page=4")
    data = resp.get_json()
    assert data["occupied_cells"] == 4
    assert data["total_cells"] == 144
    assert "free" not in data

    busy = client.get("/notes/occupancy?page=4&row_start=2&row_end=4&col_start=2&col_end=4")
    assert busy.get_json()["free"] is False
    free = client.get("/notes/occupancy?page=4&row_start=3&row_end=5&col_start=1&col_end=3")
    assert free.get_json()["free"] is True


def test_occupancy_needs_whole_region(client):
    resp = client.get("/notes/occupancy?page=0&row_start=1")
    assert resp.status_code == 400
    assert client.get("/notes/occupancy").status_code == 400


@pytest.mark.parametrize("region", [
    "row_start=1&row_end=5001&col_start=1&col_end=5001",
    "row_start=0&row_end=2&col_start=1&col_end=3",
    "row_start=1&row_end=18&col_start=1&col_end=3",
    "row_start=1&row_end=2&col_start=1&col_end=11",
    "row_start=3&row_end=3&col_start=1&col_end=3",
    "row_start=-5&row_end=2&col_start=1&col_end=3",
])
def test_occupancy_region_off_grid_is_400(client, region):
    resp = client.get(f"/notes/occupancy?page=0&{region}")
    assert resp.status_code == 400
    assert "grid" in resp.get_json()["error"]


# ───────────────────────── misc ─────────────────────────────────────
def test_unknown_route_is_json_404(client):
    resp = client.get("/does/not/exist")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Not found"}


def test_wrong_method_is_405(client):
    assert client.put("/notes").status_code == 405


def test_security_headers(client):
    resp = client.get("/notes")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"


def test_500_handler_hides_details(client, monkeypatch):
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "list_notes", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/notes")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Internal server error"}
