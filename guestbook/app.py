#!/usr/bin/env python3
"""
Guestbook service: visitors draw a box on a page of the guestbook grid and
leave a short note inside it.
"""

import ipaddress
import os
from pathlib import Path

import click
from flask import Flask, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

from guestbook.cooldown import (
    COOLDOWN_SECONDS,
    KVCooldown,
    MemoryCooldown,
    NullCooldown,
)
from guestbook.geometry import (
    COL_MAX,
    COL_MIN,
    GRID_CELLS,
    ROW_MAX,
    ROW_MIN,
    OccupancyMap,
)
from guestbook.prng import Mulberry32
from guestbook.stickers import DEFAULT_MANIFEST_KEY, load_sticker_ids
from guestbook.store import (
    PAGE_INDEX_MAX,
    MemoryNoteStore,
    NoteStore,
    SqliteNoteStore,
    StoreError,
    StoreNotConfigured,
)
from guestbook.submit import PlacementConflict, SubmissionError, submit_note

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_ENDPOINT",
)
NOT_CONFIGURED_MSG = "Guestbook storage is not configured"
SEED_TEXTS = (
    "Hi!",
    "Lovely site, thanks for sharing",
    "Greetings from the other side of the planet",
    "Was here",
    "Keep writing, I read every post",
    "The cursor trail is delightful",
    "Hello from a fellow tinkerer",
)


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


_ENV_FILE_VALUES = _read_env_file()


def setting(key: str, default: str = "") -> str:
    """Process env first, then ``.env``, then *default*."""
    return (os.environ.get(key) or _ENV_FILE_VALUES.get(key) or default).strip()


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    DATABASE=setting("DATABASE") or None,
    GUESTBOOK_STORE=setting("GUESTBOOK_STORE").lower(),
    ENV_NAME=setting("GUESTBOOK_ENV", "development").lower(),
    COOLDOWN_BACKEND=setting("COOLDOWN_BACKEND").lower(),
    COOLDOWN_SECONDS=int(setting("COOLDOWN_SECONDS", str(COOLDOWN_SECONDS))),
    KV_REST_API_URL=setting("KV_REST_API_URL"),
    KV_REST_API_TOKEN=setting("KV_REST_API_TOKEN"),
    KV_TIMEOUT=float(setting("KV_TIMEOUT", "2")),
    TRUSTED_IP_HEADER=setting("TRUSTED_IP_HEADER", "X-Vercel-Forwarded-For"),
    STICKER_MANIFEST=setting(
        "STICKER_MANIFEST", str(ROOT.parent / "static" / "stickers" / "manifest.json")
    ),
    STICKER_MANIFEST_KEY=setting("STICKER_MANIFEST_KEY", DEFAULT_MANIFEST_KEY),
    R2={k: setting(k) for k in R2_ENV_KEYS if setting(k)},
)
app.wsgi_app = ProxyFix(
    app.wsgi_app, x_for=int(setting("PROXY_FIX_HOPS", "1")), x_proto=1, x_host=1
)


###############################################################################
# Collaborators
###############################################################################
_stores: dict[tuple, NoteStore] = {}
_cooldowns: dict[tuple, object] = {}


def store_kind() -> str:
    kind = app.config.get("GUESTBOOK_STORE") or ""
    if kind:
        return kind
    return "sqlite" if app.config.get("DATABASE") else "memory"


def get_store() -> NoteStore:
    """The note store picked by configuration; callers never care which."""
    kind = store_kind()
    path = app.config.get("DATABASE")
    key = (kind, path)
    store = _stores.get(key)
    if store is None:
        if kind == "memory":
            store = MemoryNoteStore()
        elif kind == "sqlite":
            store = SqliteNoteStore(path)
        else:
            raise StoreNotConfigured(f"unknown store kind {kind!r}")
        _stores[key] = store
    return store


def get_cooldown():
    backend = app.config.get("COOLDOWN_BACKEND") or ""
    url = app.config.get("KV_REST_API_URL")
    token = app.config.get("KV_REST_API_TOKEN")
    if not backend:
        backend = "kv" if url and token else "off"

    key = (backend, url)
    cd = _cooldowns.get(key)
    if cd is None:
        if backend == "kv" and url and token:
            cd = KVCooldown(url, token, timeout=app.config["KV_TIMEOUT"])
        elif backend == "memory":
            cd = MemoryCooldown()
        else:
            if backend not in ("off", "kv"):
                app.logger.warning(
                    "unknown cooldown backend %r; rate limiting off", backend
                )
            cd = NullCooldown()
        _cooldowns[key] = cd
    return cd


def sticker_pool() -> list[str]:
    return load_sticker_ids(
        app.config.get("STICKER_MANIFEST"),
        r2_cfg=app.config.get("R2"),
        r2_key=app.config.get("STICKER_MANIFEST_KEY", DEFAULT_MANIFEST_KEY),
    )


def is_production() -> bool:
    return app.config.get("ENV_NAME") == "production"


def _normalize_ip(ip: str) -> str:
    try:
        return str(ipaddress.ip_address((ip or "").strip()))
    except ValueError:
        return (ip or "").strip()


def client_identity() -> str:
    """
    Who is submitting, for the cooldown key.

    The proxy-set header wins; otherwise the address ProxyFix resolved.
    A raw client ``X-Forwarded-For`` is never trusted on its own.  Empty
    when neither is available; such requests are not rate limited.
    """
    trusted = request.headers.get(app.config["TRUSTED_IP_HEADER"], "")
    ip = trusted.split(",")[0].strip() if trusted else ""
    return _normalize_ip(ip or request.remote_addr or "")


def _non_negative_int(raw: str | None) -> int | None:
    if raw is None or not raw.strip().isdecimal():
        return None
    value = int(raw.strip())
    return value if value <= PAGE_INDEX_MAX else None


###############################################################################
# Notes API
###############################################################################
@app.route("/notes", methods=["GET"])
@app.route("/api/guestbook/notes", methods=["GET"])
def list_notes():
    raw = request.args.get("page")
    page = _non_negative_int(raw)
    if raw is not None and page is None:
        return {"error": "page must be a non-negative integer"}, 400

    try:
        store = get_store()
        if page is not None:
            notes = store.get_notes_by_page(page)
        else:
            notes = store.get_all_notes()
    except StoreNotConfigured:
        app.logger.error("guestbook store is not configured")
        return {"error": NOT_CONFIGURED_MSG}, 500
    except StoreError:
        app.logger.exception("Failed to fetch guestbook notes")
        return {"error": "Failed to fetch notes"}, 500

    return jsonify([n.to_dict() for n in notes])


@app.route("/notes", methods=["POST"])
@app.route("/api/guestbook/notes", methods=["POST"])
def create_note():
    try:
        note = submit_note(
            request.get_json(force=True, silent=True),
            identity=client_identity(),
            store=get_store(),
            cooldown=get_cooldown(),
            sticker_ids=sticker_pool,
            cooldown_seconds=app.config["COOLDOWN_SECONDS"],
        )
    except SubmissionError as exc:
        return {"error": exc.message}, exc.status
    except StoreNotConfigured:
        app.logger.error("guestbook store is not configured")
        return {"error": NOT_CONFIGURED_MSG}, 500
    except StoreError:
        app.logger.exception("Failed to create guestbook note")
        return {"error": "Failed to create note"}, 500

    return note.to_dict(), 201


@app.route("/notes", methods=["DELETE"])
@app.route("/api/guestbook/notes", methods=["DELETE"])
def clear_notes():
    if is_production():
        return {"error": "Clearing notes is disabled in production"}, 403
    try:
        get_store().clear()
    except StoreNotConfigured:
        return {"error": NOT_CONFIGURED_MSG}, 500
    except StoreError:
        app.logger.exception("Failed to clear guestbook notes")
        return {"error": "Failed to clear notes"}, 500
    return {"cleared": True}


@app.route("/notes/occupancy")
@app.route("/api/guestbook/occupancy")
def occupancy():
    """
    Advisory view of one page: how full it is and, optionally, whether a
    region looks free right now.  Placement may still fail with a 409.
    """
    page = _non_negative_int(request.args.get("page"))
    if page is None:
        return {"error": "page must be a non-negative integer"}, 400

    try:
        notes = get_store().get_notes_by_page(page)
    except StoreNotConfigured:
        return {"error": NOT_CONFIGURED_MSG}, 500
    except StoreError:
        app.logger.exception("Failed to fetch guestbook notes")
        return {"error": "Failed to fetch notes"}, 500

    omap = OccupancyMap(notes)
    out = {
        "page": page,
        "occupied_cells": omap.occupied_cells,
        "total_cells": GRID_CELLS,
        "occupancy": omap.occupancy(),
    }

    region = [
        request.args.get(k, type=int)
        for k in ("row_start", "row_end", "col_start", "col_end")
    ]
    if any(v is not None for v in region):
        if any(v is None for v in region):
            msg = "region needs row_start, row_end, col_start and col_end"
            return {"error": msg}, 400
        r0, r1, c0, c1 = region
        if not (ROW_MIN <= r0 < r1 <= ROW_MAX and COL_MIN <= c0 < c1 <= COL_MAX):
            msg = (
                f"region must lie on the grid (rows {ROW_MIN}-{ROW_MAX}, "
                f"cols {COL_MIN}-{COL_MAX}, end > start)"
            )
            return {"error": msg}, 400
        out["free"] = omap.is_region_free(*region)
    return out


###############################################################################
# Hooks + error pages
###############################################################################
@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Cache-Control": "no-store",
        }
    )
    return resp


@app.errorhandler(404)
def not_found(exc):
    return {"error": "Not found"}, 404


@app.errorhandler(405)
def method_not_allowed(exc):
    return {"error": "Method not allowed"}, 405


@app.errorhandler(500)
def internal_error(exc):
    # the traceback has already been logged by Flask
    return {"error": "Internal server error"}, 500


###############################################################################
# CLI
###############################################################################
@app.cli.command("init-db")
def cli_init_db():
    """Create the SQLite schema (no-op if already there)."""
    path = app.config.get("DATABASE")
    if not path:
        raise click.ClickException("DATABASE is not set.")
    SqliteNoteStore(path).init_schema()
    click.secho(f"✅  Schema ready in {path}", fg="green")


@app.cli.command("clear-notes")
@click.confirmation_option(prompt="Delete every guestbook note?")
def cli_clear_notes():
    """Delete every note in the configured store."""
    if is_production():
        raise click.ClickException("Refusing to clear notes in production.")
    try:
        get_store().clear()
    except StoreError as exc:
        raise click.ClickException(f"Could not clear notes: {exc}")
    click.echo("Notes cleared.")


@app.cli.command("list-notes")
@click.option("--page", type=click.IntRange(min=0), default=None)
def cli_list_notes(page):
    """Print notes, one per line."""
    try:
        store = get_store()
        if page is not None:
            notes = store.get_notes_by_page(page)
        else:
            notes = store.get_all_notes()
    except StoreError as exc:
        raise click.ClickException(f"Could not read notes: {exc}")
    for n in notes:
        click.echo(
            f"p{n.page_index} r{n.row_start}-{n.row_end} c{n.col_start}-{n.col_end} "
            f"{n.author}: {n.text}"
        )
    click.echo(f"{len(notes)} note(s)")


@app.cli.command("seed-notes")
@click.option("--page", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--count", type=click.IntRange(min=1), default=8, show_default=True)
@click.option("--seed", type=int, default=1, show_default=True)
def cli_seed_notes(page, count, seed):
    """Scatter sample notes on a page (same seed, same layout)."""
    if is_production():
        raise click.ClickException("Refusing to seed notes in production.")

    store = get_store()
    rng = Mulberry32(seed)
    omap = OccupancyMap(store.get_notes_by_page(page))
    placed = 0
    for _ in range(count * 20):
        if placed >= count:
            break
        rows = 1 + rng.next_int(3)
        cols = 2 + rng.next_int(3)
        r0 = ROW_MIN + rng.next_int(ROW_MAX - ROW_MIN - rows + 1)
        c0 = COL_MIN + rng.next_int(COL_MAX - COL_MIN - cols + 1)
        if not omap.is_region_free(r0, r0 + rows, c0, c0 + cols):
            continue
        body = {
            "text": SEED_TEXTS[rng.next_int(len(SEED_TEXTS))],
            "author": f"guest {placed + 1}",
            "page_index": page,
            "row_start": r0,
            "row_end": r0 + rows,
            "col_start": c0,
            "col_end": c0 + cols,
        }
        try:
            note = submit_note(
                body,
                identity="seed",
                store=store,
                cooldown=NullCooldown(),
                sticker_ids=sticker_pool,
            )
        except PlacementConflict:
            continue
        omap.add_note(note)
        placed += 1

    click.echo(f"Placed {placed} note(s) on page {page}.")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
