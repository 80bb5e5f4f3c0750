"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

from guestbook import app as app_module
from guestbook import stickers
from guestbook.app import app


@pytest.fixture(scope="session", autouse=True)
def _configure_app(tmp_path_factory: pytest.TempPathFactory) -> None:
    """
    Configure the Flask app *once*: in-memory notes, no cooldowns, no
    sticker manifest.  Tests that need more flip the config themselves.
    """
    missing = tmp_path_factory.mktemp("assets") / "manifest.json"
    app.config.update(
        TESTING=True,
        DATABASE=None,
        GUESTBOOK_STORE="memory",
        ENV_NAME="test",
        COOLDOWN_BACKEND="off",
        KV_REST_API_URL="",
        KV_REST_API_TOKEN="",
        STICKER_MANIFEST=str(missing),
        R2={},
    )


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch guestbook.store.utc_now for the whole session so every call
    returns an ever-increasing timestamp.
    """
    from guestbook import store

    counter = itertools.count()
    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(store, "utc_now", _fake_now)
    yield
    mp.undo()


@pytest.fixture(autouse=True)
def _fresh_state():
    """Every test starts with an empty book, no cooldowns and no cached manifest."""
    saved = dict(app.config)
    app_module._stores.clear()
    app_module._cooldowns.clear()
    stickers.clear_cache()
    yield
    app.config.clear()
    app.config.update(saved)
    app_module._stores.clear()
    app_module._cooldowns.clear()
    stickers.clear_cache()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def sqlite_path(tmp_path: Path) -> str:
    return str(tmp_path / "guestbook.sqlite3")
