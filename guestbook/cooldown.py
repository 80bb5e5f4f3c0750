"""
Per-visitor cooldown after a note has been placed.

The backend is a tiny key-value interface (``get`` / ``set`` with a TTL).
In production that is a Redis-compatible REST service (Vercel KV /
Upstash); without one configured there is simply no rate limiting.
"""

from __future__ import annotations

import logging
import threading
from time import monotonic
from urllib.parse import quote

import requests

log = logging.getLogger(__name__)

COOLDOWN_PREFIX = "guestbook:cooldown:"
COOLDOWN_SECONDS = 300


class CooldownError(Exception):
    """The cooldown service could not be reached or rejected the call."""


def cooldown_key(identity: str) -> str:
    return f"{COOLDOWN_PREFIX}{identity}"


class NullCooldown:
    """No service configured: nobody is ever cooling down."""

    def get(self, key: str):
        return None

    def set(self, key: str, value, ttl_seconds: int) -> None:
        return None


class MemoryCooldown:
    """Process-local cooldowns, for development and tests."""

    def __init__(self, clock=monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[object, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str):
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            value, expires = hit
            if self._clock() >= expires:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class KVCooldown:
    """
    Redis-over-HTTP client for the two commands we need.

    ``GET {url}/get/{key}`` answers ``{"result": value-or-null}``;
    ``POST {url}/set/{key}/{value}/EX/{ttl}`` answers ``{"result": "OK"}``.
    """

    def __init__(self, url: str, token: str, *, timeout: float = 2.0, session=None):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _call(self, method: str, *parts) -> dict:
        path = "/".join(quote(str(p), safe="") for p in parts)
        try:
            resp = self.session.request(
                method, f"{self.url}/{path}", timeout=self.timeout
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise CooldownError(f"KV {parts[0]} failed: {exc}") from exc
        if not isinstance(data, dict):
            raise CooldownError(f"KV {parts[0]} failed: unexpected reply {data!r}")
        if "error" in data:
            raise CooldownError(f"KV {parts[0]} failed: {data['error']}")
        return data

    def get(self, key: str):
        return self._call("GET", "get", key).get("result")

    def set(self, key: str, value, ttl_seconds: int) -> None:
        self._call("POST", "set", key, value, "EX", int(ttl_seconds))
