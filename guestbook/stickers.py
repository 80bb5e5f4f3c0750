"""
Sticker manifest: the pool of decoration ids that may cover a flagged word.

The manifest looks like ``{"stickers": [{"id", "src", "width", "height"}]}``
and lives either next to the site (``static/stickers/manifest.json``) or in
the R2 bucket that also hosts the sticker images.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

log = logging.getLogger(__name__)

R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
DEFAULT_MANIFEST_KEY = "stickers/manifest.json"

_cache: dict[str, list[str]] = {}


def r2_is_configured(cfg: dict[str, str] | None) -> bool:
    return bool(cfg) and all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def parse_manifest(raw: str | bytes) -> list[str]:
    data = json.loads(raw)
    return [str(s["id"]) for s in data.get("stickers", [])]


def _read_manifest(path: Path | None, r2_cfg, r2_key: str) -> str | bytes | None:
    if path is not None and path.is_file():
        return path.read_text(encoding="utf-8")
    if r2_is_configured(r2_cfg):
        obj = _r2_client(r2_cfg).get_object(Bucket=r2_cfg["R2_BUCKET"], Key=r2_key)
        return obj["Body"].read()
    return None


def load_sticker_ids(
    path: str | Path | None,
    *,
    r2_cfg: dict[str, str] | None = None,
    r2_key: str = DEFAULT_MANIFEST_KEY,
) -> list[str]:
    """
    Return the sticker ids from the manifest, or ``[]`` if it can't be had.

    Successful loads are cached for the life of the process.
    """
    path = Path(path) if path else None
    cache_key = f"{path}|{r2_key}"
    if cache_key in _cache:
        return list(_cache[cache_key])

    try:
        raw = _read_manifest(path, r2_cfg, r2_key)
        if raw is None:
            log.warning("sticker manifest not found; using an empty pool")
            return []
        ids = parse_manifest(raw)
    except (OSError, ValueError, KeyError, TypeError, BotoCoreError, ClientError):
        log.warning("sticker manifest unreadable; using an empty pool", exc_info=True)
        return []

    _cache[cache_key] = ids
    return list(ids)


def clear_cache() -> None:
    _cache.clear()
