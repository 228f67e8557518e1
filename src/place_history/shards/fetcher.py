"""Shard fetcher: local cache first, then the public placedata endpoint.

Cache layout is one file per shard (``canvas_NN.csv.gzip``) holding the exact
gzip bytes received from the network.

Environment:
  PLACE_HISTORY_CACHE_DIR       cache directory ('' disables caching)
  PLACE_HISTORY_URL_TEMPLATE    shard URL template with an ``{index}`` field
  PLACE_HISTORY_HTTP_TIMEOUT_S  total per-request timeout (0 disables)
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, Optional

import aiohttp

from .errors import NonexistentShardError, ShardIoError, ShardNetworkError
from .records import TOTAL_SHARDS, is_valid_shard

logger = logging.getLogger(__name__)


DEFAULT_URL_TEMPLATE = (
    "https://placedata.reddit.com/data/canvas-history/"
    "2022_place_canvas_history-{index:012d}.csv.gzip"
)
DEFAULT_HTTP_TIMEOUT_S = 900.0


def default_cache_dir() -> Optional[Path]:
    """Return the shard cache dir, or None when caching is disabled.

    Disable by setting env var PLACE_HISTORY_CACHE_DIR='' (empty).
    """

    env = os.environ.get("PLACE_HISTORY_CACHE_DIR")
    if env is not None and str(env).strip() == "":
        return None
    if env:
        return Path(env).expanduser()
    return Path("cache")


def default_url_template() -> str:
    return (os.environ.get("PLACE_HISTORY_URL_TEMPLATE") or "").strip() or DEFAULT_URL_TEMPLATE


def default_http_timeout_s() -> Optional[float]:
    raw = (os.environ.get("PLACE_HISTORY_HTTP_TIMEOUT_S") or "").strip()
    try:
        v = float(raw) if raw else DEFAULT_HTTP_TIMEOUT_S
    except ValueError:
        v = DEFAULT_HTTP_TIMEOUT_S
    return v if v > 0 else None


def shard_url(index: int, template: Optional[str] = None) -> str:
    return (template or default_url_template()).format(index=int(index))


def shard_cache_path(cache_dir: Path, index: int) -> Path:
    return Path(cache_dir) / f"canvas_{int(index):02d}.csv.gzip"


def _check_index(index: int) -> None:
    if not is_valid_shard(index):
        raise NonexistentShardError(
            f"no such shard (valid range is 0..{TOTAL_SHARDS - 1})", shard_index=int(index)
        )


async def _download_shard(
    url: str,
    *,
    session: aiohttp.ClientSession,
    timeout_s: Optional[float],
) -> bytes:
    timeout = aiohttp.ClientTimeout(total=timeout_s)
    async with session.get(url, timeout=timeout) as resp:
        resp.raise_for_status()
        return await resp.read()


async def download_shard(
    index: int,
    *,
    session: Optional[aiohttp.ClientSession] = None,
    url_template: Optional[str] = None,
    timeout_s: Optional[float] = None,
) -> bytes:
    """Download one shard. No retries: a failed request fails the shard."""

    _check_index(index)
    url = shard_url(index, url_template)
    try:
        if session is None:
            async with aiohttp.ClientSession() as own_session:
                return await _download_shard(url, session=own_session, timeout_s=timeout_s)
        return await _download_shard(url, session=session, timeout_s=timeout_s)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise ShardNetworkError(f"download failed: {type(e).__name__}: {e}", shard_index=index) from e


def _write_cache_file(path: Path, content: bytes) -> None:
    tmp = path.with_suffix(path.suffix + ".part")
    with tmp.open("wb") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    tmp.replace(path)


async def fetch_shard(
    index: int,
    cache_dir: Optional[Path] = None,
    *,
    session: Optional[aiohttp.ClientSession] = None,
    url_template: Optional[str] = None,
    timeout_s: Optional[float] = None,
) -> bytes:
    """Return the raw gzip bytes for shard ``index``.

    With a cache dir, a cached file is returned without network access. A
    missing file is downloaded and persisted before returning. Any other local
    I/O failure raises ShardIoError without trying the network.
    """

    _check_index(index)

    if cache_dir is None:
        logger.info("Downloading %d.", index)
        return await download_shard(index, session=session, url_template=url_template, timeout_s=timeout_s)

    cache_dir = Path(cache_dir)
    try:
        cache_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ShardIoError(f"cannot create cache dir {cache_dir}: {e}", shard_index=index) from e

    path = shard_cache_path(cache_dir, index)
    logger.info("Trying to load file %d.", index)
    try:
        data = await asyncio.to_thread(path.read_bytes)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise ShardIoError(f"cannot read cache file {path}: {e}", shard_index=index) from e
    else:
        logger.info("Loaded file %d.", index)
        return data

    logger.info("File %d not found, downloading.", index)
    content = await download_shard(index, session=session, url_template=url_template, timeout_s=timeout_s)
    logger.info("Content downloaded, saving into file %d.", index)
    try:
        await asyncio.to_thread(_write_cache_file, path, content)
    except OSError as e:
        raise ShardIoError(f"cannot write cache file {path}: {e}", shard_index=index) from e
    logger.info("Cache saved for %d.", index)
    return content


def cache_status(cache_dir: Path, shards: Optional[Iterable[int]] = None) -> Dict[str, object]:
    """Summarize which shard files exist in ``cache_dir``."""

    cache_dir = Path(cache_dir)
    indices = list(range(TOTAL_SHARDS)) if shards is None else [int(i) for i in shards]
    present: Dict[int, int] = {}
    missing = []
    for i in indices:
        p = shard_cache_path(cache_dir, i)
        if p.is_file():
            present[i] = int(p.stat().st_size)
        else:
            missing.append(i)

    return {
        "path": str(cache_dir),
        "exists": cache_dir.is_dir(),
        "cached": len(present),
        "missing": missing,
        "bytes": sum(present.values()),
        "files": {str(i): n for i, n in present.items()},
    }
