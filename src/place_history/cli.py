"""Unified place-history CLI (application layer).

Examples:
    python -m place_history.cli --help
    place-history check --cache-dir cache
    place-history check --shards 0 1 --export state/participants.parquet
    place-history fetch --shards 0 1 2
    place-history cache
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from place_history.shards import fetcher, orchestrator
from place_history.shards.errors import ShardError
from place_history.shards.export import export_identity_index
from place_history.shards.records import TOTAL_SHARDS

logger = logging.getLogger("place_history")


def _cache_dir(ns: argparse.Namespace) -> Optional[Path]:
    if getattr(ns, "no_cache", False):
        return None
    if ns.cache_dir:
        return Path(ns.cache_dir).expanduser()
    return fetcher.default_cache_dir()


def _timeout_s(ns: argparse.Namespace) -> Optional[float]:
    if ns.timeout_s is None:
        return fetcher.default_http_timeout_s()
    return float(ns.timeout_s) if float(ns.timeout_s) > 0 else None


def _cmd_check(ns: argparse.Namespace) -> int:
    try:
        res = orchestrator.run_check_sync(
            ns.shards,
            _cache_dir(ns),
            url_template=ns.url_template,
            timeout_s=_timeout_s(ns),
        )
    except ShardError as e:
        logger.error("Check failed: %s", e)
        return 1

    if ns.export:
        try:
            export_identity_index(res.labels, Path(ns.export))
        except OSError as e:
            logger.error("Export failed: %s", e)
            return 1

    if res.collisions:
        logger.warning("%d collision(s) detected", len(res.collisions))
    sys.stdout.write(f"{res.participant_count} users participated\n")
    return 0


def _cmd_fetch(ns: argparse.Namespace) -> int:
    cache_dir = _cache_dir(ns)
    if cache_dir is None:
        logger.error("Caching is disabled; nothing to fetch into")
        return 2
    try:
        sizes = asyncio.run(
            orchestrator.fetch_all(
                ns.shards,
                cache_dir,
                url_template=ns.url_template,
                timeout_s=_timeout_s(ns),
            )
        )
    except ShardError as e:
        logger.error("Fetch failed: %s", e)
        return 1

    sys.stdout.write(json.dumps({"cache_dir": str(cache_dir), "shards": len(sizes), "bytes": sum(sizes.values())}) + "\n")
    return 0


def _cmd_cache(ns: argparse.Namespace) -> int:
    cache_dir = _cache_dir(ns)
    if cache_dir is None:
        sys.stdout.write(json.dumps({"disabled": True}) + "\n")
        return 0
    sys.stdout.write(json.dumps(fetcher.cache_status(cache_dir, ns.shards), ensure_ascii=False) + "\n")
    return 0


def _add_source_args(ap: argparse.ArgumentParser, *, allow_no_cache: bool) -> None:
    cache_group = ap.add_mutually_exclusive_group()
    cache_group.add_argument(
        "--cache-dir",
        default=None,
        help="Shard cache directory (default: ./cache; disable via env PLACE_HISTORY_CACHE_DIR='')",
    )
    if allow_no_cache:
        cache_group.add_argument("--no-cache", action="store_true", default=False, help="Always download, never cache")
    ap.add_argument(
        "--shards",
        type=int,
        nargs="+",
        default=None,
        help=f"Shard indices to process (default: all {TOTAL_SHARDS})",
    )


def _add_network_args(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("--url-template", default=None, help="Shard URL template with an {index} field")
    ap.add_argument(
        "--timeout-s",
        type=float,
        default=None,
        help="Per-request download timeout in seconds, 0 disables (default: env PLACE_HISTORY_HTTP_TIMEOUT_S or 900)",
    )


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        prog="place-history",
        description="Fetch, cache and decode the r/place 2022 canvas history and check author-digest collisions",
    )
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_check = sub.add_parser("check", help="Index all shards and report digest collisions and participant count")
    _add_source_args(ap_check, allow_no_cache=True)
    _add_network_args(ap_check)
    ap_check.add_argument("--export", default=None, help="Write the digest -> label mapping to this Parquet file")
    ap_check.set_defaults(func=_cmd_check)

    ap_fetch = sub.add_parser("fetch", help="Download shards into the cache without decoding")
    _add_source_args(ap_fetch, allow_no_cache=False)
    _add_network_args(ap_fetch)
    ap_fetch.set_defaults(func=_cmd_fetch)

    ap_cache = sub.add_parser("cache", help="Show which shards are cached")
    _add_source_args(ap_cache, allow_no_cache=False)
    ap_cache.set_defaults(func=_cmd_cache)

    ns = ap.parse_args(argv)
    logging.basicConfig(level=getattr(logging, ns.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    return int(ns.func(ns))


if __name__ == "__main__":
    raise SystemExit(main())
