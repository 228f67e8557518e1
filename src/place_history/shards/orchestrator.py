"""Concurrent per-shard pipelines followed by an ordered global fold.

Every shard pipeline (fetch -> decode -> build index) is started before any is
awaited. The global fold only runs once all shard indexes exist and always
walks shards in index order, so collision reports are reproducible.

A failure in any shard fails the run: the remaining pipelines are cancelled
and the original ShardError propagates. There are no partial results.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import aiohttp

from .decoder import iter_records
from .errors import NonexistentShardError
from .fetcher import fetch_shard
from .identity import Collision, build_identity_index, merge_identity_indexes
from .records import TOTAL_SHARDS, Digester, EventRecord, is_valid_shard, label_digest

logger = logging.getLogger(__name__)


@dataclass
class ShardSummary:
    shard_index: int
    records: int = 0
    points: int = 0
    rectangles: int = 0
    labels: int = 0
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None

    def observe(self, rec: EventRecord) -> None:
        self.records += 1
        if rec.placement.kind == "rectangle":
            self.rectangles += 1
        else:
            self.points += 1
        ts = rec.timestamp
        if self.first_timestamp is None or ts < self.first_timestamp:
            self.first_timestamp = ts
        if self.last_timestamp is None or ts > self.last_timestamp:
            self.last_timestamp = ts


@dataclass
class CheckResult:
    labels: Dict[int, str]
    participant_count: int
    collisions: List[Collision] = field(default_factory=list)
    shards: List[ShardSummary] = field(default_factory=list)


ShardOutcome = Tuple[Dict[int, str], ShardSummary, List[Collision]]


def _observed(records: Iterable[EventRecord], summary: ShardSummary) -> Iterator[EventRecord]:
    for rec in records:
        summary.observe(rec)
        yield rec


def index_shard_bytes(raw: bytes, shard_index: int, digester: Digester = label_digest) -> ShardOutcome:
    """Decode one shard's gzip bytes and build its identity index (CPU bound)."""

    summary = ShardSummary(shard_index=shard_index)
    collisions: List[Collision] = []
    records = iter_records(raw, digester, shard_index=shard_index)
    labels = build_identity_index(
        _observed(records, summary),
        shard_index=shard_index,
        on_collision=collisions.append,
    )
    summary.labels = len(labels)
    return labels, summary, collisions


async def check_shard(
    shard_index: int,
    cache_dir: Optional[Path],
    *,
    session: Optional[aiohttp.ClientSession] = None,
    digester: Digester = label_digest,
    url_template: Optional[str] = None,
    timeout_s: Optional[float] = None,
) -> ShardOutcome:
    raw = await fetch_shard(
        shard_index,
        cache_dir,
        session=session,
        url_template=url_template,
        timeout_s=timeout_s,
    )
    logger.info("Unzipping %d.", shard_index)
    outcome = await asyncio.to_thread(index_shard_bytes, raw, shard_index, digester)
    summary = outcome[1]
    logger.info(
        "Finished %d (records=%d points=%d rectangles=%d labels=%d).",
        shard_index,
        summary.records,
        summary.points,
        summary.rectangles,
        summary.labels,
    )
    return outcome


def _resolve_shards(shards: Optional[Sequence[int]]) -> List[int]:
    indices = list(range(TOTAL_SHARDS)) if shards is None else [int(s) for s in shards]
    # Repeated indices would race on the same cache file.
    indices = list(dict.fromkeys(indices))
    for i in indices:
        if not is_valid_shard(i):
            raise NonexistentShardError(
                f"no such shard (valid range is 0..{TOTAL_SHARDS - 1})", shard_index=i
            )
    return indices


async def _gather_all(coros: Sequence) -> list:
    """Run all coroutines concurrently; on the first failure cancel the rest."""

    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def run_check(
    shards: Optional[Sequence[int]] = None,
    cache_dir: Optional[Path] = None,
    *,
    digester: Digester = label_digest,
    url_template: Optional[str] = None,
    timeout_s: Optional[float] = None,
) -> CheckResult:
    """Index every shard concurrently, then fold them in shard order."""

    indices = _resolve_shards(shards)
    logger.info("Checking %d shard(s) (cache_dir=%s)", len(indices), cache_dir)

    async with aiohttp.ClientSession() as session:
        outcomes = await _gather_all(
            [
                check_shard(
                    i,
                    cache_dir,
                    session=session,
                    digester=digester,
                    url_template=url_template,
                    timeout_s=timeout_s,
                )
                for i in indices
            ]
        )

    collisions: List[Collision] = []
    for _, _, shard_collisions in outcomes:
        collisions.extend(shard_collisions)

    merged = merge_identity_indexes(
        [labels for labels, _, _ in outcomes],
        shard_indices=indices,
        on_collision=collisions.append,
    )

    return CheckResult(
        labels=merged,
        participant_count=len(merged),
        collisions=collisions,
        shards=[summary for _, summary, _ in outcomes],
    )


def run_check_sync(
    shards: Optional[Sequence[int]] = None,
    cache_dir: Optional[Path] = None,
    **kwargs,
) -> CheckResult:
    return asyncio.run(run_check(shards, cache_dir, **kwargs))


async def fetch_all(
    shards: Optional[Sequence[int]] = None,
    cache_dir: Optional[Path] = None,
    *,
    url_template: Optional[str] = None,
    timeout_s: Optional[float] = None,
) -> Dict[int, int]:
    """Fetch (and cache) shards without decoding. Returns bytes per shard."""

    indices = _resolve_shards(shards)
    async with aiohttp.ClientSession() as session:
        blobs = await _gather_all(
            [
                fetch_shard(i, cache_dir, session=session, url_template=url_template, timeout_s=timeout_s)
                for i in indices
            ]
        )
    return {i: len(b) for i, b in zip(indices, blobs)}
