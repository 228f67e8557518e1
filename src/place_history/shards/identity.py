"""Digest -> author label indexes and collision detection.

A collision is any insert where the digest is already mapped to a different
label. Collisions are reported (logged and passed to ``on_collision``) and the
later label wins; they never abort a build or a merge.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from .records import EventRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Collision:
    digest: int
    label: str
    previous_label: str
    shard_index: Optional[int]
    scope: str  # "shard" or "global"


CollisionCallback = Callable[[Collision], None]


def _insert(
    index: Dict[int, str],
    digest: int,
    label: str,
    *,
    shard_index: Optional[int],
    scope: str,
    on_collision: Optional[CollisionCallback],
) -> None:
    old = index.get(digest)
    index[digest] = label
    if old is not None and old != label:
        logger.warning("%s collides with %s", label, old)
        if on_collision is not None:
            on_collision(
                Collision(
                    digest=digest,
                    label=label,
                    previous_label=old,
                    shard_index=shard_index,
                    scope=scope,
                )
            )


def build_identity_index(
    records: Iterable[EventRecord],
    *,
    shard_index: Optional[int] = None,
    on_collision: Optional[CollisionCallback] = None,
) -> Dict[int, str]:
    """Build one shard's digest -> label mapping, in record order."""

    index: Dict[int, str] = {}
    for rec in records:
        _insert(
            index,
            rec.author_digest,
            rec.author_label,
            shard_index=shard_index,
            scope="shard",
            on_collision=on_collision,
        )
    return index


def merge_identity_indexes(
    indexes: Iterable[Dict[int, str]],
    *,
    shard_indices: Optional[Iterable[int]] = None,
    on_collision: Optional[CollisionCallback] = None,
) -> Dict[int, str]:
    """Fold per-shard mappings into a new global mapping, in the given order.

    ``shard_indices`` only labels collision reports; it must line up with
    ``indexes`` when given.
    """

    parts = list(indexes)
    ids = list(shard_indices) if shard_indices is not None else [None] * len(parts)
    if len(ids) != len(parts):
        raise ValueError(f"got {len(parts)} indexes but {len(ids)} shard indices")

    merged: Dict[int, str] = {}
    for shard_index, part in zip(ids, parts):
        for digest, label in part.items():
            _insert(
                merged,
                digest,
                label,
                shard_index=shard_index,
                scope="global",
                on_collision=on_collision,
            )
    return merged
