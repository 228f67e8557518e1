"""Typed records produced by the shard decoder."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Tuple, Union


# Number of published canvas history shards. Never mutated at runtime.
TOTAL_SHARDS = 78


Digester = Callable[[str], int]


def label_digest(label: str) -> int:
    """Return a deterministic unsigned 64-bit digest of an author label.

    Uses the first 8 bytes of BLAKE2b. The builtin ``hash()`` is salted per
    process and would make digests differ between runs.
    """

    h = hashlib.blake2b(label.encode("utf-8"), digest_size=8)
    return int.from_bytes(h.digest(), "big")


@dataclass(frozen=True)
class Point:
    kind = "point"

    x: int
    y: int


@dataclass(frozen=True)
class Rectangle:
    kind = "rectangle"

    x1: int
    y1: int
    x2: int
    y2: int


Placement = Union[Point, Rectangle]


@dataclass(frozen=True)
class EventRecord:
    """One parsed canvas event.

    ``author_label`` is kept next to ``author_digest`` so identity checks can
    compare the original strings when two digests match.
    """

    timestamp: datetime
    author_digest: int
    author_label: str
    color: Tuple[int, int, int]
    placement: Placement


def is_valid_shard(index: int) -> bool:
    return 0 <= int(index) < TOTAL_SHARDS
