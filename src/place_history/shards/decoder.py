"""Shard decoder: gzip-compressed CSV bytes -> EventRecord stream.

Line grammar (after the header line, which is always skipped)::

    <YYYY-MM-DD HH:MM:SS[.ffffff]><4-char suffix>,<author label>,#RRGGBB,<group>

where ``<group>`` is ``[x,y]`` / ``[x1,y1,x2,y2]`` or the CSV-quoted form
``"x,y"`` / ``"x1,y1,x2,y2"`` used by the published dataset.

Decoding is all-or-nothing: the first malformed line fails the whole shard.
"""

from __future__ import annotations

import gzip
import io
import re
import zlib
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

from .errors import ShardDeserializeError, ShardIoError
from .records import Digester, EventRecord, Placement, Point, Rectangle, label_digest


TIMESTAMP_SUFFIX_LEN = 4
_TIMESTAMP_FORMATS = ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S")

_COLOR_RE = re.compile(r"#([0-9A-Fa-f]{2})([0-9A-Fa-f]{2})([0-9A-Fa-f]{2})")
_COORD_RE = re.compile(r"[0-9]+")
_U32_MAX = 0xFFFFFFFF

_GROUP_DELIMITERS = {"[": "]", '"': '"'}


def _parse_timestamp(token: str) -> datetime:
    if len(token) <= TIMESTAMP_SUFFIX_LEN:
        raise ValueError(f"timestamp too short: {token!r}")
    stripped = token[:-TIMESTAMP_SUFFIX_LEN]
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(stripped, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise ValueError(f"bad timestamp: {stripped!r}")


def _parse_color(token: str) -> Tuple[int, int, int]:
    m = _COLOR_RE.fullmatch(token)
    if not m:
        raise ValueError(f"bad color: {token!r}")
    r, g, b = (int(p, 16) for p in m.groups())
    return (r, g, b)


def _parse_coord(token: str) -> int:
    if not _COORD_RE.fullmatch(token):
        raise ValueError(f"bad coordinate: {token!r}")
    v = int(token)
    if v > _U32_MAX:
        raise ValueError(f"coordinate out of range: {token!r}")
    return v


def parse_placement(group: str) -> Placement:
    """Dispatch on the number of fields inside the delimited group."""

    if len(group) < 2 or group[0] not in _GROUP_DELIMITERS or group[-1] != _GROUP_DELIMITERS[group[0]]:
        raise ValueError(f"placement is not a delimited group: {group!r}")

    parts = group[1:-1].split(",")
    if len(parts) == 2:
        x, y = (_parse_coord(p) for p in parts)
        return Point(x=x, y=y)
    if len(parts) == 4:
        x1, y1, x2, y2 = (_parse_coord(p) for p in parts)
        return Rectangle(x1=x1, y1=y1, x2=x2, y2=y2)
    raise ValueError(f"placement has {len(parts)} fields (expected 2 or 4)")


def parse_line(line: str, digester: Digester = label_digest) -> EventRecord:
    """Parse one CSV data line. Raises ValueError on any grammar violation."""

    ts_token, sep, rest = line.partition(",")
    if not sep:
        raise ValueError("missing author field")
    timestamp = _parse_timestamp(ts_token)

    label, sep, rest = rest.partition(",")
    if not sep:
        raise ValueError("missing color field")

    color_token, sep, group = rest.partition(",")
    if not sep:
        raise ValueError("missing placement field")
    color = _parse_color(color_token)
    placement = parse_placement(group)

    return EventRecord(
        timestamp=timestamp,
        author_digest=int(digester(label)),
        author_label=label,
        color=color,
        placement=placement,
    )


def iter_lines(raw: bytes, *, shard_index: Optional[int] = None) -> Iterator[str]:
    """Stream the decompressed lines of a shard (newline and trailing CR removed)."""

    try:
        with gzip.GzipFile(fileobj=io.BytesIO(raw), mode="rb") as gz:
            with io.TextIOWrapper(gz, encoding="utf-8", errors="strict", newline="\n") as text:
                for line in text:
                    if line.endswith("\n"):
                        line = line[:-1]
                    if line.endswith("\r"):
                        line = line[:-1]
                    yield line
    except (OSError, EOFError, zlib.error, UnicodeDecodeError) as e:
        raise ShardIoError(f"cannot decompress: {type(e).__name__}: {e}", shard_index=shard_index) from e


def iter_records(
    raw: bytes,
    digester: Digester = label_digest,
    *,
    shard_index: Optional[int] = None,
) -> Iterator[EventRecord]:
    """Lazily decode a shard. The first bad line raises ShardDeserializeError."""

    lines = iter_lines(raw, shard_index=shard_index)
    for lineno, line in enumerate(lines, start=1):
        if lineno == 1:
            continue
        try:
            record = parse_line(line, digester)
        except ValueError as e:
            raise ShardDeserializeError(f"line {lineno}: {e}", shard_index=shard_index) from e
        yield record


def decode_shard(
    raw: bytes,
    digester: Digester = label_digest,
    *,
    shard_index: Optional[int] = None,
) -> List[EventRecord]:
    return list(iter_records(raw, digester, shard_index=shard_index))
