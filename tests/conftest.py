"""Pytest configuration and shared fixtures."""

import gzip
from typing import Callable, Iterable

import pytest


HEADER = "timestamp,user_id,pixel_color,coordinate"


def make_line(label: str, *, ts: str = "2022-04-04 00:53:51.577 UTC", color: str = "#00CCC0", group: str = '"826,1048"') -> str:
    return f"{ts},{label},{color},{group}"


@pytest.fixture(name="make_line")
def make_line_fixture() -> Callable[..., str]:
    """Return the CSV data-line builder."""
    return make_line


@pytest.fixture
def make_shard() -> Callable[[Iterable[str]], bytes]:
    """Return a builder for gzip shard bytes (header line included)."""

    def _make(lines: Iterable[str], *, header: str = HEADER, newline: str = "\n") -> bytes:
        text = newline.join([header, *lines]) + newline
        return gzip.compress(text.encode("utf-8"))

    return _make


@pytest.fixture
def labels_shard(make_shard) -> Callable[[Iterable[str]], bytes]:
    """Shard bytes with one point event per label."""

    def _make(labels: Iterable[str]) -> bytes:
        return make_shard([make_line(lbl) for lbl in labels])

    return _make
