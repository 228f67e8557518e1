from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from aiohttp import test_utils, web

from place_history.shards import fetcher
from place_history.shards.errors import NonexistentShardError, ShardIoError, ShardNetworkError


class _FakeDownloads:
    def __init__(self, payload: bytes = b"\x1f\x8bpayload"):
        self.calls: list[str] = []
        self._payload = payload

    async def __call__(self, url, *, session, timeout_s):
        self.calls.append(url)
        return self._payload


async def _no_network(url, *, session, timeout_s):
    raise AssertionError(f"unexpected network access: {url}")


def test_shard_url_and_cache_name() -> None:
    assert fetcher.shard_url(5, fetcher.DEFAULT_URL_TEMPLATE).endswith(
        "/2022_place_canvas_history-000000000005.csv.gzip"
    )
    assert fetcher.shard_cache_path(Path("c"), 5) == Path("c") / "canvas_05.csv.gzip"
    assert fetcher.shard_cache_path(Path("c"), 77).name == "canvas_77.csv.gzip"


@pytest.mark.parametrize("index", [-1, 78, 1000])
def test_out_of_range_fails_before_io(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, index: int) -> None:
    monkeypatch.setattr(fetcher, "_download_shard", _no_network)
    cache = tmp_path / "cache"

    with pytest.raises(NonexistentShardError):
        asyncio.run(fetcher.fetch_shard(index, cache))

    assert not cache.exists()


def test_cache_round_trip(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeDownloads()
    monkeypatch.setattr(fetcher, "_download_shard", fake)
    cache = tmp_path / "nested" / "cache"

    first = asyncio.run(fetcher.fetch_shard(3, cache))
    second = asyncio.run(fetcher.fetch_shard(3, cache))

    assert first == second == b"\x1f\x8bpayload"
    assert len(fake.calls) == 1
    assert fake.calls[0].endswith("000000000003.csv.gzip")
    assert (cache / "canvas_03.csv.gzip").read_bytes() == first
    assert not list(cache.glob("*.part"))


def test_cached_file_is_used_without_network(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(fetcher, "_download_shard", _no_network)
    fetcher.shard_cache_path(tmp_path, 0).write_bytes(b"cached")

    assert asyncio.run(fetcher.fetch_shard(0, tmp_path)) == b"cached"


def test_existing_cache_dir_is_fine(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(fetcher, "_download_shard", _FakeDownloads(b"x"))
    tmp_path.mkdir(exist_ok=True)

    assert asyncio.run(fetcher.fetch_shard(1, tmp_path)) == b"x"


def test_without_cache_always_downloads(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeDownloads()
    monkeypatch.setattr(fetcher, "_download_shard", fake)

    asyncio.run(fetcher.fetch_shard(2))
    asyncio.run(fetcher.fetch_shard(2))

    assert len(fake.calls) == 2


def test_unreadable_cache_entry_is_io_error_without_network(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(fetcher, "_download_shard", _no_network)
    # A directory where the cache file should be cannot be read as bytes.
    fetcher.shard_cache_path(tmp_path, 4).mkdir()

    with pytest.raises(ShardIoError) as ei:
        asyncio.run(fetcher.fetch_shard(4, tmp_path))
    assert ei.value.shard_index == 4


def test_cache_dir_that_is_a_file_is_io_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(fetcher, "_download_shard", _no_network)
    blocker = tmp_path / "cache"
    blocker.write_text("not a dir", encoding="utf-8")

    with pytest.raises(ShardIoError):
        asyncio.run(fetcher.fetch_shard(0, blocker))


def _shard_app(payloads: dict[int, bytes]) -> web.Application:
    async def handler(request: web.Request) -> web.Response:
        index = int(request.match_info["index"])
        if index not in payloads:
            raise web.HTTPNotFound()
        return web.Response(body=payloads[index])

    app = web.Application()
    app.router.add_get("/shard-{index}.csv.gzip", handler)
    return app


def test_download_over_http(tmp_path: Path) -> None:
    async def scenario() -> tuple[bytes, bytes]:
        async with test_utils.TestServer(_shard_app({7: b"seven"})) as server:
            template = f"http://{server.host}:{server.port}/shard-" + "{index:03d}.csv.gzip"
            got = await fetcher.fetch_shard(7, tmp_path, url_template=template, timeout_s=10)
            again = await fetcher.fetch_shard(7, tmp_path, url_template=template, timeout_s=10)
            return got, again

    got, again = asyncio.run(scenario())
    assert got == again == b"seven"
    assert fetcher.shard_cache_path(tmp_path, 7).read_bytes() == b"seven"


def test_http_error_status_is_network_error(tmp_path: Path) -> None:
    async def scenario() -> None:
        async with test_utils.TestServer(_shard_app({})) as server:
            template = f"http://{server.host}:{server.port}/shard-" + "{index:03d}.csv.gzip"
            await fetcher.fetch_shard(7, tmp_path, url_template=template, timeout_s=10)

    with pytest.raises(ShardNetworkError) as ei:
        asyncio.run(scenario())

    assert ei.value.shard_index == 7
    assert not fetcher.shard_cache_path(tmp_path, 7).exists()


def test_url_template_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PLACE_HISTORY_URL_TEMPLATE", "http://mirror.test/{index:04d}.gz")
    assert fetcher.shard_url(12) == "http://mirror.test/0012.gz"


def test_default_cache_dir_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("PLACE_HISTORY_CACHE_DIR", raising=False)
    assert fetcher.default_cache_dir() == Path("cache")

    monkeypatch.setenv("PLACE_HISTORY_CACHE_DIR", str(tmp_path))
    assert fetcher.default_cache_dir() == tmp_path

    monkeypatch.setenv("PLACE_HISTORY_CACHE_DIR", "")
    assert fetcher.default_cache_dir() is None


@pytest.mark.parametrize("raw,expected", [("", 900.0), ("12.5", 12.5), ("0", None), ("junk", 900.0)])
def test_default_http_timeout_env(monkeypatch: pytest.MonkeyPatch, raw: str, expected) -> None:
    monkeypatch.setenv("PLACE_HISTORY_HTTP_TIMEOUT_S", raw)
    assert fetcher.default_http_timeout_s() == expected


def test_cache_status(tmp_path: Path) -> None:
    fetcher.shard_cache_path(tmp_path, 0).write_bytes(b"abc")
    fetcher.shard_cache_path(tmp_path, 2).write_bytes(b"de")

    st = fetcher.cache_status(tmp_path, [0, 1, 2])

    assert st["cached"] == 2
    assert st["missing"] == [1]
    assert st["bytes"] == 5
    assert st["files"] == {"0": 3, "2": 2}


def test_download_timeout_is_network_error(tmp_path: Path) -> None:
    async def slow(request: web.Request) -> web.Response:
        await asyncio.sleep(2)
        return web.Response(body=b"late")

    app = web.Application()
    app.router.add_get("/shard-{index}.csv.gzip", slow)

    async def scenario() -> None:
        async with test_utils.TestServer(app) as server:
            template = f"http://{server.host}:{server.port}/shard-" + "{index:03d}.csv.gzip"
            await fetcher.fetch_shard(9, tmp_path, url_template=template, timeout_s=0.1)

    with pytest.raises(ShardNetworkError) as ei:
        asyncio.run(scenario())

    assert ei.value.shard_index == 9
    assert not fetcher.shard_cache_path(tmp_path, 9).exists()
    assert not list(tmp_path.glob("*.part"))
