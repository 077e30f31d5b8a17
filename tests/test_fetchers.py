import asyncio
import json
from dataclasses import replace

import httpx
import pytest

from extensions.logging import EventSink
from titlefinder.config import load_config
from titlefinder.fetchers import (
    CategoryLookup,
    DirectFetcher,
    ProxyFetcher,
    ReaderFetcher,
    reader_backoff_seconds,
)
from titlefinder.utils import (
    InvalidURLError,
    NonRetryableHTTPError,
    RateLimitedError,
    TransientHTTPError,
    httpx_client,
)


def _cfg(**overrides):
    return replace(load_config(), **overrides)


def _client(cfg, handler):
    return httpx_client(cfg, transport=httpx.MockTransport(handler))


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


# ---------------- direct / proxy ----------------

@pytest.mark.asyncio
async def test_direct_fetch_sends_marketplace_headers():
    seen = {}

    def handler(request: httpx.Request):
        seen["al"] = request.headers.get("accept-language")
        seen["referer"] = request.headers.get("referer")
        seen["ua"] = request.headers.get("user-agent")
        return httpx.Response(200, text="<html><h1>Hi</h1></html>")

    cfg = _cfg(user_agent="pytest-UA")
    async with _client(cfg, handler) as client:
        out = await DirectFetcher(client, cfg).fetch("https://www.coupang.com/np/best")

    assert out.ok
    assert out.strategy == "direct"
    assert out.status_code == 200
    assert seen["al"].startswith("ko-KR")
    assert seen["referer"] == "https://www.coupang.com/"
    assert seen["ua"] == "pytest-UA"


@pytest.mark.asyncio
async def test_direct_fetch_http_error_and_empty_body():
    responses = iter([httpx.Response(403, text="denied"), httpx.Response(200, text="   ")])

    cfg = _cfg()
    async with _client(cfg, lambda request: next(responses)) as client:
        fetcher = DirectFetcher(client, cfg)
        blocked = await fetcher.fetch("https://shop.test/a")
        empty = await fetcher.fetch("https://shop.test/a")

    assert blocked.status == "error" and blocked.status_code == 403
    assert not blocked.ok
    assert empty.status == "empty" and not empty.ok


@pytest.mark.asyncio
async def test_direct_fetch_timeout_becomes_outcome():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, text="late")

    cfg = _cfg()
    async with _client(cfg, handler) as client:
        out = await DirectFetcher(client, cfg).fetch("https://shop.test/slow", timeout_ms=50)

    assert out.status == "timeout"
    assert out.payload == ""


@pytest.mark.asyncio
async def test_direct_fetch_network_error_becomes_outcome():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    cfg = _cfg()
    async with _client(cfg, handler) as client:
        out = await DirectFetcher(client, cfg).fetch("https://shop.test/")
    assert out.status == "error"
    assert "refused" in out.error


@pytest.mark.asyncio
async def test_direct_fetch_rejects_empty_url():
    cfg = _cfg()
    async with _client(cfg, lambda r: httpx.Response(200)) as client:
        with pytest.raises(InvalidURLError):
            await DirectFetcher(client, cfg).fetch("")


@pytest.mark.asyncio
async def test_proxy_fetch_calls_endpoint_with_url_and_language():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, text="<title>Proxied</title>")

    cfg = _cfg(proxy_origin="http://localhost:5174")
    async with _client(cfg, handler) as client:
        proxy = ProxyFetcher(client, cfg)
        assert proxy.enabled
        out = await proxy.fetch("https://www.trendyol.com/sirali-urunler?type=bestSeller")

    assert out.ok
    assert seen["url"].startswith("http://localhost:5174/proxy-fetch?")
    assert seen["params"]["url"] == "https://www.trendyol.com/sirali-urunler?type=bestSeller"
    assert seen["params"]["al"].startswith("tr-TR")


@pytest.mark.asyncio
async def test_proxy_disabled_without_origin():
    cfg = _cfg(proxy_origin=None)
    async with _client(cfg, lambda r: httpx.Response(500)) as client:
        proxy = ProxyFetcher(client, cfg)
        out = await proxy.fetch("https://shop.test/")
    assert not proxy.enabled
    assert out.status == "empty"
    assert out.attempts == 0


# ---------------- reader ----------------

def test_reader_url_encodes_target_and_adds_language_marker():
    cfg = _cfg(reader_base_url="https://reader.test/")
    reader = ReaderFetcher(None, cfg)
    assert reader.reader_url("https://shop.test/a b?x=1") == "https://reader.test/https://shop.test/a%20b?x=1"
    assert reader.reader_url("https://shop.test/p?x=1", "ko-KR,ko;q=0.9") == \
        "https://reader.test/https://shop.test/p?x=1&__lang=ko-KR"


def test_reader_backoff_policy():
    cfg = _cfg()
    zero = lambda: 0.0  # noqa: E731
    assert reader_backoff_seconds(RateLimitedError("x", retry_after=5), 1, cfg, zero) == pytest.approx(5.0)
    assert reader_backoff_seconds(RateLimitedError("x", retry_after=0.1), 1, cfg, zero) == pytest.approx(1.5)
    assert reader_backoff_seconds(RateLimitedError("x", retry_after=600), 1, cfg, zero) == pytest.approx(15.0)
    assert reader_backoff_seconds(RateLimitedError("x"), 1, cfg, zero) == pytest.approx(2.0)
    assert reader_backoff_seconds(TransientHTTPError("x", status=503), 2, cfg, zero) == pytest.approx(1.2)
    assert reader_backoff_seconds(TransientHTTPError("net"), 2, cfg, zero) == pytest.approx(1.4)
    # jitter is bounded by the configured window
    assert reader_backoff_seconds(RateLimitedError("x", retry_after=5), 1, cfg, lambda: 1.0) == pytest.approx(5.4)


@pytest.mark.asyncio
async def test_reader_honours_rate_limit_hint_then_succeeds():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, text=json.dumps({"retryAfter": 5}))
        return httpx.Response(200, text="<title>Read</title>")

    cfg = _cfg()
    sleep = SleepRecorder()
    sink = EventSink(100)
    async with _client(cfg, handler) as client:
        reader = ReaderFetcher(client, cfg, sink=sink, sleep=sleep, rng=lambda: 0.5)
        text = await reader.read("https://shop.test/")

    assert text == "<title>Read</title>"
    assert calls["n"] == 2
    assert len(sleep.delays) == 1
    assert 1.5 <= sleep.delays[0] <= 15.0 + 0.4
    assert sleep.delays[0] == pytest.approx(5.2)
    events = [e["event"] for e in sink.entries()]
    assert events == ["reader:request", "reader:rate-limit", "reader:request", "reader:success"]


@pytest.mark.asyncio
async def test_reader_gives_up_after_three_server_errors():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(503, text="unavailable")

    cfg = _cfg()
    sleep = SleepRecorder()
    sink = EventSink(100)
    async with _client(cfg, handler) as client:
        reader = ReaderFetcher(client, cfg, sink=sink, sleep=sleep, rng=lambda: 0.0)
        with pytest.raises(TransientHTTPError) as ei:
            await reader.read("https://shop.test/")

    assert ei.value.status == 503
    assert calls["n"] == 3
    assert sleep.delays == [pytest.approx(0.6), pytest.approx(1.2)]
    last = sink.entries()[-1]
    assert last["event"] == "reader:error"
    assert last["level"] == "error"
    assert last["data"]["attempts"] == 3


@pytest.mark.asyncio
async def test_reader_does_not_retry_client_errors():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(404, text="missing")

    cfg = _cfg()
    async with _client(cfg, handler) as client:
        reader = ReaderFetcher(client, cfg, sleep=SleepRecorder())
        with pytest.raises(NonRetryableHTTPError):
            await reader.read("https://shop.test/")
        out = await reader.fetch("https://shop.test/")

    assert calls["n"] == 2
    assert out.status == "error"
    assert out.status_code == 404
    assert out.attempts == 1


@pytest.mark.asyncio
async def test_reader_retries_network_errors():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] < 3:
            raise httpx.ReadError("reset", request=request)
        return httpx.Response(200, text="ok body")

    cfg = _cfg()
    sleep = SleepRecorder()
    sink = EventSink(100)
    async with _client(cfg, handler) as client:
        out = await ReaderFetcher(client, cfg, sink=sink, sleep=sleep, rng=lambda: 0.0).fetch("https://shop.test/")

    assert out.ok and out.attempts == 3
    assert sleep.delays == [pytest.approx(0.7), pytest.approx(1.4)]
    assert [e["event"] for e in sink.entries()].count("reader:network-retry") == 2


@pytest.mark.asyncio
async def test_reader_cancellation_is_not_retried():
    calls = {"n": 0}
    started = asyncio.Event()

    async def handler(request):
        calls["n"] += 1
        started.set()
        await asyncio.Event().wait()

    cfg = _cfg()
    sleep = SleepRecorder()
    async with _client(cfg, handler) as client:
        reader = ReaderFetcher(client, cfg, sleep=sleep)
        task = asyncio.create_task(reader.read("https://shop.test/"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert calls["n"] == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_reader_fetch_sends_markdown_header_variant():
    seen = {}

    def handler(request):
        seen["respond"] = request.headers.get("x-respond-with")
        seen["al"] = request.headers.get("accept-language")
        return httpx.Response(200, text="# Title")

    cfg = _cfg()
    async with _client(cfg, handler) as client:
        md = await ReaderFetcher(client, cfg).fetch_markdown("https://shop.test/", accept_language="de-DE")

    assert md == "# Title"
    assert seen == {"respond": "markdown", "al": "de-DE"}


# ---------------- category lookup ----------------

@pytest.mark.asyncio
async def test_category_lookup_reads_name_or_path():
    payloads = {
        "/categories/MLB1": {"name": "Bebidas"},
        "/categories/MLB2": {"name": "", "path_from_root": [{"name": "Root"}, {"name": "Cervejas"}]},
    }

    def handler(request):
        data = payloads.get(request.url.path)
        if data is None:
            return httpx.Response(404, json={"message": "not found"})
        return httpx.Response(200, json=data)

    cfg = _cfg(category_api_base="https://api.test")
    async with _client(cfg, handler) as client:
        api = CategoryLookup(client, cfg)
        assert await api.lookup("MLB1") == "Bebidas"
        assert await api.lookup("MLB2") == "Cervejas"
        assert await api.lookup("MLB3") == ""
        assert await api.lookup("") == ""


def test_category_name_from_payload_tolerates_junk():
    assert CategoryLookup.name_from_payload(None) == ""
    assert CategoryLookup.name_from_payload([1, 2]) == ""
    assert CategoryLookup.name_from_payload({"path_from_root": ["x"]}) == ""
