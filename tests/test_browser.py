import asyncio
from dataclasses import replace

import pytest
from playwright.async_api import Error as PWError

import titlefinder.browser as browser_mod
from titlefinder.browser import RenderFetcher, init_browser, shutdown_browser, title_from_rendered
from titlefinder.config import load_config


def _cfg(**overrides):
    return replace(load_config(), user_agent="pytest-UA", render_timeout_ms=12345, render_settle_ms=0, **overrides)


class StubPage:
    def __init__(self, title="", html="<html></html>", goto_raises=None, goto_delay=0.0):
        self._title = title
        self._html = html
        self._goto_raises = goto_raises
        self._goto_delay = goto_delay
        self.goto_calls = []

    async def goto(self, url, **kwargs):
        self.goto_calls.append((url, kwargs))
        if self._goto_delay:
            await asyncio.sleep(self._goto_delay)
        if self._goto_raises:
            raise self._goto_raises

    async def wait_for_selector(self, selector, timeout=None):
        return None

    async def wait_for_load_state(self, state, timeout=None):
        raise PWError("networkidle never reached")

    async def content(self):
        return self._html

    async def title(self):
        return self._title


class StubContext:
    def __init__(self, page=None):
        self.closed = False
        self._page = page or StubPage()
        self._default_timeout = None
        self._default_navigation_timeout = None

    def set_default_timeout(self, ms):
        self._default_timeout = ms

    def set_default_navigation_timeout(self, ms):
        self._default_navigation_timeout = ms

    async def new_page(self):
        return self._page

    async def close(self):
        self.closed = True


class StubBrowser:
    def __init__(self, context):
        self.context = context
        self.closed = False
        self.context_kwargs = None

    async def new_context(self, **kwargs):
        self.context_kwargs = kwargs
        return self.context

    async def close(self):
        self.closed = True


class StubChromium:
    def __init__(self, browser):
        self.browser = browser
        self._launch_kwargs = None

    async def launch(self, **kwargs):
        self._launch_kwargs = kwargs
        return self.browser


class StubPlaywright:
    def __init__(self, chromium):
        self.chromium = chromium
        self.stopped = False

    async def stop(self):
        self.stopped = True


class AsyncPlaywrightFactory:
    def __init__(self, pw):
        self._pw = pw

    async def start(self):
        return self._pw


def _install(monkeypatch, page=None):
    context = StubContext(page)
    browser = StubBrowser(context=context)
    chromium = StubChromium(browser=browser)
    pw = StubPlaywright(chromium=chromium)
    monkeypatch.setattr(browser_mod, "async_playwright", lambda: AsyncPlaywrightFactory(pw))
    return pw, chromium, browser, context


@pytest.mark.asyncio
async def test_init_browser_applies_locale_and_timeouts(monkeypatch):
    cfg = _cfg()
    pw, chromium, browser, context = _install(monkeypatch)

    pw_ret, browser_ret, context_ret = await init_browser(cfg, "ja-JP,ja;q=0.9")

    assert pw_ret is pw
    assert browser_ret is browser
    assert context_ret is context

    assert chromium._launch_kwargs["headless"] is True
    assert "--no-sandbox" in chromium._launch_kwargs["args"]

    kw = browser.context_kwargs
    assert kw["user_agent"] == "pytest-UA"
    assert kw["locale"] == "ja-JP"
    assert kw["timezone_id"] == "Asia/Tokyo"
    assert kw["extra_http_headers"]["Accept-Language"] == "ja-JP,ja;q=0.9"

    assert context._default_timeout == cfg.render_timeout_ms
    assert context._default_navigation_timeout == cfg.render_timeout_ms

    await shutdown_browser(pw_ret, browser_ret, context_ret)
    assert context.closed is True
    assert browser.closed is True
    assert pw.stopped is True


@pytest.mark.asyncio
async def test_init_browser_stops_playwright_when_launch_fails(monkeypatch):
    cfg = _cfg()
    pw, chromium, browser, context = _install(monkeypatch)

    async def boom(**kwargs):
        raise PWError("Executable doesn't exist")

    chromium.launch = boom

    with pytest.raises(PWError):
        await init_browser(cfg, "en-US")
    assert pw.stopped is True


@pytest.mark.asyncio
async def test_shutdown_browser_swallows_close_errors():
    class Failing:
        async def close(self):
            raise PWError("already closed")

        async def stop(self):
            raise PWError("already stopped")

    await shutdown_browser(Failing(), Failing(), Failing())


@pytest.mark.asyncio
async def test_render_fetch_returns_document_title(monkeypatch):
    page = StubPage(title="  Rendered Bestsellers ")
    pw, chromium, browser, context = _install(monkeypatch, page)

    out = await RenderFetcher(_cfg()).fetch("https://www.coupang.com/np/best", accept_language="ko-KR,ko;q=0.9")

    assert out.ok
    assert out.strategy == "render"
    assert out.payload == "Rendered Bestsellers"
    assert page.goto_calls[0][0] == "https://www.coupang.com/np/best"
    assert browser.context_kwargs["timezone_id"] == "Asia/Seoul"
    assert pw.stopped is True


@pytest.mark.asyncio
async def test_render_fetch_falls_back_to_dom_then_scripts(monkeypatch):
    blob = '{"page": {"pageTitle": "From State"}, "pad": "' + "y" * 90 + '"}'
    page = StubPage(title="Just a moment...", html=f"<html><body><script>{blob}</script></body></html>")
    _install(monkeypatch, page)

    out = await RenderFetcher(_cfg()).fetch("https://shop.test/")
    assert out.payload == "From State"


@pytest.mark.asyncio
async def test_render_fetch_folds_errors_into_outcome(monkeypatch):
    page = StubPage(goto_raises=PWError("net::ERR_NAME_NOT_RESOLVED"))
    pw, *_ = _install(monkeypatch, page)

    out = await RenderFetcher(_cfg()).fetch("https://nowhere.test/")
    assert out.status == "error"
    assert "ERR_NAME_NOT_RESOLVED" in out.error
    assert pw.stopped is True


@pytest.mark.asyncio
async def test_render_fetch_deadline(monkeypatch):
    page = StubPage(title="late", goto_delay=5)
    _install(monkeypatch, page)

    out = await RenderFetcher(_cfg()).fetch("https://shop.test/", timeout_ms=50)
    assert out.status == "timeout"
    assert out.payload == ""


def test_title_from_rendered():
    assert title_from_rendered("<h1>Heading</h1>") == "Heading"
    assert title_from_rendered("<p>nothing</p>") == ""


@pytest.mark.asyncio
async def test_render_fetch_prefers_heading_over_document_title(monkeypatch):
    page = StubPage(title="Amazon.com: Online Shopping", html="<html><body><h1>Best Sellers in Toys</h1></body></html>")
    _install(monkeypatch, page)

    out = await RenderFetcher(_cfg()).fetch("https://www.amazon.com/gp/bestsellers/toys")
    assert out.payload == "Best Sellers in Toys"


def test_title_from_rendered_uses_document_title_before_scripts():
    blob = '<script>{"pageTitle": "From State", "pad": "' + "z" * 90 + '"}</script>'
    assert title_from_rendered(f"<p>{blob}</p>", "Document Title") == "Document Title"
    assert title_from_rendered(f"<p>{blob}</p>", "Access Denied") == "From State"
