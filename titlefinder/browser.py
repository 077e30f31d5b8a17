from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Optional, Tuple

from playwright.async_api import async_playwright, Browser, BrowserContext, Playwright, Page, Error as PWError

from components.generic_extractor import deep_scan_script_title, extract_best_title
from components.sanitizer import sanitize

from .config import Config
from .fetchers import FetchOutcome
from .locales import primary_language, timezone_for_language
from .utils import require_url

logger = logging.getLogger(__name__)

_ANTIBOT_PAT = re.compile(
    r"(just\s+a\s+moment\s*\.\.\.|verifying you are human|review the security of your connection|checking your browser before accessing|are you a robot|captcha)",
    re.I,
)


def _browser_args() -> list[str]:
    return [
        "--disable-dev-shm-usage",
        "--no-sandbox",
        "--headless=new",
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-sync",
        "--mute-audio",
        "--no-default-browser-check",
        "--no-first-run",
        "--disable-gpu",
    ]


async def init_browser(cfg: Config, accept_language: str) -> Tuple[Playwright, Browser, BrowserContext]:
    """Launch an isolated Chromium context whose locale/timezone follow ``accept_language``."""
    pw = await async_playwright().start()
    try:
        browser = await pw.chromium.launch(headless=True, args=_browser_args())
        context = await browser.new_context(
            user_agent=cfg.user_agent,
            locale=primary_language(accept_language),
            timezone_id=timezone_for_language(accept_language),
            viewport={"width": 1366, "height": 900},
            java_script_enabled=True,
            extra_http_headers={
                "Accept-Language": accept_language,
                "Upgrade-Insecure-Requests": "1",
            },
        )
    except BaseException:
        await pw.stop()
        raise

    context.set_default_timeout(cfg.render_timeout_ms)
    context.set_default_navigation_timeout(cfg.render_timeout_ms)

    logger.info(
        "Browser initialized UA=%s locale=%s tz=%s",
        cfg.user_agent, primary_language(accept_language), timezone_for_language(accept_language),
    )
    return pw, browser, context


async def shutdown_browser(pw: Playwright, browser: Browser, context: Optional[BrowserContext] = None) -> None:
    try:
        if context:
            await context.close()
    except PWError as e:
        logger.warning("Error while closing context: %s", e)

    try:
        await browser.close()
    except PWError as e:
        logger.warning("Error while closing browser: %s", e)

    try:
        await pw.stop()
    except PWError as e:
        logger.warning("Error while stopping Playwright: %s", e)


async def _settle_page(page: Page, *, idle_ms: int) -> None:
    """Wait for body, then a bounded networkidle; both are best-effort."""
    try:
        await page.wait_for_selector("body", timeout=max(500, min(idle_ms, 2000)))
    except PWError:
        pass
    if idle_ms > 0:
        try:
            await page.wait_for_load_state("networkidle", timeout=idle_ms)
        except PWError:
            pass


def title_from_rendered(html: str, document_title: str = "") -> str:
    """DOM cascade first, then the live document title, then inline script state."""
    return extract_best_title(html) or sanitize(document_title) or deep_scan_script_title(html)


class RenderFetcher:
    """Last-resort strategy: render the page headlessly and read its title."""

    name = "render"

    def __init__(self, cfg: Config) -> None:
        self.cfg = cfg

    async def _render(self, url: str, accept_language: str) -> Tuple[str, str]:
        pw, browser, context = await init_browser(self.cfg, accept_language)
        try:
            page = await context.new_page()
            await page.goto(url, wait_until="domcontentloaded", timeout=self.cfg.render_timeout_ms)
            await _settle_page(page, idle_ms=self.cfg.render_settle_ms)
            html = await page.content()
            title = title_from_rendered(html, await page.title())
            return title, html
        finally:
            await shutdown_browser(pw, browser, context)

    async def fetch(self, url: str, timeout_ms: Optional[int] = None, *, accept_language: Optional[str] = None) -> FetchOutcome:
        """``payload`` is the rendered page's title, not its HTML."""
        url = require_url(url)
        al = accept_language or self.cfg.default_accept_language
        deadline = timeout_ms or (self.cfg.render_timeout_ms + self.cfg.render_settle_ms)
        t0 = time.monotonic()
        try:
            title, html = await asyncio.wait_for(self._render(url, al), timeout=deadline / 1000.0)
        except asyncio.TimeoutError:
            return FetchOutcome(self.name, url, status="timeout",
                                elapsed_ms=int((time.monotonic() - t0) * 1000), error="timeout")
        except Exception as e:  # PWError, missing browser binary, driver crash
            logger.warning("render failed for %s: %s", url, e)
            return FetchOutcome(self.name, url, status="error",
                                elapsed_ms=int((time.monotonic() - t0) * 1000), error=str(e) or type(e).__name__)
        if not title and _ANTIBOT_PAT.search(html or ""):
            logger.info("render of %s landed on an anti-bot page", url)
        return FetchOutcome(
            self.name, url,
            status="ok" if title else "empty",
            payload=title,
            elapsed_ms=int((time.monotonic() - t0) * 1000),
        )
