from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from components.generic_extractor import describe_html, extract_best_title, extract_og_title
from components.ranking_extractor import RankingPage, extract_structured
from components.sanitizer import sanitize
from components.site_rules import RuleEngine, meli_category_code
from extensions.logging import EventRecorder, LoggingExtension, NullSink

from .config import Config
from .fetchers import CategoryLookup, DirectFetcher, FetchOutcome, ProxyFetcher, ReaderFetcher
from .locales import accept_language_for_host, get_locale
from .utils import TargetURL, httpx_client, normalize_url, require_url, title_from_url

logger = logging.getLogger(__name__)

METHOD_RULE = "rule"
METHOD_URL_FALLBACK = "url-fallback"


class Fetcher(Protocol):
    name: str

    async def fetch(self, url: str, timeout_ms: Optional[int] = None, *, accept_language: Optional[str] = None) -> FetchOutcome:
        ...


@dataclass(frozen=True)
class StageReport:
    stage: str
    status: str
    detail: str = ""
    html_info: Optional[Dict[str, Any]] = None


@dataclass
class TitleResult:
    title: str
    method: str
    url: str = ""
    stages: List[StageReport] = field(default_factory=list)


@dataclass
class _Held:
    title: str
    method: str


class TitlePipeline:
    """
    Resolves one best-seller URL to a single sanitized title.

    Strategies run one after another and the first authoritative answer
    wins. Anything weaker is held (first holder wins) until the ladder is
    exhausted; if nothing was ever held the title is derived from the URL.
    """

    def __init__(
        self,
        cfg: Config,
        *,
        client: Optional[httpx.AsyncClient] = None,
        rules: Optional[RuleEngine] = None,
        direct: Optional[Fetcher] = None,
        proxy: Optional[Fetcher] = None,
        reader: Optional[Fetcher] = None,
        category_api: Optional[CategoryLookup] = None,
        renderer: Optional[Fetcher] = None,
        sink: Optional[EventRecorder] = None,
    ) -> None:
        self.cfg = cfg
        self.sink = sink or NullSink()
        self._own_client = client is None
        self.client = client or httpx_client(cfg)
        self.rules = rules or RuleEngine()
        self.direct = direct or DirectFetcher(self.client, cfg)
        self.proxy = proxy if proxy is not None else (ProxyFetcher(self.client, cfg) if cfg.proxy_endpoint else None)
        self.reader = reader or ReaderFetcher(self.client, cfg, sink=self.sink)
        self.category_api = category_api or CategoryLookup(self.client, cfg)
        if renderer is None and cfg.enable_render_fallback:
            from .browser import RenderFetcher
            renderer = RenderFetcher(cfg)
        self.renderer = renderer

    async def aclose(self) -> None:
        if self._own_client:
            await self.client.aclose()

    async def __aenter__(self) -> "TitlePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ---------- helpers ----------

    def _stage(
        self, stages: List[StageReport], stage: str, status: str, detail: str = "", html: Optional[str] = None,
    ) -> None:
        stages.append(StageReport(stage, status, detail, describe_html(html) if html else None))
        self.sink.record("pipeline:stage", {"stage": stage, "status": status, "detail": detail})
        logger.debug("stage %s -> %s %s", stage, status, detail)

    def _finish(self, url: str, title: str, method: str, stages: List[StageReport]) -> TitleResult:
        self.sink.record("pipeline:result", {"url": url, "method": method, "title": title})
        logger.info("resolved %s via %s: %r", url, method, title)
        return TitleResult(title=title, method=method, url=url, stages=stages)

    def _usable(self, url: str, outcome: FetchOutcome) -> bool:
        return outcome.ok and bool(self.rules.run(url, outcome.payload) or extract_best_title(outcome.payload))

    async def _page(self, url: str, al: str, timeout_ms: Optional[int] = None) -> FetchOutcome:
        """
        Direct fetch, falling back to the proxy endpoint when one is configured
        and direct gave nothing usable (an error, or a body with no title such
        as a challenge page).
        """
        outcome = await self.direct.fetch(url, timeout_ms, accept_language=al)
        if self.proxy is None or self._usable(url, outcome):
            return outcome
        proxied = await self.proxy.fetch(url, timeout_ms, accept_language=al)
        if proxied.ok and (not outcome.ok or self._usable(url, proxied)):
            return proxied
        return outcome

    # ---------- entry points ----------

    async def resolve_title(self, url: str) -> TitleResult:
        url = normalize_url(require_url(url))
        token = LoggingExtension.set_target_context(url)
        try:
            return await self._resolve(url)
        finally:
            LoggingExtension.reset_target_context(token)

    async def _resolve(self, url: str) -> TitleResult:
        stages: List[StageReport] = []
        al = accept_language_for_host(TargetURL.parse(url).host, self.cfg.default_accept_language)
        held: Optional[_Held] = None
        self.sink.record("pipeline:start", {"url": url, "accept_language": al})

        # 1. rules, no network
        hit = self.rules.run(url, "")
        if hit:
            self._stage(stages, "rule", "ok", hit.rule)
            return self._finish(url, hit.title, METHOD_RULE, stages)
        self._stage(stages, "rule", "empty")

        # 2. direct / proxy, then 3. reader
        for stage, acquire in (
            ("page", lambda: self._page(url, al)),
            ("reader", lambda: self.reader.fetch(url, accept_language=al)),
        ):
            outcome = await acquire()
            if not outcome.ok:
                self._stage(stages, stage, outcome.status, outcome.error or "")
                continue
            hit = self.rules.run(url, outcome.payload)
            if hit:
                self._stage(stages, stage, "ok", f"rule {hit.rule}", outcome.payload)
                return self._finish(url, hit.title, METHOD_RULE, stages)
            candidate = extract_best_title(outcome.payload)
            self._stage(stages, stage, "ok", f"{outcome.strategy} title={candidate!r}", outcome.payload)
            if candidate and held is None:
                held = _Held(candidate, outcome.strategy)

        # 4. OG re-check
        outcome = await self._page(url, al, self.cfg.og_recheck_timeout_ms)
        og = extract_og_title(outcome.payload) if outcome.ok else ""
        self._stage(stages, "og", "ok" if og else outcome.status, og, outcome.payload if outcome.ok else None)
        if og and held is None:
            held = _Held(og, "og")

        # 5. category API outranks anything held
        code = meli_category_code(url)
        if code:
            name = await self.category_api.lookup(code)
            title = sanitize(get_locale("pt-BR").compose(name)) if name else ""
            self._stage(stages, "category-api", "ok" if title else "empty", code)
            if title:
                return self._finish(url, title, self.category_api.name, stages)

        # 6. held candidate
        if held is not None:
            return self._finish(url, held.title, held.method, stages)

        # headless render, only when nothing usable turned up
        if self.renderer is not None:
            outcome = await self.renderer.fetch(url, accept_language=al)
            title = sanitize(outcome.payload) if outcome.ok else ""
            self._stage(stages, "render", "ok" if title else outcome.status, outcome.error or "")
            if title:
                return self._finish(url, title, self.renderer.name, stages)

        # 7. deterministic fallback
        return self._finish(url, title_from_url(url), METHOD_URL_FALLBACK, stages)

    async def extract_ranking(self, url: str) -> RankingPage:
        """Structured ranking from the first acquired payload that yields items."""
        url = normalize_url(require_url(url))
        al = accept_language_for_host(TargetURL.parse(url).host, self.cfg.default_accept_language)
        best = RankingPage()
        for acquire in (
            lambda: self._page(url, al),
            lambda: self.reader.fetch(url, accept_language=al),
        ):
            outcome = await acquire()
            if not outcome.ok:
                continue
            page = extract_structured(outcome.payload, url)
            if page.items:
                return page
            if not best.title:
                best = page
        return best
