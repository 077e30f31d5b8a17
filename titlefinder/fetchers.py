from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from tenacity import RetryCallState

from extensions.logging import EventRecorder, NullSink

from .config import Config
from .locales import accept_language_for_host, primary_language
from .utils import (
    NonRetryableHTTPError,
    RateLimitedError,
    TargetURL,
    TransientHTTPError,
    encode_uri,
    http_status_to_exc,
    is_transient,
    require_url,
    retry_async,
    safe_json_loads,
)

logger = logging.getLogger(__name__)

# query marker appended to reader targets so its URL-keyed cache splits by language
READER_LANG_PARAM = "__lang"


@dataclass
class FetchOutcome:
    """One acquisition attempt. ``status`` is ok, empty, error or timeout."""
    strategy: str
    url: str
    status: str = "empty"
    payload: str = ""
    status_code: Optional[int] = None
    attempts: int = 1
    elapsed_ms: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok" and bool(self.payload)


def _elapsed_ms(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)

def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}/" if parts.scheme and parts.netloc else ""


async def _guarded_get(
    strategy: str,
    url: str,
    timeout_ms: int,
    send: Callable[[], Awaitable[httpx.Response]],
) -> FetchOutcome:
    """
    Run one GET under a hard deadline and fold every failure into the
    outcome. Cancellation from the caller is not caught.
    """
    t0 = time.monotonic()
    try:
        resp = await asyncio.wait_for(send(), timeout=timeout_ms / 1000.0)
    except (asyncio.TimeoutError, httpx.TimeoutException):
        logger.info("%s fetch timed out after %dms: %s", strategy, timeout_ms, url)
        return FetchOutcome(strategy, url, status="timeout", elapsed_ms=_elapsed_ms(t0), error="timeout")
    except Exception as e:
        logger.info("%s fetch failed for %s: %s", strategy, url, e)
        return FetchOutcome(strategy, url, status="error", elapsed_ms=_elapsed_ms(t0), error=str(e) or type(e).__name__)

    code = resp.status_code
    if code >= 400:
        logger.info("%s fetch %s -> HTTP %d", strategy, url, code)
        return FetchOutcome(strategy, url, status="error", status_code=code,
                            elapsed_ms=_elapsed_ms(t0), error=f"HTTP {code}")
    text = resp.text or ""
    return FetchOutcome(
        strategy, url,
        status="ok" if text.strip() else "empty",
        payload=text,
        status_code=code,
        elapsed_ms=_elapsed_ms(t0),
    )


class DirectFetcher:
    """Single GET with a browser-like header set."""

    name = "direct"

    def __init__(self, client: httpx.AsyncClient, cfg: Config) -> None:
        self.client = client
        self.cfg = cfg

    def headers_for(self, url: str, accept_language: Optional[str] = None) -> Dict[str, str]:
        host = TargetURL.parse(url).host
        headers = {
            "Accept-Language": accept_language or accept_language_for_host(host, self.cfg.default_accept_language),
        }
        origin = _origin(url)
        if origin:
            headers["Referer"] = origin
        return headers

    async def fetch(self, url: str, timeout_ms: Optional[int] = None, *, accept_language: Optional[str] = None) -> FetchOutcome:
        url = require_url(url)
        headers = self.headers_for(url, accept_language)
        return await _guarded_get(
            self.name, url, timeout_ms or self.cfg.direct_timeout_ms,
            lambda: self.client.get(url, headers=headers),
        )


class ProxyFetcher:
    """Delegates to the same-origin /proxy-fetch endpoint, which fetches server-side."""

    name = "proxy"

    def __init__(self, client: httpx.AsyncClient, cfg: Config) -> None:
        self.client = client
        self.cfg = cfg

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.proxy_endpoint)

    async def fetch(self, url: str, timeout_ms: Optional[int] = None, *, accept_language: Optional[str] = None) -> FetchOutcome:
        url = require_url(url)
        endpoint = self.cfg.proxy_endpoint
        if not endpoint:
            return FetchOutcome(self.name, url, status="empty", attempts=0, error="proxy endpoint not configured")
        al = accept_language or accept_language_for_host(TargetURL.parse(url).host, self.cfg.default_accept_language)
        return await _guarded_get(
            self.name, url, timeout_ms or self.cfg.proxy_timeout_ms,
            lambda: self.client.get(endpoint, params={"url": url, "al": al}),
        )


def reader_backoff_seconds(
    exc: Optional[BaseException],
    attempt: int,
    cfg: Config,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay before the next reader attempt:
      429  -> server hint clamped to [min, max], else the default, + rate-limit jitter
      5xx  -> server unit * attempt + jitter
      else -> network unit * attempt + jitter
    """
    if isinstance(exc, RateLimitedError):
        if exc.retry_after is not None:
            ms = min(cfg.reader_retry_after_max_ms, max(cfg.reader_retry_after_min_ms, exc.retry_after * 1000.0))
        else:
            ms = float(cfg.reader_retry_after_default_ms)
        return (ms + rng() * cfg.reader_rate_limit_jitter_ms) / 1000.0
    if isinstance(exc, TransientHTTPError) and exc.status and exc.status >= 500:
        return (cfg.reader_server_backoff_ms * attempt + rng() * cfg.reader_retry_jitter_ms) / 1000.0
    return (cfg.reader_network_backoff_ms * attempt + rng() * cfg.reader_retry_jitter_ms) / 1000.0


class ReaderFetcher:
    """
    Third-party reader service (``GET <base>/<target>``). Retries 429, 5xx
    and network errors; exhausting attempts raises the last error.
    """

    name = "reader"

    def __init__(
        self,
        client: httpx.AsyncClient,
        cfg: Config,
        *,
        sink: Optional[EventRecorder] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.client = client
        self.cfg = cfg
        self.sink = sink or NullSink()
        self._sleep = sleep
        self._rng = rng

    def reader_url(self, url: str, accept_language: Optional[str] = None) -> str:
        target = url
        if accept_language:
            parts = urlsplit(url)
            query = parse_qsl(parts.query, keep_blank_values=True)
            query.append((READER_LANG_PARAM, primary_language(accept_language)))
            target = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))
        return f"{self.cfg.reader_base_url.rstrip('/')}/{encode_uri(target)}"

    def _wait(self, state: RetryCallState) -> float:
        exc = state.outcome.exception() if state.outcome else None
        return reader_backoff_seconds(exc, state.attempt_number, self.cfg, self._rng)

    def _before_sleep(self, url: str):
        def _log(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            if isinstance(exc, RateLimitedError):
                event = "reader:rate-limit"
            elif isinstance(exc, TransientHTTPError) and exc.status:
                event = "reader:server-retry"
            else:
                event = "reader:network-retry"
            logger.warning("%s for %s (attempt %d), retrying in %.2fs: %s",
                           event, url, state.attempt_number, delay, exc)
            self.sink.record(event, {
                "url": url, "attempt": state.attempt_number,
                "wait_ms": int(delay * 1000), "error": str(exc),
            }, level="warn")
        return _log

    async def _read(self, url: str, respond_with: str, accept_language: Optional[str], stats: Dict[str, int]) -> str:
        endpoint = self.reader_url(url, accept_language)
        headers = {"x-respond-with": respond_with}
        if accept_language:
            headers["Accept-Language"] = accept_language

        async def _attempt() -> str:
            stats["attempts"] = stats.get("attempts", 0) + 1
            self.sink.record("reader:request", {"url": url, "attempt": stats["attempts"], "respond_with": respond_with})
            try:
                resp = await self.client.get(
                    endpoint, headers=headers, timeout=self.cfg.reader_timeout_ms / 1000.0,
                )
            except httpx.TransportError as e:
                raise TransientHTTPError(f"Reader network error: {e!r}") from e
            exc = http_status_to_exc(resp.status_code, resp.text)
            if exc is not None:
                raise exc
            return resp.text

        call = retry_async(
            self.cfg.reader_max_attempts,
            self._wait,
            retryable=is_transient,
            sleep=self._sleep,
            before_sleep=self._before_sleep(url),
        )(_attempt)
        try:
            text = await call()
        except (TransientHTTPError, NonRetryableHTTPError) as e:
            self.sink.error("reader:error", e, {"url": url, "attempts": stats.get("attempts", 0)})
            raise
        self.sink.record("reader:success", {"url": url, "attempts": stats.get("attempts", 0), "length": len(text)})
        return text

    async def read(self, url: str, *, respond_with: str = "html", accept_language: Optional[str] = None) -> str:
        url = require_url(url)
        return await self._read(url, respond_with, accept_language, {})

    async def fetch_markdown(self, url: str, *, accept_language: Optional[str] = None) -> str:
        return await self.read(url, respond_with="markdown", accept_language=accept_language)

    async def fetch(self, url: str, timeout_ms: Optional[int] = None, *, accept_language: Optional[str] = None) -> FetchOutcome:
        """Orchestrator-facing form: never raises except on bad input or cancellation."""
        url = require_url(url)
        deadline = timeout_ms or self.cfg.reader_deadline_ms
        stats: Dict[str, int] = {}
        t0 = time.monotonic()
        try:
            text = await asyncio.wait_for(self._read(url, "html", accept_language, stats), timeout=deadline / 1000.0)
        except asyncio.TimeoutError:
            return FetchOutcome(self.name, url, status="timeout", attempts=stats.get("attempts", 0),
                                elapsed_ms=_elapsed_ms(t0), error="timeout")
        except (TransientHTTPError, NonRetryableHTTPError) as e:
            return FetchOutcome(self.name, url, status="error", status_code=getattr(e, "status", None),
                                attempts=stats.get("attempts", 0), elapsed_ms=_elapsed_ms(t0), error=str(e))
        return FetchOutcome(
            self.name, url,
            status="ok" if text.strip() else "empty",
            payload=text,
            attempts=stats.get("attempts", 0),
            elapsed_ms=_elapsed_ms(t0),
        )


class CategoryLookup:
    """``GET <api>/categories/<code>`` -> display name (or last path_from_root entry)."""

    name = "meli-api"

    def __init__(self, client: httpx.AsyncClient, cfg: Config) -> None:
        self.client = client
        self.cfg = cfg

    @staticmethod
    def name_from_payload(data: Any) -> str:
        if not isinstance(data, dict):
            return ""
        name = data.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
        path = data.get("path_from_root")
        if isinstance(path, list) and path:
            last = path[-1]
            if isinstance(last, dict) and isinstance(last.get("name"), str):
                return last["name"].strip()
        return ""

    async def lookup(self, code: str, timeout_ms: Optional[int] = None) -> str:
        if not code:
            return ""
        endpoint = f"{self.cfg.category_api_base.rstrip('/')}/categories/{code}"
        outcome = await _guarded_get(
            self.name, endpoint, timeout_ms or self.cfg.category_api_timeout_ms,
            lambda: self.client.get(endpoint, headers={"Accept": "application/json"}),
        )
        if not outcome.ok:
            return ""
        return self.name_from_payload(safe_json_loads(outcome.payload))
