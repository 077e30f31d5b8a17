from __future__ import annotations

import json
import logging
import os
import random
import re
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qsl, quote, unquote, urlparse, urlunparse

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

logger = logging.getLogger(__name__)

# ========== Environment helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


# ========== Exceptions & HTTP status mapping ==========

class TransientHTTPError(Exception):
    """Retryable transient HTTP/Net error (5xx/timeouts/connection resets)."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status

class RateLimitedError(TransientHTTPError):
    """HTTP 429. ``retry_after`` is the server hint in seconds, if it sent one."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(message, status=429)
        self.retry_after = retry_after

class NonRetryableHTTPError(Exception):
    """Non-retryable client error (e.g., 404) or policy block."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status

class InvalidURLError(ValueError):
    """Empty or non-string URL handed to an acquisition helper."""

def http_status_to_exc(status: Optional[int], body: str = "") -> Optional[Exception]:
    if status is None or status < 400:
        return None
    detail = f"HTTP {status} {body[:200]}".strip()
    if status == 429:
        return RateLimitedError(detail, retry_after=parse_retry_after_body(body))
    if status >= 500:
        return TransientHTTPError(detail, status=status)
    return NonRetryableHTTPError(detail, status=status)


def parse_retry_after_header(headers: dict[str, str] | Any) -> Optional[float]:
    """
    Parse Retry-After header. Supports:
      - integer seconds
      - HTTP-date
    Returns seconds (float) or None.
    """
    if not headers:
        return None
    ra = None
    for k, v in headers.items():
        if k.lower() == "retry-after":
            ra = v
            break
    if not ra or not ra.strip():
        return None
    ra = ra.strip()
    if ra.isdigit():
        return float(int(ra))
    try:
        dt = parsedate_to_datetime(ra)
    except (TypeError, ValueError):
        return None
    if not dt:
        return None
    return float(max(0.0, dt.timestamp() - time.time()))

def parse_retry_after_body(body: str) -> Optional[float]:
    """Read a ``{"retryAfter": seconds}`` hint out of a 429 body."""
    data = safe_json_loads(body)
    if not isinstance(data, dict):
        return None
    raw = data.get("retryAfter")
    if isinstance(raw, bool):
        return None
    try:
        val = float(raw)
    except (TypeError, ValueError):
        return None
    return val if val >= 0 else None


# ========== URL helpers ==========

def require_url(url: Any) -> str:
    if not isinstance(url, str) or not url.strip():
        raise InvalidURLError("Invalid URL")
    return url.strip()

def normalize_url(url: str) -> str:
    url = url.strip()
    parsed = urlparse(url)

    if not parsed.scheme and not parsed.netloc and parsed.path:
        m = re.match(r"^(?P<host>[A-Za-z0-9.-]+)(?::(?P<port>\d+))?(?P<rest>/.*)?$", parsed.path)
        if m and "." in m.group("host"):
            return normalize_url("http://" + url)

    scheme = (parsed.scheme or "http").lower()
    host = parsed.hostname.lower() if parsed.hostname else ""
    netloc = host
    if parsed.port and not ((scheme == "http" and parsed.port == 80) or (scheme == "https" and parsed.port == 443)):
        netloc = f"{host}:{parsed.port}"

    path = parsed.path or "/"
    query = parsed.query
    return urlunparse((scheme, netloc, path, "", query, ""))

def encode_uri(url: str) -> str:
    """Percent-encode like JavaScript's encodeURI; reserved characters and existing escapes survive."""
    return quote(url, safe=";,/?:@&=+$-_.!~*'()#%")

def strip_www(host: str) -> str:
    host = (host or "").lower()
    return host[4:] if host.startswith("www.") else host


@dataclass(frozen=True)
class TargetURL:
    """A URL split into the parts rules look at. Query keys keep their first value."""
    raw: str
    host: str
    path: str
    segments: Tuple[str, ...]
    query: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, url: str) -> "TargetURL":
        try:
            parsed = urlparse(url or "")
            host = (parsed.hostname or "").lower()
        except ValueError:
            return cls(raw=url or "", host="", path="", segments=())
        path = parsed.path or "/"
        segments = tuple(unquote(s) for s in path.split("/") if s)
        query: Dict[str, str] = {}
        for k, v in parse_qsl(parsed.query, keep_blank_values=True):
            query.setdefault(k, v)
        return cls(raw=url, host=host, path=path, segments=segments, query=query)

    def param(self, name: str, default: str = "") -> str:
        """Case-insensitive query lookup."""
        if name in self.query:
            return self.query[name]
        low = name.lower()
        for k, v in self.query.items():
            if k.lower() == low:
                return v
        return default

    def host_endswith(self, suffix: str) -> bool:
        return self.host == suffix or self.host.endswith("." + suffix)


_NUMERIC_SEGMENT = re.compile(r"^\d+$")

def title_from_url(url: str) -> str:
    """`host · last non-numeric segment`; never raises."""
    target = TargetURL.parse(url)
    host = strip_www(target.host)
    if not host:
        return "Untitled"
    words = [s for s in target.segments if not _NUMERIC_SEGMENT.match(s.strip())]
    if not words:
        return host
    base = re.sub(r"[-_]+", " ", words[-1]).strip()
    return f"{host} · {base}" if base else host


# ========== Text / JSON helpers ==========

_WS = re.compile(r"\s+")

def collapse_ws(text: Optional[str]) -> str:
    return _WS.sub(" ", text or "").strip()

def safe_json_loads(s: str) -> Optional[Any]:
    if not isinstance(s, str) or not s.strip():
        return None
    try:
        return json.loads(s)
    except ValueError:
        return None


# ========== Retry ==========

WaitPolicy = Callable[[RetryCallState], float]

def exponential_jitter_wait(initial_ms: int, max_ms: int, jitter_ms: int, *, rng: Callable[[], float] = random.random) -> WaitPolicy:
    def _wait(state: RetryCallState) -> float:
        base = min(max_ms, initial_ms * (2 ** max(0, state.attempt_number - 1)))
        return (base + rng() * jitter_ms) / 1000.0
    return _wait

def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (TransientHTTPError, httpx.TransportError))

def retry_async(
    max_attempts: int,
    wait: WaitPolicy,
    *,
    retryable: Callable[[BaseException], bool] = is_transient,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    before_sleep: Optional[Callable[[RetryCallState], Any]] = None,
):
    """
    Decorator retrying an async callable. Only exceptions accepted by
    ``retryable`` are retried; the last error is re-raised on exhaustion.
    asyncio.CancelledError is never retryable.
    """
    def _predicate(exc: BaseException) -> bool:
        return isinstance(exc, Exception) and retryable(exc)

    def _decorator(fn: Callable[..., Awaitable]):
        async def wrapper(*args, **kwargs):
            kw: Dict[str, Any] = dict(
                reraise=True,
                stop=stop_after_attempt(max_attempts),
                wait=wait,
                retry=retry_if_exception(_predicate),
            )
            if sleep is not None:
                kw["sleep"] = sleep
            if before_sleep is not None:
                kw["before_sleep"] = before_sleep
            async for attempt in AsyncRetrying(**kw):
                with attempt:
                    return await fn(*args, **kwargs)
        return wrapper
    return _decorator


# ========== HTTPX client ==========

BROWSER_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"

def httpx_client(cfg, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """
    Shared AsyncClient for all strategies. Per-call deadlines are applied by
    the callers; the client timeout is only an upper bound.
    """
    limits = httpx.Limits(max_keepalive_connections=16, max_connections=64)
    timeout = httpx.Timeout(cfg.max_timeout_ms / 1000.0)
    headers = {
        "User-Agent": cfg.user_agent,
        "Accept": BROWSER_ACCEPT,
        "Accept-Language": cfg.default_accept_language,
        "Upgrade-Insecure-Requests": "1",
    }

    async def _on_response(response: httpx.Response):
        if response.status_code == 429:
            logger.warning(
                "HTTPX saw 429 for %s (retry-after=%s)",
                str(response.request.url), parse_retry_after_header(response.headers),
            )

    kwargs: Dict[str, Any] = dict(
        timeout=timeout,
        limits=limits,
        headers=headers,
        follow_redirects=True,
        max_redirects=cfg.max_redirects,
        event_hooks={"response": [_on_response]},
    )
    if transport is not None:
        kwargs["transport"] = transport
    else:
        kwargs["http2"] = cfg.http2
    return httpx.AsyncClient(**kwargs)
