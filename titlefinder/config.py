from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from .utils import getenv_bool, getenv_int, getenv_str

DEFAULT_ACCEPT_LANGUAGE = "en-US,en;q=0.9"
DEFAULT_PROBE_URL = "https://www.trendyol.com/sirali-urunler?categoryId=105500&type=bestSeller&webGenderId=0"


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Runtime
    env: Literal["dev", "staging", "prod"]
    user_agent: str
    default_accept_language: str

    # Per-strategy deadlines
    direct_timeout_ms: int
    proxy_timeout_ms: int
    reader_timeout_ms: int              # one reader attempt
    reader_deadline_ms: int             # whole reader call, retries included
    og_recheck_timeout_ms: int
    category_api_timeout_ms: int
    render_timeout_ms: int              # navigation
    render_settle_ms: int               # networkidle wait after navigation

    # Reader service + retry policy
    reader_base_url: str
    reader_max_attempts: int
    reader_retry_after_min_ms: int
    reader_retry_after_max_ms: int
    reader_retry_after_default_ms: int
    reader_rate_limit_jitter_ms: int
    reader_server_backoff_ms: int       # multiplied by attempt number
    reader_network_backoff_ms: int      # multiplied by attempt number
    reader_retry_jitter_ms: int

    # Other collaborators
    category_api_base: str
    proxy_origin: Optional[str]         # e.g. http://localhost:5174; None disables proxy fetch
    proxy_fetch_path: str
    enable_render_fallback: bool

    # Observability
    log_buffer_capacity: int

    # HTTP client knobs
    http2: bool
    max_redirects: int

    @property
    def proxy_endpoint(self) -> Optional[str]:
        if not self.proxy_origin:
            return None
        return self.proxy_origin.rstrip("/") + "/" + self.proxy_fetch_path.lstrip("/")

    @property
    def max_timeout_ms(self) -> int:
        return max(
            self.direct_timeout_ms, self.proxy_timeout_ms, self.reader_timeout_ms,
            self.og_recheck_timeout_ms, self.category_api_timeout_ms,
        )


# ---------- Loader ----------
def load_config() -> Config:

    cfg = Config(
        env=getenv_str("APP_ENV", "dev"),
        user_agent=getenv_str(
            "TITLEFINDER_USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/118.0.0.0 Safari/537.36"
        ),
        default_accept_language=getenv_str("DEFAULT_ACCEPT_LANGUAGE", DEFAULT_ACCEPT_LANGUAGE),

        # deadlines (every one stays inside 1s..60s)
        direct_timeout_ms=getenv_int("DIRECT_TIMEOUT_MS", 12000, 1000, 60000),
        proxy_timeout_ms=getenv_int("PROXY_TIMEOUT_MS", 12000, 1000, 60000),
        reader_timeout_ms=getenv_int("READER_TIMEOUT_MS", 10000, 1000, 60000),
        reader_deadline_ms=getenv_int("READER_DEADLINE_MS", 25000, 1000, 60000),
        og_recheck_timeout_ms=getenv_int("OG_RECHECK_TIMEOUT_MS", 10000, 1000, 60000),
        category_api_timeout_ms=getenv_int("CATEGORY_API_TIMEOUT_MS", 8000, 1000, 60000),
        render_timeout_ms=getenv_int("RENDER_TIMEOUT_MS", 25000, 1000, 60000),
        render_settle_ms=getenv_int("RENDER_SETTLE_MS", 12000, 0, 60000),

        # reader
        reader_base_url=getenv_str("READER_BASE_URL", "https://r.jina.ai"),
        reader_max_attempts=getenv_int("READER_MAX_ATTEMPTS", 3, 1, 10),
        reader_retry_after_min_ms=getenv_int("READER_RETRY_AFTER_MIN_MS", 1500, 0, 60000),
        reader_retry_after_max_ms=getenv_int("READER_RETRY_AFTER_MAX_MS", 15000, 0, 120000),
        reader_retry_after_default_ms=getenv_int("READER_RETRY_AFTER_DEFAULT_MS", 2000, 0, 60000),
        reader_rate_limit_jitter_ms=getenv_int("READER_RATE_LIMIT_JITTER_MS", 400, 0, 5000),
        reader_server_backoff_ms=getenv_int("READER_SERVER_BACKOFF_MS", 600, 0, 10000),
        reader_network_backoff_ms=getenv_int("READER_NETWORK_BACKOFF_MS", 700, 0, 10000),
        reader_retry_jitter_ms=getenv_int("READER_RETRY_JITTER_MS", 300, 0, 5000),

        category_api_base=getenv_str("CATEGORY_API_BASE", "https://api.mercadolibre.com"),
        proxy_origin=getenv_str("DEV_ORIGIN", "") or None,
        proxy_fetch_path=getenv_str("PROXY_FETCH_PATH", "/proxy-fetch"),
        enable_render_fallback=getenv_bool("ENABLE_RENDER_FALLBACK", True),

        log_buffer_capacity=getenv_int("LOG_BUFFER_CAPACITY", 5000, 100, 100_000),

        http2=getenv_bool("HTTP2", True),
        max_redirects=getenv_int("MAX_REDIRECTS", 8, 1, 20),
    )
    return cfg
