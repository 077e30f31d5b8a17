"""
Locale-keyed phrase table.

One place for every language-dependent string the extractors need: the
"best sellers" phrase and its connective word, block-page phrases for the
sanitizer, document-title patterns that give a category back, and the
rating / variant keywords used to filter noisy anchors and the
review-count hints used to pick the right label.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Pattern, Tuple

import tldextract

from .config import DEFAULT_ACCEPT_LANGUAGE

# No network: use the suffix list bundled with tldextract.
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


@dataclass(frozen=True)
class LocaleProfile:
    code: str
    accept_language: str
    timezone: str
    phrase: str
    connective: str = ""
    category_first: bool = False
    joiner: str = " "
    block_phrases: Tuple[str, ...] = ()
    title_patterns: Tuple[Pattern[str], ...] = ()
    rating_keywords: Tuple[str, ...] = ()
    review_keywords: Tuple[str, ...] = ()
    variant_keywords: Tuple[str, ...] = ()

    def compose(self, category: str) -> str:
        category = (category or "").strip()
        if not category:
            return ""
        if self.category_first:
            parts = [category, self.connective, self.phrase]
        else:
            parts = [self.phrase, self.connective, category]
        return self.joiner.join(p for p in parts if p).strip()


def _p(*patterns: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


LOCALES: Dict[str, LocaleProfile] = {
    "en": LocaleProfile(
        code="en",
        accept_language=DEFAULT_ACCEPT_LANGUAGE,
        timezone="UTC",
        phrase="Best Sellers",
        connective="in",
        block_phrases=(
            "access denied", "forbidden", "just a moment", "verification",
            "blocked", "error", "denied", "403",
            "checking your browser", "verifying you are human", "are you a robot", "captcha",
        ),
        title_patterns=_p(
            r"Best\s+Sellers\s+in\s+(.+?)(?:\s*[-|:]\s*Amazon.*)?$",
            r"Amazon(?:\.[\w.]+)?\s+Best\s+Sellers\s*[:：]\s*Best\s+(.+)$",
        ),
        rating_keywords=("rating", "stars", "out of 5"),
        review_keywords=("reviews", "ratings"),
        variant_keywords=("other options", "options from", "price", "from"),
    ),
    "ja": LocaleProfile(
        code="ja",
        accept_language="ja-JP,ja;q=0.9",
        timezone="Asia/Tokyo",
        phrase="売れ筋ランキング",
        connective="の",
        category_first=True,
        joiner="",
        block_phrases=("アクセスが拒否されました", "ロボットではありません"),
        title_patterns=_p(
            r"売れ筋ランキング\s*[:：]\s*(.+?)\s*の中で最も人気のある商品",
            r"^(.+?)\s*の売れ筋ランキング",
        ),
        rating_keywords=("5つ星のうち",),
        review_keywords=("評価", "レビュー", "件", "口コミ"),
        variant_keywords=("価格", "円", "オプション", "バリエーション"),
    ),
    "zh-CN": LocaleProfile(
        code="zh-CN",
        accept_language="zh-CN,zh;q=0.9",
        timezone="Asia/Shanghai",
        phrase="畅销榜",
        connective="",
        category_first=True,
        block_phrases=("访问被拒绝",),
        title_patterns=_p(r"^(.+?)\s*(?:畅销榜|畅销商品|销售排行)"),
        rating_keywords=("颗星", "星级"),
        review_keywords=("条评", "评论"),
        variant_keywords=("另有", "其他", "版本", "变体", "选项", "颜色", "款式"),
    ),
    "zh-TW": LocaleProfile(
        code="zh-TW",
        accept_language="zh-TW,zh;q=0.9",
        timezone="Asia/Taipei",
        phrase="暢銷榜",
        connective="",
        category_first=True,
        title_patterns=_p(r"^(.+?)\s*(?:暢銷榜|暢銷商品)"),
        rating_keywords=("顆星",),
        review_keywords=("評價", "則評論"),
        variant_keywords=("其他", "選項", "顏色"),
    ),
    "ko": LocaleProfile(
        code="ko",
        accept_language="ko-KR,ko;q=0.9",
        timezone="Asia/Seoul",
        phrase="베스트셀러",
        connective="",
        category_first=True,
        block_phrases=("잠시만요", "권한이 없습니다", "오류"),
        rating_keywords=("별점",),
        review_keywords=("리뷰", "상품평"),
    ),
    "tr": LocaleProfile(
        code="tr",
        accept_language="tr-TR,tr;q=0.9",
        timezone="Europe/Istanbul",
        phrase="En Çok Satılanlar",
        connective="Kategorisinde",
        category_first=True,
        block_phrases=("erişim engellendi",),
        title_patterns=_p(r"^(.+?)\s+Kategorisinde\s+En\s+Çok\s+Satılanlar"),
        rating_keywords=("yıldız",),
        review_keywords=("değerlendirme",),
    ),
    "pt-BR": LocaleProfile(
        code="pt-BR",
        accept_language="pt-BR,pt;q=0.9",
        timezone="America/Sao_Paulo",
        phrase="Mais vendidos",
        connective="em",
        block_phrases=("acesso negado",),
        title_patterns=_p(r"Mais\s+vendidos\s+em\s+(.+?)(?:\s*[-|:]\s*Amazon.*)?$"),
        rating_keywords=("estrelas",),
        review_keywords=("avaliações",),
        variant_keywords=("outras opções",),
    ),
    "es": LocaleProfile(
        code="es",
        accept_language="es-ES,es;q=0.9",
        timezone="Europe/Madrid",
        phrase="Los más vendidos",
        connective="en",
        block_phrases=("acceso denegado",),
        title_patterns=_p(r"(?:Los\s+)?m[aá]s\s+vendidos\s+en\s+(.+?)(?:\s*[-|:]\s*Amazon.*)?$"),
        rating_keywords=("estrellas",),
        review_keywords=("valoraciones",),
        variant_keywords=("otras opciones",),
    ),
    "de": LocaleProfile(
        code="de",
        accept_language="de-DE,de;q=0.9",
        timezone="Europe/Berlin",
        phrase="Bestseller",
        connective="in",
        block_phrases=("zugriff verweigert",),
        title_patterns=_p(r"Bestseller\s+in\s+(.+?)(?:\s*[-|:]\s*Amazon.*)?$"),
        rating_keywords=("sterne",),
        review_keywords=("bewertungen", "rezensionen"),
        variant_keywords=("weitere optionen",),
    ),
    "fr": LocaleProfile(
        code="fr",
        accept_language="fr-FR,fr;q=0.9",
        timezone="Europe/Paris",
        phrase="Meilleures ventes",
        connective="en",
        block_phrases=("accès refusé",),
        title_patterns=_p(r"Meilleures\s+ventes\s+(?:en|dans)\s+(.+?)(?:\s*[-|:]\s*Amazon.*)?$"),
        rating_keywords=("étoiles",),
        review_keywords=("évaluations",),
        variant_keywords=("autres options",),
    ),
    "ru": LocaleProfile(
        code="ru",
        accept_language="ru-RU,ru;q=0.9",
        timezone="Europe/Moscow",
        phrase="Лучшие продажи",
        connective="в",
        block_phrases=("доступ запрещен",),
        title_patterns=_p(r"Лучшие\s+продажи\s+в\s+(.+)$"),
        review_keywords=("отзыв", "оценок"),
    ),
}

DEFAULT_LOCALE = LOCALES["en"]

# registrable suffix -> locale
_SUFFIX_LOCALES = {
    "co.jp": "ja", "jp": "ja",
    "cn": "zh-CN", "com.cn": "zh-CN",
    "tw": "zh-TW", "com.tw": "zh-TW",
    "kr": "ko", "co.kr": "ko",
    "com.tr": "tr",
    "com.br": "pt-BR", "br": "pt-BR",
    "es": "es", "com.mx": "es", "com.ar": "es", "cl": "es",
    "de": "de", "at": "de",
    "fr": "fr",
    "ru": "ru",
}

# marketplaces whose language does not follow their suffix
_HOST_LOCALES = (
    ("coupang.com", "ko"),
    ("trendyol.com", "tr"),
    ("mercadolivre.com.br", "pt-BR"),
    ("wildberries.ru", "ru"),
)

# Amazon-style language path segment: /-/zh/, /-/en/ ...
_LANG_SEGMENT = re.compile(r"/-/([a-z]{2})(?:[_-]([a-z]{2}))?/", re.IGNORECASE)
_LANG_ALIASES = {"zh": "zh-CN", "pt": "pt-BR", "en": "en", "ja": "ja", "ko": "ko",
                 "es": "es", "de": "de", "fr": "fr", "ru": "ru", "tr": "tr"}


def get_locale(code: Optional[str]) -> LocaleProfile:
    return LOCALES.get(code or "", DEFAULT_LOCALE)

def _host_matches(host: str, suffix: str) -> bool:
    return host == suffix or host.endswith("." + suffix)

def locale_for_host(host: str, path: str = "") -> LocaleProfile:
    """Pick a locale from an explicit language path segment, else the host."""
    m = _LANG_SEGMENT.search(path or "")
    if m:
        lang = m.group(1).lower()
        region = (m.group(2) or "").lower()
        if lang == "zh" and region in {"tw", "hk"}:
            return LOCALES["zh-TW"]
        if lang in _LANG_ALIASES:
            return LOCALES[_LANG_ALIASES[lang]]
    host = (host or "").lower()
    for suffix, code in _HOST_LOCALES:
        if _host_matches(host, suffix):
            return LOCALES[code]
    suffix = _EXTRACT(host).suffix if host else ""
    return LOCALES.get(_SUFFIX_LOCALES.get(suffix, ""), DEFAULT_LOCALE)

def accept_language_for_host(host: str, default: str = DEFAULT_ACCEPT_LANGUAGE) -> str:
    host = (host or "").lower()
    for suffix, code in _HOST_LOCALES:
        if _host_matches(host, suffix):
            return LOCALES[code].accept_language
    return default

def timezone_for_language(accept_language: str) -> str:
    primary = (accept_language or "").split(",")[0].strip().lower()
    for profile in LOCALES.values():
        if primary and primary.startswith(profile.code.lower().split("-")[0]):
            if profile.code.startswith("zh") and primary.startswith("zh"):
                return LOCALES["zh-TW"].timezone if "tw" in primary else LOCALES["zh-CN"].timezone
            return profile.timezone
    return "UTC"

def primary_language(accept_language: str) -> str:
    return (accept_language or "").split(",")[0].split(";")[0].strip() or "en-US"

def all_block_phrases() -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for profile in LOCALES.values():
        for phrase in profile.block_phrases:
            seen.setdefault(phrase.lower(), None)
    return tuple(seen)

def keywords(kind: str, profiles: Optional[Iterable[LocaleProfile]] = None) -> Tuple[str, ...]:
    """Union of ``<kind>_keywords`` (rating, review or variant) across locales."""
    attr = f"{kind}_keywords"
    out: Dict[str, None] = {}
    for profile in (profiles or LOCALES.values()):
        for kw in getattr(profile, attr):
            out.setdefault(kw, None)
    return tuple(out)
