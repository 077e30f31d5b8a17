# components/site_rules.py
"""
URL-shape rules for known best-seller listings.

Every rule is a pure function of (url, html): it never touches the network
and never raises. A rule whose URL shape does not match declines at once.
On a match it looks for the category name in the supplied HTML, then in
JSON-LD, then in a small built-in code table, and formats the result with
its marketplace's phrase.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Pattern, Protocol, Sequence, Tuple

from components.generic_extractor import extract_json_ld_title
from components.sanitizer import sanitize
from titlefinder.locales import LocaleProfile, get_locale, locale_for_host
from titlefinder.utils import TargetURL, collapse_ws

logger = logging.getLogger(__name__)


class ExtractionRule(Protocol):
    name: str

    def try_extract(self, url: str, html: str = "") -> Optional[str]:
        ...


@dataclass(frozen=True)
class RuleHit:
    rule: str
    title: str


# ---------- shared helpers ----------

_BOILERPLATE_LABELS = (
    "mais vendidos", "mas vendidos", "más vendidos", "best sellers", "bestsellers",
    "bestseller", "top sellers", "ranking", "rankings", "popular", "zgbs",
    "sirali urunler", "sıralı ürünler",
)
_BOILERPLATE_PREFIX = re.compile(
    r"^(?:" + "|".join(re.escape(b) for b in _BOILERPLATE_LABELS) + r")\b\s*",
    re.IGNORECASE,
)
_SKIP_SEGMENT = re.compile(r"^(?:\d+|MLB\d{3,}|ref=.*|gp|-)$", re.IGNORECASE)
_FILE_EXT = re.compile(r"\.(?:html?|aspx?|php|jsp)$", re.IGNORECASE)
_SITE_SUFFIX = re.compile(r"\s+[|\-–]\s+.*$")
_MELI_CODE = re.compile(r"^MLB\d{3,}$", re.IGNORECASE)


def label_from_path(url: str) -> str:
    """Last meaningful path segment, with numeric ids and boilerplate words skipped."""
    target = TargetURL.parse(url)
    for seg in reversed(target.segments):
        seg = _FILE_EXT.sub("", seg.strip())
        if not seg or _SKIP_SEGMENT.match(seg):
            continue
        label = collapse_ws(re.sub(r"[-_+]+", " ", seg))
        label = _BOILERPLATE_PREFIX.sub("", label).strip()
        if label and not label.isdigit():
            return label
    return ""

def meli_category_code(url: str) -> str:
    """Category code of a /mais-vendidos/ listing, e.g. MLB278123, else ""."""
    target = TargetURL.parse(url)
    if not target.host_endswith("mercadolivre.com.br"):
        return ""
    if not target.path.lower().startswith("/mais-vendidos"):
        return ""
    for seg in reversed(target.segments):
        if _MELI_CODE.match(seg):
            return seg.upper()
    return ""

def _category_from_title(text: str, locale: LocaleProfile) -> str:
    """Undo a localized best-sellers title back to its category, if it is one."""
    for pat in locale.title_patterns:
        m = pat.search(text)
        if m:
            return collapse_ws(m.group(1))
    return text

def _clean_candidate(raw: str, invalid: Sequence[str] = ()) -> str:
    name = collapse_ws(_SITE_SUFFIX.sub("", collapse_ws(raw)))
    name = sanitize(name)
    if not name or name.lower() in invalid:
        return ""
    return name

def _from_html(html: str, pattern: Pattern[str], locale: LocaleProfile, invalid: Sequence[str] = ()) -> str:
    if not html:
        return ""
    m = pattern.search(html)
    if m:
        name = _clean_candidate(m.group(1), invalid)
        if name:
            return name
    structured = extract_json_ld_title(html)
    if structured:
        return _clean_candidate(_category_from_title(structured, locale), invalid)
    return ""


# ---------- marketplace rules ----------

class TrendyolBestSellerRule:
    name = "trendyol-bestseller"
    locale = get_locale("tr")
    known_categories: Mapping[str, str] = {"105500": "Bebek Ek Besin"}

    _pattern = re.compile(r"([A-Za-zÇĞİÖŞÜçğıöşü\s]+?)\s+Kategorisinde\s+En\s+Çok\s+Satılanlar", re.IGNORECASE)
    _invalid = ("sirali urunler", "sıralı ürünler")

    def matches(self, target: TargetURL) -> bool:
        return (
            target.host_endswith("trendyol.com")
            and "/sirali-urunler" in target.path.lower()
            and target.param("type").lower() == "bestseller"
        )

    def try_extract(self, url: str, html: str = "") -> Optional[str]:
        target = TargetURL.parse(url)
        if not self.matches(target):
            return None
        name = _from_html(html, self._pattern, self.locale, self._invalid)
        if not name:
            name = self.known_categories.get(target.param("categoryId"), "")
        return sanitize(self.locale.compose(name)) or None


class MercadoLivreBestSellerRule:
    name = "mercadolivre-mais-vendidos"
    locale = get_locale("pt-BR")
    known_categories: Mapping[str, str] = {
        "MLB278123": "Bebidas Alcoólicas Mistas",
        "MLB270414": "Bebidas Energéticas",
    }

    _pattern = re.compile(r"Mais\s+vendidos\s+em\s*([^<\n]+)", re.IGNORECASE)
    _invalid = ("mais vendidos", "mercado livre")

    def matches(self, target: TargetURL) -> bool:
        return target.host_endswith("mercadolivre.com.br") and target.path.lower().startswith("/mais-vendidos/")

    def try_extract(self, url: str, html: str = "") -> Optional[str]:
        target = TargetURL.parse(url)
        if not self.matches(target):
            return None
        name = _from_html(html, self._pattern, self.locale, self._invalid)
        if not name:
            name = self.known_categories.get(meli_category_code(url), "")
        return sanitize(self.locale.compose(name)) or None


class WildberriesPopularRule:
    """Returns the bare category name; Wildberries listings carry no phrase."""

    name = "wildberries-popular"
    locale = get_locale("ru")
    known_subjects: Mapping[str, str] = {"3418": "Консервированные продукты"}
    known_slugs: Mapping[str, str] = {
        "konservatsiya": "Консервированные продукты",
        "napitki": "Напитки",
    }

    def matches(self, target: TargetURL) -> bool:
        return target.host_endswith("wildberries.ru") and target.param("sort").lower() == "popular"

    def _from_tables(self, target: TargetURL) -> str:
        for sid in re.split(r"[;,]", target.param("xsubject")):
            name = self.known_subjects.get(sid.strip())
            if name:
                return name
        for seg in reversed(target.segments):
            name = self.known_slugs.get(seg.lower())
            if name:
                return name
        return ""

    def try_extract(self, url: str, html: str = "") -> Optional[str]:
        target = TargetURL.parse(url)
        if not self.matches(target):
            return None
        name = ""
        if html:
            known = tuple(self.known_subjects.values()) + tuple(self.known_slugs.values())
            name = next((n for n in known if n in html), "")
            if not name:
                name = _clean_candidate(extract_json_ld_title(html))
        name = name or self._from_tables(target) or label_from_path(url)
        return sanitize(name) or None


class GenericBestSellerRule:
    """Cross-marketplace fallback keyed on common best-seller URL signals."""

    name = "generic-bestseller"

    _path_signal = re.compile(
        r"best[-_ ]?sellers?|top[-_ ]?sellers?|rankings?|popular|zgbs"
        r"|(?:mais|mas|más)[-_ ]vendidos|sirali-urunler",
        re.IGNORECASE,
    )
    _pattern = re.compile(
        r"(?:Best\s+sellers\s+in|Mais\s+vendidos\s+em|Más\s+vendidos\s+en|売れ筋ランキング)\s*[:：]?\s*([^<\n]+)",
        re.IGNORECASE,
    )

    def matches(self, target: TargetURL) -> bool:
        if self._path_signal.search(target.path):
            return True
        if "ranking" in target.host:
            return True
        return target.param("sortBy").lower() == "sales" or target.param("sort").lower() == "popular"

    def try_extract(self, url: str, html: str = "") -> Optional[str]:
        target = TargetURL.parse(url)
        if not self.matches(target):
            return None
        locale = locale_for_host(target.host, target.path)
        name = _from_html(html, self._pattern, locale) or label_from_path(url)
        return sanitize(locale.compose(name)) or None


# Site-specific rules first; the generic rule must stay last.
DEFAULT_RULES: Tuple[ExtractionRule, ...] = (
    TrendyolBestSellerRule(),
    MercadoLivreBestSellerRule(),
    WildberriesPopularRule(),
    GenericBestSellerRule(),
)


class RuleEngine:
    def __init__(self, rules: Sequence[ExtractionRule] = DEFAULT_RULES) -> None:
        self.rules: Tuple[ExtractionRule, ...] = tuple(rules)

    def run(self, url: str, html: str = "") -> Optional[RuleHit]:
        for rule in self.rules:
            title = sanitize(rule.try_extract(url, html) or "")
            if title:
                logger.debug("rule %s matched %s -> %r", rule.name, url, title)
                return RuleHit(rule=rule.name, title=title)
        return None
