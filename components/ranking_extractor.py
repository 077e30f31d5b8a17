# components/ranking_extractor.py
"""
Ranked-product extraction for Amazon-style best-seller (zg) pages.

Two entry points share the item machinery:

* ``extract_structured(html, base_url)`` returns a ``RankingPage`` with the
  page title, active category, sidebar category links and items. A missing
  review count is ``None``.
* ``extract_ranking_json(html)`` is the lighter variant used for plain JSON
  dumps. A missing review count is ``UNKNOWN_REVIEW_COUNT``.

Items come from a three-tier cascade; a tier only runs when the previous
one produced nothing: ranked list entries, then every product anchor on the
page, then image alt text of card-like containers.
"""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from bs4.element import Tag

from components.html_query import (
    attr, closest, find_by_attr_substring, first_value, is_inside, parse_html, select_all, select_first,
    text_of,
)
from components.sanitizer import sanitize
from titlefinder.locales import DEFAULT_LOCALE, LocaleProfile, keywords, locale_for_host
from titlefinder.utils import TargetURL, collapse_ws

logger = logging.getLogger(__name__)

UNKNOWN_REVIEW_COUNT = "unknown"

TIER_CAPS = {"list": 100, "anchors": 50, "images": 30}
SIDEBAR_CAP = 50

LIST_CONTAINER = 'ol#zg-ordered-list, #zg-ordered-list, div.p13n-gridRow, div[class*="p13n-gridRow"]'
LIST_CARDS = (
    'ol#zg-ordered-list > li, #zg-ordered-list li, .zg-grid-general-faceout, '
    'div[id^="gridItemRoot"], div[class*="grid-cell"], div[data-testid="grid-cell"]'
)
JSON_LIST_CARDS = "ol#zg-ordered-list > li"
LOOSE_CARDS = 'li, article, .zg-grid-general-faceout, div[id^="gridItemRoot"], .a-section, .sg-col'
ANCHOR_CONTAINER = 'li, .zg-grid-general-faceout, div[id^="gridItemRoot"], .a-section, .sg-col, div'

PRODUCT_ANCHOR = 'a[href*="/dp/"], a[href*="/gp/product/"]'
TITLE_IN_ANCHOR = (
    'span.a-size-base, span.a-size-medium, span.a-size-large, '
    '[class*="line-clamp"], .p13n-sc-truncate, [class*="p13n-sc-truncated"]'
)
REVIEW_LABELS = '.a-size-small.a-link-normal, [data-hook="total-review-count"], span.a-size-small'
RATING_LABELS = '.a-icon-alt, [aria-label*="星"], [aria-label*="stars"]'
REVIEWS_LINK = 'a[href*="/product-reviews/"]'
SIDEBAR_LINKS = 'a[href*="/gp/bestsellers/"], a[href*="/zgbs/"]'

_TITLE_CASCADE = (
    ("#zg_banner_text", text_of),
    (".zg-banner-text", text_of),
    ("h1", text_of),
    ("title", text_of),
)
_ACTIVE_CATEGORY_CASCADE = (
    ("#zg_browseRoot .zg_selected a", text_of),
    ("#zg_browseRoot .zg_selected", text_of),
    ('#zg_browseRoot a[aria-current="true"]', text_of),
    ('[role="tree"] [class*="zg-selected"]', text_of),
    ('[role="tree"] a[aria-current="true"]', text_of),
    ('#zg-left-col [aria-current="true"]', text_of),
)

_NAV_MARKER = re.compile(r"zg_bs_nav_([A-Za-z0-9_-]+)")
_CATEGORY_ID = re.compile(r"^\d{4,}$")
_CATEGORY_QUERY_KEYS = ("node",)

_COUNT = re.compile(r"\d[\d,.\s]*")
_RATING_SHAPE = re.compile(r"^\s*\d(?:[.,]\d)?\s*(?:out\s+of|/|de|von|sur|из)\s*5", re.IGNORECASE)
_PRICE_TEXT = re.compile(
    r"(?:JP¥|US\$|R\$|[￥¥$€£₹₩₺₽])\s*\d[\d,.]*"
    r"|\d[\d,.]*\s*(?:€|TL|₺|₽|руб\.?|円)",
)


def _keyword_pattern(words: Sequence[str]) -> re.Pattern:
    parts = []
    for w in words:
        esc = re.escape(w)
        parts.append(rf"\b{esc}\b" if w.isascii() else esc)
    return re.compile("|".join(parts) or r"(?!)", re.IGNORECASE)

_RATING_WORDS = _keyword_pattern(keywords("rating"))
_VARIANT_WORDS = _keyword_pattern(keywords("variant"))
_REVIEW_WORDS = _keyword_pattern(keywords("review"))


# ---------- models ----------

ReviewCount = Union[int, str, None]

@dataclass
class RankedItem:
    rank: int
    product_name: str
    review_count: ReviewCount = None
    product_url: str = ""
    rating_text: str = ""
    reviews_url: str = ""
    price_text: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

@dataclass
class SidebarLink:
    name: str
    url: str
    nav_level: Optional[int] = None
    nav_ancestor: Optional[str] = None
    category_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

@dataclass
class RankingPage:
    title: str = ""
    active_category: str = ""
    active_category_id: Optional[str] = None
    sidebar: List[SidebarLink] = field(default_factory=list)
    items: List[RankedItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

@dataclass
class RankingJSON:
    ranking_title: str = ""
    items: List[RankedItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------- field readers ----------

def looks_like_rating(text: str) -> bool:
    return bool(_RATING_SHAPE.search(text) or _RATING_WORDS.search(text))

def looks_like_variant(text: str) -> bool:
    return bool(_VARIANT_WORDS.search(text))

def looks_like_review_count(text: str) -> bool:
    return bool(_REVIEW_WORDS.search(text or "")) and any(c.isdigit() for c in text)

def _abs_url(base_url: str, href: str) -> str:
    if not href:
        return ""
    full = urljoin(base_url or "", href)
    return full if full.startswith(("http://", "https://")) else ""

def _anchor_name(anchor: Tag) -> str:
    name = text_of(select_first(anchor, TITLE_IN_ANCHOR))
    if not name:
        img = select_first(anchor, "img[alt]")
        name = attr(img, "alt")
    if not name:
        name = text_of(anchor)
    return name

def parse_review_count(text: str) -> Optional[int]:
    text = collapse_ws(text)
    if not text or _RATING_SHAPE.search(text):
        return None
    m = _COUNT.search(text)
    if not m:
        return None
    digits = re.sub(r"\D", "", m.group(0))
    return int(digits) if digits else None

def _review_count(card: Tag) -> Optional[int]:
    labels = [text_of(el) for el in select_all(card, REVIEW_LABELS)]
    # labels carrying a review hint ("1,234 ratings", "56件") go first
    for label in sorted(labels, key=lambda t: not looks_like_review_count(t)):
        count = parse_review_count(label)
        if count is not None:
            return count
    return None

def _rating_text(card: Tag) -> str:
    el = select_first(card, RATING_LABELS)
    if el is None:
        return ""
    return text_of(el) or attr(el, "aria-label")

def _price_text(card: Tag) -> str:
    block = select_first(card, ".a-price")
    if block is not None:
        offscreen = text_of(select_first(block, ".a-offscreen"))
        if offscreen:
            return offscreen
        symbol = text_of(select_first(block, ".a-price-symbol"))
        whole = text_of(select_first(block, ".a-price-whole")).rstrip(".,")
        fraction = text_of(select_first(block, ".a-price-fraction"))
        if whole:
            return f"{symbol}{whole}" + (f".{fraction}" if fraction else "")
    for el in find_by_attr_substring(card, None, "class", "p13n-sc-price"):
        tagged = text_of(el)
        if tagged:
            return tagged
    m = _PRICE_TEXT.search(text_of(card))
    return collapse_ws(m.group(0)) if m else ""


# ---------- item cascade ----------

@dataclass
class _Draft:
    name: str
    url: str
    card: Optional[Tag]

def _tier_list(soup: BeautifulSoup, base_url: str, card_selector: str) -> List[_Draft]:
    out: List[_Draft] = []
    for card in select_all(soup, card_selector):
        for anchor in select_all(card, PRODUCT_ANCHOR):
            name = _anchor_name(anchor)
            if not name or looks_like_rating(name):
                continue
            out.append(_Draft(name, _abs_url(base_url, anchor.get("href") or ""), card))
            break
    return out

def _tier_anchors(soup: BeautifulSoup, base_url: str) -> List[_Draft]:
    out: List[_Draft] = []
    for anchor in select_all(soup, PRODUCT_ANCHOR):
        name = _anchor_name(anchor)
        if len(name) < 2 or looks_like_rating(name) or looks_like_variant(name):
            continue
        out.append(_Draft(name, _abs_url(base_url, anchor.get("href") or ""), closest(anchor, ANCHOR_CONTAINER)))
    return out

def _tier_images(soup: BeautifulSoup, base_url: str) -> List[_Draft]:
    out: List[_Draft] = []
    for card in select_all(soup, LOOSE_CARDS):
        name = attr(select_first(card, "img[alt]"), "alt")
        if len(name) < 2:
            continue
        anchor = select_first(card, PRODUCT_ANCHOR)
        href = anchor.get("href") if anchor is not None else ""
        out.append(_Draft(name, _abs_url(base_url, href or ""), card))
    return out

def _dedup_key(draft: _Draft, by_name: bool) -> str:
    if draft.url and not by_name:
        return draft.url
    return collapse_ws(draft.name).lower()

def _build_items(
    drafts: List[_Draft],
    base_url: str,
    *,
    cap: int,
    by_name: bool,
    missing_reviews: ReviewCount,
) -> List[RankedItem]:
    items: List[RankedItem] = []
    seen: set = set()
    for d in drafts:
        name = collapse_ws(d.name)
        if not name:
            continue
        key = _dedup_key(d, by_name)
        if key in seen:
            continue
        seen.add(key)
        card = d.card
        count = _review_count(card) if card is not None else None
        reviews_href = select_first(card, REVIEWS_LINK) if card is not None else None
        items.append(RankedItem(
            rank=len(items) + 1,
            product_name=name,
            review_count=count if count is not None else missing_reviews,
            product_url=d.url,
            rating_text=_rating_text(card) if card is not None else "",
            reviews_url=_abs_url(d.url or base_url, reviews_href.get("href") or "") if reviews_href is not None else "",
            price_text=_price_text(card) if card is not None else "",
        ))
        if len(items) >= cap:
            break
    return items

def _cascade(
    soup: BeautifulSoup,
    base_url: str,
    *,
    list_cards: str,
    by_name: bool,
    missing_reviews: ReviewCount,
) -> List[RankedItem]:
    tiers: Tuple[Tuple[str, Callable[[], List[_Draft]]], ...] = (
        ("list", lambda: _tier_list(soup, base_url, list_cards)),
        ("anchors", lambda: _tier_anchors(soup, base_url)),
        ("images", lambda: _tier_images(soup, base_url)),
    )
    for tier, collect in tiers:
        items = _build_items(collect(), base_url, cap=TIER_CAPS[tier], by_name=by_name, missing_reviews=missing_reviews)
        if items:
            logger.debug("ranking items from tier=%s count=%d", tier, len(items))
            return items
    return []


# ---------- page-level fields ----------

def category_id_from_url(url: str) -> Optional[str]:
    target = TargetURL.parse(url)
    for seg in reversed(target.segments):
        if _CATEGORY_ID.match(seg):
            return seg
    for key in _CATEGORY_QUERY_KEYS:
        val = target.param(key)
        if _CATEGORY_ID.match(val):
            return val
    return None

def parse_nav_marker(href: str) -> Tuple[Optional[int], Optional[str], Optional[str]]:
    """
    ``zg_bs_nav_<ancestor>_<level>[_<id>]`` -> (level, ancestor, id).
    ``zg_bs_nav_0`` is the tree root.
    """
    m = _NAV_MARKER.search(href or "")
    if not m:
        return None, None, None
    tokens = [t for t in m.group(1).split("_") if t]
    level_idx = next((i for i, t in enumerate(tokens) if t.isdigit() and len(t) <= 2), None)
    if level_idx is None:
        return None, (tokens[0] if tokens else None), None
    ancestor = "_".join(tokens[:level_idx]) or None
    tail = tokens[level_idx + 1:]
    cat_id = next((t for t in tail if _CATEGORY_ID.match(t)), None)
    return int(tokens[level_idx]), ancestor, cat_id

def extract_sidebar(soup: BeautifulSoup, base_url: str) -> List[SidebarLink]:
    links: List[SidebarLink] = []
    seen: set = set()
    for a in select_all(soup, SIDEBAR_LINKS):
        href = a.get("href") or ""
        if "zg_bs_nav_" not in href or is_inside(a, LIST_CONTAINER):
            continue
        name = text_of(a)
        url = _abs_url(base_url, href) or href
        if not name or (name, url) in seen:
            continue
        seen.add((name, url))
        level, ancestor, marker_id = parse_nav_marker(href)
        links.append(SidebarLink(
            name=name,
            url=url,
            nav_level=level,
            nav_ancestor=ancestor,
            category_id=category_id_from_url(url) or marker_id,
        ))
        if len(links) >= SIDEBAR_CAP:
            break
    return links

def category_from_title(raw_title: str, locale: LocaleProfile) -> str:
    for profile in (locale, DEFAULT_LOCALE):
        for pat in profile.title_patterns:
            m = pat.search(raw_title or "")
            if m:
                return collapse_ws(m.group(1))
    return ""


# ---------- entry points ----------

def extract_structured(html: str, base_url: str) -> RankingPage:
    soup = parse_html(html or "")
    target = TargetURL.parse(base_url)
    locale = locale_for_host(target.host, target.path)

    title = first_value(soup, _TITLE_CASCADE)
    active = first_value(soup, _ACTIVE_CATEGORY_CASCADE)
    if not active:
        raw_title = text_of(soup.title) if soup.title else ""
        active = category_from_title(raw_title, locale) or category_from_title(title, locale)
    if active:
        title = locale.compose(active)

    page = RankingPage(
        title=sanitize(title),
        active_category=active,
        active_category_id=category_id_from_url(base_url),
        sidebar=extract_sidebar(soup, base_url),
        items=_cascade(soup, base_url, list_cards=LIST_CARDS, by_name=False, missing_reviews=None),
    )
    logger.info(
        "structured ranking %s: title=%r items=%d sidebar=%d",
        base_url, page.title, len(page.items), len(page.sidebar),
    )
    return page

def extract_ranking_json(html: str, base_url: str = "") -> RankingJSON:
    soup = parse_html(html or "")
    list_cards = JSON_LIST_CARDS if select_first(soup, JSON_LIST_CARDS) is not None else "li"
    return RankingJSON(
        ranking_title=sanitize(first_value(soup, (("h1", text_of), ("title", text_of)))),
        items=_cascade(soup, base_url, list_cards=list_cards, by_name=True, missing_reviews=UNKNOWN_REVIEW_COUNT),
    )
