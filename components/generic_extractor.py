# components/generic_extractor.py
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional

from bs4 import BeautifulSoup

from components.html_query import (
    meta_content, parse_html, prune, select_all, select_first, text_of,
)
from components.sanitizer import sanitize
from titlefinder.utils import collapse_ws, safe_json_loads

logger = logging.getLogger(__name__)

INTERSTITIAL_PATTERNS = (
    "Just a moment", "Checking your browser", "cf-chl-", "Verifying you are human",
)

# keys looked up by the inline-script deep scan, in priority order
DEEP_SCAN_KEYS = ("title", "ogTitle", "seoTitle", "pageTitle", "h1", "name")
_DEEP_SCAN_MIN_CHARS = 80

_CONTENT_CASCADE = (
    "article",
    "main",
    'div#content, div[class*="content"], section',
)


# ---------- structured data ----------

def _iter_ld_nodes(data: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            yield from _iter_ld_nodes(item)
    elif isinstance(data, dict):
        yield data
        graph = data.get("@graph")
        if isinstance(graph, list):
            for item in graph:
                yield from _iter_ld_nodes(item)

def _is_type(node: Dict[str, Any], name: str) -> bool:
    t = node.get("@type")
    if isinstance(t, list):
        return name in t
    return t == name

def _as_text(val: Any) -> str:
    return collapse_ws(val) if isinstance(val, str) else ""

def json_ld_blocks(soup: BeautifulSoup) -> List[Any]:
    blocks = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        data = safe_json_loads(script.string or script.get_text() or "")
        if data is not None:
            blocks.append(data)
    return blocks

def json_ld_title(soup: BeautifulSoup) -> str:
    """
    ``name`` of the first JSON-LD object that has one. A BreadcrumbList
    yields its last item, the most specific category.
    """
    for block in json_ld_blocks(soup):
        for node in _iter_ld_nodes(block):
            if _is_type(node, "BreadcrumbList"):
                items = node.get("itemListElement") or []
                if isinstance(items, list) and items:
                    last = items[-1] if isinstance(items[-1], dict) else {}
                    inner = last.get("item") if isinstance(last.get("item"), dict) else {}
                    name = _as_text(inner.get("name")) or _as_text(last.get("name"))
                    if name:
                        return name
                continue
            name = _as_text(node.get("name"))
            if name:
                return name
    return ""

def extract_json_ld_title(html: str) -> str:
    if not html:
        return ""
    return sanitize(json_ld_title(parse_html(html)))


# ---------- titles ----------

def _h1(soup):
    return text_of(select_first(soup, "h1"))

def _doc_title(soup):
    return text_of(soup.title) if soup.title else ""

def _h2(soup):
    return text_of(select_first(soup, "h2"))

def _og(soup):
    return meta_content(soup, "og:title", "twitter:title")

_TITLE_CASCADE = (_h1, _doc_title, _h2, json_ld_title, _og)


def extract_best_title(html: str) -> str:
    if not html:
        return ""
    soup = parse_html(html)
    for pick in _TITLE_CASCADE:
        candidate = sanitize(pick(soup))
        if candidate:
            return candidate
    return ""

def extract_og_title(html: str) -> str:
    if not html:
        return ""
    return sanitize(_og(parse_html(html)))

def extract_title_from_html(html: str) -> str:
    """Document title, else the first h1. Used on reader output."""
    if not html:
        return ""
    soup = parse_html(html)
    return sanitize(_doc_title(soup) or _h1(soup))


# ---------- deep script scan ----------

def _find_keyed_strings(data: Any, keys: Iterable[str]) -> Iterator[str]:
    keys = tuple(keys)
    stack = [data]
    while stack:
        cur = stack.pop(0)
        if isinstance(cur, dict):
            for k in keys:
                v = cur.get(k)
                if isinstance(v, str) and v.strip():
                    yield v
            stack.extend(v for v in cur.values() if isinstance(v, (dict, list)))
        elif isinstance(cur, list):
            stack.extend(v for v in cur if isinstance(v, (dict, list)))

def _script_payloads(text: str) -> Iterator[Any]:
    data = safe_json_loads(text)
    if data is not None:
        yield data
        return
    # state blobs like window.__STATE__ = {...};
    decoder = json.JSONDecoder()
    for m in re.finditer(r"[{\[]", text):
        try:
            obj, _ = decoder.raw_decode(text, m.start())
        except ValueError:
            continue
        if isinstance(obj, (dict, list)) and obj:
            yield obj
            return

def deep_scan_script_title(html: str) -> str:
    """Last resort: title-like JSON keys inside inline scripts."""
    if not html:
        return ""
    soup = parse_html(html)
    for script in soup.find_all("script"):
        if script.get("src"):
            continue
        body = script.string or script.get_text() or ""
        if len(body) < _DEEP_SCAN_MIN_CHARS:
            continue
        for payload in _script_payloads(body):
            for key in DEEP_SCAN_KEYS:
                for val in _find_keyed_strings(payload, (key,)):
                    hit = sanitize(collapse_ws(val))
                    if hit:
                        return hit
    return ""


# ---------- content ----------

def extract_generic_content(html: str, max_chars: Optional[int] = None) -> Dict[str, str]:
    soup = prune(parse_html(html or ""))
    title = _doc_title(soup)
    text = ""
    for selector in _CONTENT_CASCADE:
        el = select_first(soup, selector)
        if el is not None:
            text = text_of(el)
            if text:
                break
    if not text:
        text = text_of(soup.body) if soup.body else text_of(soup)
    if max_chars is not None and len(text) > max_chars:
        text = text[:max_chars].rstrip()
    return {"title": title, "text": text}


# ---------- diagnostics ----------

def detect_interstitial(html: str) -> bool:
    low = (html or "").lower()
    return any(p.lower() in low for p in INTERSTITIAL_PATTERNS)

def describe_html(html: str) -> Dict[str, Any]:
    soup = parse_html(html or "")
    return {
        "length": len(html or ""),
        "h1": select_first(soup, "h1") is not None,
        "title": bool(_doc_title(soup)),
        "og_title": bool(_og(soup)),
        "json_ld": bool(select_all(soup, 'script[type="application/ld+json"]')),
        "interstitial": detect_interstitial(html),
    }
