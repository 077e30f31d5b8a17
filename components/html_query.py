# components/html_query.py
"""
Thin query layer over BeautifulSoup.

Extractors only use what is exported here (parse, select, find-by-attribute
substring, closest ancestor, text/attr/meta readers, prune), so their selector
cascades stay plain lists of (selector, reader) pairs.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

import soupsieve
from bs4 import BeautifulSoup
from bs4.element import Tag

from titlefinder.utils import collapse_ws

logger = logging.getLogger(__name__)

Node = Union[BeautifulSoup, Tag]
Reader = Callable[[Tag], str]

_PRUNE_TAGS = ("script", "style", "noscript", "template")


def parse_html(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html or "", "lxml")
    except Exception as e:  # parser missing or choked; html.parser is always there
        logger.debug("lxml parse failed (%s); falling back to html.parser", e)
        return BeautifulSoup(html or "", "html.parser")

def select_all(node: Optional[Node], selector: str) -> List[Tag]:
    if node is None:
        return []
    return list(node.select(selector))

def select_first(node: Optional[Node], selector: str) -> Optional[Tag]:
    if node is None:
        return None
    return node.select_one(selector)

def closest(el: Optional[Tag], selector: str) -> Optional[Tag]:
    """Nearest ancestor-or-self matching ``selector``."""
    cur = el
    while isinstance(cur, Tag) and not isinstance(cur, BeautifulSoup):
        if soupsieve.match(selector, cur):
            return cur
        cur = cur.parent
    return None

def is_inside(el: Tag, selector: str) -> bool:
    return closest(el, selector) is not None

def text_of(el: Optional[Tag]) -> str:
    if el is None:
        return ""
    return collapse_ws(el.get_text(" ", strip=True))

def attr(el: Optional[Tag], name: str) -> str:
    if el is None:
        return ""
    val = el.get(name)
    if isinstance(val, list):
        val = " ".join(val)
    return collapse_ws(val if isinstance(val, str) else "")

def find_by_attr_substring(node: Optional[Node], tag: Optional[str], name: str, needle: str) -> List[Tag]:
    """Elements (of ``tag``, or any tag) whose ``name`` attribute contains ``needle``, case-insensitively."""
    if node is None:
        return []
    needle = needle.lower()
    return [el for el in node.find_all(tag or True) if needle in attr(el, name).lower()]

def meta_content(node: Node, *keys: str) -> str:
    """Value of the first ``<meta property|name=key>`` present."""
    for key in keys:
        el = node.find("meta", attrs={"property": key}) or node.find("meta", attrs={"name": key})
        val = attr(el, "content")
        if val:
            return val
    return ""

def prune(node: Node, tags: Sequence[str] = _PRUNE_TAGS) -> Node:
    for el in node.find_all(list(tags)):
        el.decompose()
    return node

def first_value(node: Optional[Node], cascade: Iterable[Tuple[str, Reader]]) -> str:
    """Run a (selector, reader) cascade; the first non-empty read wins."""
    if node is None:
        return ""
    for selector, reader in cascade:
        el = select_first(node, selector)
        if el is None:
            continue
        val = collapse_ws(reader(el))
        if val:
            return val
    return ""
