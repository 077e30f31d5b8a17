from __future__ import annotations

from typing import Iterable, Optional, Tuple

from titlefinder.locales import all_block_phrases

BLOCK_PHRASES: Tuple[str, ...] = all_block_phrases()


def sanitize(text: Optional[str], block_phrases: Iterable[str] = BLOCK_PHRASES) -> str:
    """
    Trim ``text``; return "" when it reads like a block/challenge page.
    An empty result means "reject this candidate", never an error.
    """
    if not isinstance(text, str):
        return ""
    t = text.strip()
    if not t:
        return ""
    low = t.lower()
    if any(p in low for p in block_phrases):
        return ""
    return t
