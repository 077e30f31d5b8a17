import pytest

from components.sanitizer import sanitize


@pytest.mark.parametrize("raw", [
    "Access Denied",
    "Just a moment...",
    "Checking your browser before accessing",
    "Please complete the CAPTCHA",
    "403 Forbidden",
    "잠시만요",
])
def test_block_pages_are_rejected(raw):
    assert sanitize(raw) == ""


def test_trims_and_keeps_real_titles():
    assert sanitize("  Best Sellers in Kitchen  ") == "Best Sellers in Kitchen"
    assert sanitize("本の売れ筋ランキング") == "本の売れ筋ランキング"


def test_non_strings_and_blanks():
    assert sanitize(None) == ""
    assert sanitize(123) == ""
    assert sanitize("   ") == ""


def test_custom_block_list():
    assert sanitize("Error Correction Codes", block_phrases=("captcha",)) == "Error Correction Codes"
    assert sanitize("Error Correction Codes") == ""


@pytest.mark.parametrize("raw", ["  Kitchen  ", "Just a moment", "", "Mais vendidos em Bebidas"])
def test_sanitize_is_idempotent(raw):
    assert sanitize(sanitize(raw)) == sanitize(raw)
