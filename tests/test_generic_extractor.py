from components.generic_extractor import (
    deep_scan_script_title,
    describe_html,
    detect_interstitial,
    extract_best_title,
    extract_generic_content,
    extract_json_ld_title,
    extract_og_title,
    extract_title_from_html,
)


def test_best_title_prefers_h1():
    html = "<html><head><title>Doc Title</title></head><body><h1> Heading </h1><h2>Sub</h2></body></html>"
    assert extract_best_title(html) == "Heading"


def test_best_title_skips_blocked_candidates():
    html = (
        "<html><head><title>Just a moment...</title>"
        '<meta property="og:title" content="Kitchen Gadgets"></head>'
        "<body><h1>Access Denied</h1></body></html>"
    )
    assert extract_best_title(html) == "Kitchen Gadgets"


def test_best_title_uses_json_ld_before_og():
    html = (
        '<html><head><meta property="og:title" content="OG Name">'
        '<script type="application/ld+json">{"@type": "ItemList", "name": "LD Name"}</script>'
        "</head><body></body></html>"
    )
    assert extract_best_title(html) == "LD Name"


def test_best_title_empty_input():
    assert extract_best_title("") == ""
    assert extract_best_title("<html><body><p>no titles</p></body></html>") == ""


def test_json_ld_breadcrumb_yields_last_item():
    html = """
    <script type="application/ld+json">
    {"@graph": [{"@type": "BreadcrumbList", "itemListElement": [
        {"@type": "ListItem", "position": 1, "item": {"name": "Home"}},
        {"@type": "ListItem", "position": 2, "item": {"name": "Bebidas Energéticas"}}
    ]}]}
    </script>
    """
    assert extract_json_ld_title(html) == "Bebidas Energéticas"


def test_json_ld_ignores_malformed_blocks():
    html = (
        '<script type="application/ld+json">{not json</script>'
        '<script type="application/ld+json">[{"name": "Second"}]</script>'
    )
    assert extract_json_ld_title(html) == "Second"


def test_og_and_twitter_titles():
    assert extract_og_title('<meta property="og:title" content=" Sale ">') == "Sale"
    assert extract_og_title('<meta name="twitter:title" content="Tweeted">') == "Tweeted"
    assert extract_og_title("<p>nothing</p>") == ""


def test_title_from_html_prefers_document_title():
    assert extract_title_from_html("<title>T</title><h1>H</h1>") == "T"
    assert extract_title_from_html("<h1>H</h1>") == "H"


def test_deep_scan_finds_title_in_state_blob():
    blob = '{"props": {"pageProps": {"seo": {"seoTitle": "Top Headphones"}}}, "padding": "' + "x" * 80 + '"}'
    html = f"<html><body><script>window.__STATE__ = {blob};</script></body></html>"
    assert deep_scan_script_title(html) == "Top Headphones"


def test_deep_scan_ignores_short_and_external_scripts():
    html = '<script>{"title": "short"}</script><script src="/app.js"></script>'
    assert deep_scan_script_title(html) == ""


def test_generic_content_prunes_scripts_and_truncates():
    html = (
        "<html><head><title>Page</title></head><body>"
        "<script>var x = 1;</script><main>Hello main content</main></body></html>"
    )
    out = extract_generic_content(html, max_chars=10)
    assert out["title"] == "Page"
    assert out["text"] == "Hello main"


def test_interstitial_and_describe():
    html = "<html><head><title>Just a moment...</title></head><body><h1>x</h1></body></html>"
    assert detect_interstitial(html)
    info = describe_html(html)
    assert info["h1"] is True
    assert info["title"] is True
    assert info["og_title"] is False
    assert info["json_ld"] is False
    assert info["interstitial"] is True
    assert info["length"] == len(html)
