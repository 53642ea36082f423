"""
Tests for LinkVerifier: HTML link matching, brand mentions and fetch failures.
Pages are served through httpx.MockTransport; nothing leaves the process.
"""

import httpx
import pytest

from app.services.link_verifier import (
    LinkVerifier, extract_anchors, href_matches_target, anchor_text_relates,
)

TARGET = "https://target.com/page"


# ── Pure helpers ─────────────────────────────────────────────────────

def test_href_matches_target_normalizes_case_and_trailing_slash():
    assert href_matches_target("https://TARGET.com/Page/", TARGET)
    assert href_matches_target("https://target.com/page?utm_source=x", TARGET)
    assert not href_matches_target("https://other.com/page", TARGET)
    assert not href_matches_target("https://target.com.evil.io/page", TARGET)


def test_anchor_text_relates_both_directions():
    assert anchor_text_relates("the best widgets in town", "best widgets")
    assert anchor_text_relates("widgets", "best widgets")
    assert not anchor_text_relates("gadgets", "best widgets")
    assert anchor_text_relates("", "best widgets")
    assert not anchor_text_relates("best widgets", "  ")


def test_extract_anchors_resolves_relative_hrefs_and_rel():
    html = '<a href="/page" rel="sponsored nofollow">Best  <b>Widgets</b></a><a>no href</a>'
    anchors = extract_anchors(html, "https://target.com/blog/post")
    assert len(anchors) == 1
    assert anchors[0].href == "https://target.com/page"
    assert anchors[0].anchor_text == "Best Widgets"
    assert anchors[0].is_nofollow is True


def test_extract_anchors_joins_text_split_by_inline_tags():
    anchors = extract_anchors('<a href="/p">key<strong>word</strong></a>', "https://target.com/")
    assert anchors[0].anchor_text == "keyword"


# ── verify() ─────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_dofollow_link_with_matching_anchor_verifies(page_verifier):
    html = f'<p>Read <a href="{TARGET}">best widgets</a> today.</p>'
    result = await page_verifier(html).verify("https://pub.example.org/post", TARGET, "best widgets", "hyperlink_dofollow")
    assert result.verified is True
    assert result.link_found and result.anchor_text_match and result.link_type_match
    assert result.found_link.is_dofollow is True
    assert result.details[0] == "Found 1 link(s) to target URL"


@pytest.mark.anyio
async def test_nofollow_link_fails_dofollow_requirement(page_verifier):
    html = f'<a href="{TARGET}" rel="nofollow">best widgets</a>'
    result = await page_verifier(html).verify("https://pub.example.org/post", TARGET, "best widgets", "hyperlink_dofollow")
    assert result.verified is False
    assert result.link_found is True
    assert result.anchor_text_match is True
    assert result.link_type_match is False
    assert "Link type mismatch: found nofollow, expected dofollow" in result.details


@pytest.mark.anyio
async def test_nofollow_requirement_accepts_nofollow_link(page_verifier):
    html = f'<a href="{TARGET}" rel="noopener nofollow">best widgets</a>'
    result = await page_verifier(html).verify("https://pub.example.org/post", TARGET, "best widgets", "hyperlink_nofollow")
    assert result.verified is True


@pytest.mark.anyio
async def test_rel_token_must_be_exactly_nofollow(page_verifier):
    html = f'<a href="{TARGET}" rel="nofollowish">best widgets</a>'
    result = await page_verifier(html).verify("https://pub.example.org/post", TARGET, "best widgets", "hyperlink_dofollow")
    assert result.verified is True


@pytest.mark.anyio
async def test_best_candidate_prefers_matching_text_and_type(page_verifier):
    html = (
        f'<a href="{TARGET}" rel="nofollow">click here</a>'
        f'<a href="{TARGET}" rel="nofollow">best widgets</a>'
        f'<a href="{TARGET}">best widgets</a>'
    )
    result = await page_verifier(html).verify("https://pub.example.org/post", TARGET, "best widgets", "hyperlink_dofollow")
    assert result.verified is True
    assert result.details[0] == "Found 3 link(s) to target URL"
    assert result.found_link.rel is None


@pytest.mark.anyio
async def test_linked_image_with_empty_anchor_text_verifies(page_verifier):
    html = f'<a href="{TARGET}"><img src="/logo.png"></a>'
    result = await page_verifier(html).verify("https://pub.example.org/post", TARGET, "best widgets", "hyperlink_dofollow")
    assert result.verified is True
    assert result.anchor_text_match is True
    assert result.link_type_match is True
    assert result.found_link.anchor_text == ""


@pytest.mark.anyio
async def test_inline_markup_inside_anchor_does_not_split_words(page_verifier):
    html = f'<p><a href="{TARGET}">key<b>word</b> <em>guide</em></a></p>'
    result = await page_verifier(html).verify("https://pub.example.org/post", TARGET, "keyword", "hyperlink_dofollow")
    assert result.found_link.anchor_text == "keyword guide"
    assert result.anchor_text_match is True
    assert result.verified is True


@pytest.mark.anyio
async def test_page_without_target_link(page_verifier):
    result = await page_verifier("<p>nothing</p>").verify(
        "https://pub.example.org/post", TARGET, "best widgets", "hyperlink_dofollow",
    )
    assert result.verified is False
    assert result.link_found is False
    assert result.details == [f"No link found pointing to {TARGET}"]


@pytest.mark.anyio
async def test_brand_mention_is_case_insensitive(page_verifier):
    verifier = page_verifier("<p>We love ACME Widgets.</p>")
    found = await verifier.verify("https://pub.example.org/post", None, "acme widgets", "brand_mention")
    missing = await verifier.verify("https://pub.example.org/post", None, "globex", "brand_mention")
    assert found.verified is True
    assert found.details == ['Brand mention "acme widgets" found on page']
    assert missing.verified is False
    assert missing.details == ['Brand mention "globex" not found on page']


@pytest.mark.anyio
async def test_hyperlink_without_target_url(page_verifier):
    result = await page_verifier("<p></p>").verify("https://pub.example.org/post", None, "kw", "hyperlink_dofollow")
    assert result.verified is False
    assert result.details == ["No target URL specified for link verification"]


@pytest.mark.anyio
async def test_non_2xx_response_is_a_failed_result(page_verifier):
    result = await page_verifier("gone", status_code=404).verify(
        "https://pub.example.org/post", TARGET, "best widgets", "hyperlink_dofollow",
    )
    assert result.verified is False
    assert result.details == ["Failed to fetch page: HTTP 404"]


@pytest.mark.anyio
async def test_network_error_never_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    verifier = LinkVerifier(transport=httpx.MockTransport(handler))
    result = await verifier.verify("https://pub.example.org/post", TARGET, "best widgets", "hyperlink_dofollow")
    assert result.verified is False
    assert result.details == ["Error verifying link: connection refused"]


@pytest.mark.anyio
async def test_redirects_are_followed_and_relative_links_resolve_against_final_url():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old":
            return httpx.Response(301, headers={"Location": "https://target.com/blog/post"})
        return httpx.Response(200, text='<a href="/page">best widgets</a>')

    verifier = LinkVerifier(transport=httpx.MockTransport(handler))
    result = await verifier.verify("https://target.com/old", TARGET, "best widgets", "hyperlink_dofollow")
    assert result.verified is True
    assert result.found_link.href == TARGET


@pytest.mark.anyio
async def test_sends_configured_user_agent():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["ua"] = request.headers.get("user-agent")
        return httpx.Response(200, text="")

    verifier = LinkVerifier(user_agent="TestAgent/2.0", transport=httpx.MockTransport(handler))
    await verifier.verify("https://pub.example.org/post", TARGET, "kw", "hyperlink_dofollow")
    assert seen["ua"] == "TestAgent/2.0"


@pytest.mark.anyio
async def test_same_page_gives_same_verdict(page_verifier):
    verifier = page_verifier(f'<a href="{TARGET}" rel="nofollow">best widgets</a>')
    first = await verifier.verify("https://pub.example.org/post", TARGET, "best widgets", "hyperlink_dofollow")
    second = await verifier.verify("https://pub.example.org/post", TARGET, "best widgets", "hyperlink_dofollow")
    assert first == second
