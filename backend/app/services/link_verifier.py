"""
Link Verifier — Fetches a publisher's proof page and decides whether it carries
the placement a campaign paid for.

- brand_mention: case-insensitive search for the keyword anywhere in the page body.
- hyperlink_dofollow / hyperlink_nofollow: parse every <a href>, keep the ones
  pointing at the target URL, pick the best candidate and compare anchor text
  and rel="nofollow" against the requirement.

Never raises: fetch/parse failures come back as an unverified result whose
details explain what went wrong, so the publisher can retry with another URL.
"""

import logging
from typing import Optional
from urllib.parse import urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from app.config import get_settings
from app.models import LinkType

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "text/html,application/xhtml+xml"


class FoundLink(BaseModel):
    href: str
    anchor_text: str
    rel: Optional[str] = None
    is_dofollow: bool


class VerificationResult(BaseModel):
    verified: bool = False
    link_found: bool = False
    anchor_text_match: bool = False
    link_type_match: bool = False
    details: list[str] = Field(default_factory=list)
    found_link: Optional[FoundLink] = None

    @classmethod
    def failed(cls, *details: str) -> "VerificationResult":
        return cls(details=list(details))


class _Anchor(BaseModel):
    href: str
    anchor_text: str
    rel: Optional[str] = None

    @property
    def is_nofollow(self) -> bool:
        return bool(self.rel) and "nofollow" in self.rel.lower().split()


# ── URL helpers ───────────────────────────────────────────────────────

def normalize_url(url: str) -> str:
    """Lower-case and drop a trailing slash: 'https://Target.com/Page/' -> 'https://target.com/page'."""
    return url.strip().rstrip("/").lower()


def url_host(url: str) -> str:
    try:
        return (urlsplit(url.strip()).hostname or "").lower()
    except ValueError:
        return ""


def href_matches_target(href: str, target_url: str) -> bool:
    """
    Same URL after normalization, or same host with one URL a prefix of the other
    (covers query-string, fragment and sub-path variants).
    """
    normalized_href = normalize_url(href)
    normalized_target = normalize_url(target_url)
    if normalized_href == normalized_target:
        return True

    host = url_host(href)
    if not host or host != url_host(target_url):
        return False
    return normalized_href.startswith(normalized_target) or normalized_target.startswith(normalized_href)


def anchor_text_relates(anchor_text: str, keyword: str) -> bool:
    """Case-insensitive substring match in either direction.

    Empty anchor text (a linked image, say) is contained in every keyword and
    matches. An empty keyword never matches.
    """
    text = anchor_text.strip().lower()
    kw = keyword.strip().lower()
    if not kw:
        return False
    return kw in text or text in kw


def extract_anchors(html: str, base_url: str) -> list[_Anchor]:
    """All <a href> elements in document order, hrefs resolved against base_url."""
    soup = BeautifulSoup(html, "html.parser")
    anchors = []
    for tag in soup.find_all("a", href=True):
        raw_href = (tag.get("href") or "").strip()
        if not raw_href:
            continue
        rel = tag.get("rel")
        if isinstance(rel, list):
            rel = " ".join(rel)
        anchors.append(_Anchor(
            href=urljoin(base_url, raw_href),
            anchor_text=" ".join(tag.get_text().split()),
            rel=rel or None,
        ))
    return anchors


# ── Verifier ──────────────────────────────────────────────────────────

class LinkVerifier:
    """Fetches proof pages over HTTP and evaluates them against a placement requirement."""

    def __init__(
        self,
        timeout: float = 15.0,
        user_agent: str = "Mozilla/5.0 (compatible; LinkVerifier/1.0)",
        max_redirects: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.max_redirects = max_redirects
        self.transport = transport

    async def _fetch(self, url: str) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            max_redirects=self.max_redirects,
            headers={"User-Agent": self.user_agent, "Accept": ACCEPT_HEADER},
            transport=self.transport,
        ) as client:
            return await client.get(url)

    async def verify(
        self,
        proof_url: str,
        target_url: Optional[str],
        target_keyword: str,
        link_type: str,
    ) -> VerificationResult:
        try:
            response = await self._fetch(proof_url)
            if not response.is_success:
                logger.info(f"Proof page {proof_url} returned HTTP {response.status_code}")
                return VerificationResult.failed(f"Failed to fetch page: HTTP {response.status_code}")

            html = response.text
            if link_type == LinkType.BRAND_MENTION.value:
                return self._check_brand_mention(html, target_keyword)
            return self._check_hyperlink(html, str(response.url), target_url, target_keyword, link_type)
        except Exception as e:
            logger.warning(f"Link verification failed for {proof_url}: {e}")
            return VerificationResult.failed(f"Error verifying link: {str(e) or type(e).__name__}")

    def _check_brand_mention(self, html: str, keyword: str) -> VerificationResult:
        if not keyword.strip():
            return VerificationResult.failed("No brand keyword specified for mention verification")

        if keyword.lower() in html.lower():
            return VerificationResult(
                verified=True,
                link_found=True,
                anchor_text_match=True,
                link_type_match=True,
                details=[f'Brand mention "{keyword}" found on page'],
            )
        return VerificationResult.failed(f'Brand mention "{keyword}" not found on page')

    def _check_hyperlink(
        self,
        html: str,
        page_url: str,
        target_url: Optional[str],
        keyword: str,
        link_type: str,
    ) -> VerificationResult:
        if not target_url:
            return VerificationResult.failed("No target URL specified for link verification")

        matching = [a for a in extract_anchors(html, page_url) if href_matches_target(a.href, target_url)]
        if not matching:
            return VerificationResult.failed(f"No link found pointing to {target_url}")

        details = [f"Found {len(matching)} link(s) to target URL"]
        expect_dofollow = link_type == LinkType.HYPERLINK_DOFOLLOW.value

        def type_ok(anchor: _Anchor) -> bool:
            return (not anchor.is_nofollow) if expect_dofollow else anchor.is_nofollow

        best = (
            next((a for a in matching if anchor_text_relates(a.anchor_text, keyword) and type_ok(a)), None)
            or next((a for a in matching if anchor_text_relates(a.anchor_text, keyword)), None)
            or next((a for a in matching if type_ok(a)), None)
            or matching[0]
        )

        anchor_text_match = anchor_text_relates(best.anchor_text, keyword)
        link_type_match = type_ok(best)
        found_kind = "nofollow" if best.is_nofollow else "dofollow"
        expected_kind = "dofollow" if expect_dofollow else "nofollow"

        if anchor_text_match:
            details.append(f'Anchor text matches: "{best.anchor_text}"')
        else:
            details.append(f'Anchor text mismatch: found "{best.anchor_text}", expected "{keyword}"')
        if link_type_match:
            details.append(f"Link type matches: {found_kind}")
        else:
            details.append(f"Link type mismatch: found {found_kind}, expected {expected_kind}")

        return VerificationResult(
            verified=anchor_text_match and link_type_match,
            link_found=True,
            anchor_text_match=anchor_text_match,
            link_type_match=link_type_match,
            details=details,
            found_link=FoundLink(
                href=best.href,
                anchor_text=best.anchor_text,
                rel=best.rel,
                is_dofollow=not best.is_nofollow,
            ),
        )


def get_link_verifier() -> LinkVerifier:
    """Dependency: a verifier configured from settings."""
    settings = get_settings()
    return LinkVerifier(
        timeout=settings.verifier_timeout_seconds,
        user_agent=settings.verifier_user_agent,
        max_redirects=settings.verifier_max_redirects,
    )
