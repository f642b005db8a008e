"""
Link Extraction Module

Parses HTML into contextualized candidate links:
- Relative href resolution against the page URL
- Filtering of non-navigational schemes and fragment-only links
- Footer / nav / legal hub / body context classification
- Visibility heuristics
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)


CONTEXTS = ("footer", "nav", "body", "legal_hub", "unknown")

NON_NAVIGATIONAL_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "sms:", "ftp:")

FOOTER_HINTS = ("footer", "legal-links", "bottom-bar", "bottom-nav", "copyright", "site-info")
NAV_HINTS = ("nav", "menu", "navigation", "navbar", "header-links")

LEGAL_HUB_URL_HINTS = ("/legal", "/policies", "/policy", "/impressum", "/imprint", "/rechtliches")
LEGAL_HUB_TITLE_HINTS = ("legal", "policies", "impressum", "imprint", "legal notice", "legal center")

_HIDDEN_STYLE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.I)


@dataclass
class CandidateLink:
    """A link considered as a possible pointer to a policy document."""
    url: str
    text: str
    context: str = "unknown"
    heuristic_score: int = 0
    features: List[float] = field(default_factory=list)
    neural_score: float = 0.0
    strategy: str = ""
    is_visible: bool = True
    doc_type_hint: Optional[str] = None
    combined_score: float = 0.0


def _attr_text(tag: Tag) -> str:
    classes = tag.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    return " ".join([tag.get("id") or "", *classes]).lower()


def _landmark_context(anchor: Tag) -> Optional[str]:
    """Walk the ancestors of an anchor looking for footer / nav landmarks."""
    for parent in anchor.parents:
        if not isinstance(parent, Tag) or parent.name in ("html", "[document]"):
            continue
        role = (parent.get("role") or "").lower()
        attrs = _attr_text(parent)

        if parent.name == "footer" or role == "contentinfo" or any(h in attrs for h in FOOTER_HINTS):
            return "footer"
        if parent.name == "nav" or role == "navigation" or any(h in attrs for h in NAV_HINTS):
            return "nav"
    return None


def _is_hidden(tag: Tag) -> bool:
    if tag.has_attr("hidden") or (tag.get("aria-hidden") or "").lower() == "true":
        return True
    return bool(_HIDDEN_STYLE.search(tag.get("style") or ""))


def _is_visible(anchor: Tag) -> bool:
    if _is_hidden(anchor):
        return False
    return not any(isinstance(p, Tag) and _is_hidden(p) for p in anchor.parents)


def is_legal_hub(page_url: str, title: Optional[str]) -> bool:
    """True when the page itself looks like a legal / policies hub."""
    path = (urlparse(page_url).path or "").lower()
    if any(path.startswith(hint) for hint in LEGAL_HUB_URL_HINTS):
        return True
    title = (title or "").lower()
    return any(hint in title for hint in LEGAL_HUB_TITLE_HINTS)


def resolve_href(href: str, base_url: str) -> Optional[str]:
    """
    Resolve an href against the page URL.

    Returns:
        Absolute http(s) URL, or None for non-navigational or unparsable hrefs
    """
    href = (href or "").strip()
    if not href or href.startswith("#"):
        return None
    if href.lower().startswith(NON_NAVIGATIONAL_SCHEMES):
        return None

    try:
        absolute = urljoin(base_url, href)
        parsed = urlparse(absolute)
        # Accessing .port validates the netloc
        parsed.port
    except ValueError:
        return None

    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return absolute.split("#", 1)[0]


class LinkExtractor:
    """Extracts candidate links from HTML pages."""

    def extract(self, html: str, base_url: str, strategy: str = "") -> List[CandidateLink]:
        """
        Parse HTML into raw candidate links.

        Args:
            html: Page HTML
            base_url: URL the page was fetched from
            strategy: Name of the discovery strategy, stamped onto each link

        Returns:
            Candidate links in document order, first occurrence of each URL
        """
        if not html:
            return []

        soup = BeautifulSoup(html, "html.parser")
        title = soup.title.string if soup.title and soup.title.string else None
        page_is_hub = is_legal_hub(base_url, title)

        links: List[CandidateLink] = []
        seen = set()

        for anchor in soup.find_all("a", href=True):
            url = resolve_href(anchor["href"], base_url)
            if url is None or url in seen:
                continue
            seen.add(url)

            context = _landmark_context(anchor)
            if context is None:
                context = "legal_hub" if page_is_hub else "body"

            text = anchor.get_text(" ", strip=True) or anchor.get("title") or anchor.get("aria-label") or ""
            links.append(CandidateLink(
                url=url,
                text=text.strip(),
                context=context,
                strategy=strategy,
                is_visible=_is_visible(anchor),
            ))

        logger.debug(f"Extracted {len(links)} links from {base_url}")
        return links


def extract_sitemap_urls(xml: str) -> List[str]:
    """Read <loc> entries from a sitemap or sitemap index."""
    if not xml:
        return []
    soup = BeautifulSoup(xml, "xml")
    return [loc.text.strip() for loc in soup.find_all("loc") if loc.text and loc.text.strip()]
