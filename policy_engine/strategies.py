"""
Discovery Strategies Module

Independent ways of finding candidate policy links for a domain:
- Direct probing of common policy paths
- Search engine results restricted to the domain
- Homepage crawl (footer / nav / body links)
- Sitemap parsing (robots.txt -> sitemap.xml)
- Legal hub pages (/legal, /policies)

Each strategy works only on its own local lists and returns ranked
candidates; merging across strategies is the orchestrator's job.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type
from urllib.parse import parse_qs, quote_plus, urljoin, urlparse

from bs4 import BeautifulSoup

from policy_engine.config import settings
from policy_engine.features import CandidateScorer, infer_doc_type
from policy_engine.fetcher import FetchedPage, FetchError, FetchResult, Fetcher, FetchTimeout
from policy_engine.link_extractor import CandidateLink, LinkExtractor, extract_sitemap_urls
from policy_engine.utils import normalize_domain

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryContext:
    """Everything a strategy needs for one domain, plus its own deadline."""
    domain: str
    base_url: str
    fetcher: Fetcher
    extractor: LinkExtractor
    scorer: CandidateScorer
    deadline: float
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def remaining_ms(self) -> int:
        return max(0, int((self.deadline - time.monotonic()) * 1000))

    def should_stop(self) -> bool:
        return self.cancel_event.is_set() or self.remaining_ms() <= 0

    def fetch(self, url: str) -> FetchResult:
        """Raw fetch bounded by what is left of the strategy's time."""
        remaining = self.remaining_ms()
        if remaining <= 0 or self.cancel_event.is_set():
            raise FetchTimeout(url, "Strategy deadline reached")
        return self.fetcher.fetch(
            url,
            timeout_ms=min(self.fetcher.timeout_ms, remaining),
            retry_budget_ms=remaining,
            cancel_event=self.cancel_event,
        )

    def fetch_page(self, url: str) -> FetchedPage:
        """Fetch plus text extraction, bounded like fetch()."""
        remaining = self.remaining_ms()
        if remaining <= 0 or self.cancel_event.is_set():
            raise FetchTimeout(url, "Strategy deadline reached")
        return self.fetcher.fetch_page(
            url,
            timeout_ms=min(self.fetcher.timeout_ms, remaining),
            retry_budget_ms=remaining,
            cancel_event=self.cancel_event,
        )

    def on_domain(self, url: str) -> bool:
        host = normalize_domain(url)
        return host == self.domain or host.endswith(f".{self.domain}")


class DiscoveryStrategy:
    """Base class: subclasses set `name` and implement run()."""

    name = ""

    def run(self, context: DiscoveryContext) -> List[CandidateLink]:
        raise NotImplementedError

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name}>"


def _text_from_url(url: str) -> str:
    """Readable pseudo anchor text from the last path segment."""
    path = urlparse(url).path.rstrip("/")
    segment = path.rsplit("/", 1)[-1] if path else ""
    return segment.rsplit(".", 1)[0].replace("-", " ").replace("_", " ")


class DirectProbeStrategy(DiscoveryStrategy):
    """Requests well-known policy paths directly."""

    name = "direct_probe"

    PROBE_PATHS = [
        "/privacy",
        "/privacy-policy",
        "/legal/privacy",
        "/policies/privacy",
        "/terms",
        "/terms-of-service",
        "/tos",
        "/cookies",
        "/cookie-policy",
        "/legal",
        "/dpa",
    ]

    MIN_BODY_CHARS = 2000

    def run(self, context: DiscoveryContext) -> List[CandidateLink]:
        found: Dict[str, CandidateLink] = {}
        pages: Dict[str, str] = {}

        for path in self.PROBE_PATHS:
            if context.should_stop():
                break
            url = urljoin(context.base_url, path)
            try:
                page = context.fetch_page(url)
            except FetchError as e:
                logger.debug(f"Probe {url} failed: {e}")
                continue

            if len(page.html) <= self.MIN_BODY_CHARS or page.final_url in found:
                continue

            found[page.final_url] = CandidateLink(
                url=page.final_url,
                text=page.title or _text_from_url(page.final_url) or path.strip("/"),
                context="unknown",
                strategy=self.name,
            )
            pages[page.final_url] = page.text

        ranked = []
        for url, link in found.items():
            ranked.extend(context.scorer.rank([link], context.base_url, pages.get(url)))
        ranked.sort(key=lambda c: (c.combined_score, c.neural_score), reverse=True)
        return ranked


class SearchEngineStrategy(DiscoveryStrategy):
    """Asks a search engine for the domain's privacy policy."""

    name = "search_engine"
    MAX_RESULTS = 5

    def __init__(self, endpoint: Optional[str] = None):
        self.endpoint = endpoint or settings.search_endpoint

    @staticmethod
    def unwrap(href: str) -> Optional[str]:
        """Strip the search engine's redirect wrapper from a result link."""
        if not href:
            return None
        if href.startswith("//"):
            href = f"https:{href}"
        parsed = urlparse(href)
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return target[0]
        if parsed.scheme in ("http", "https"):
            return href
        return None

    def run(self, context: DiscoveryContext) -> List[CandidateLink]:
        query = quote_plus(f"site:{context.domain} privacy policy")
        result = context.fetch(f"{self.endpoint}?q={query}")
        soup = BeautifulSoup(result.html, "html.parser")

        links = []
        seen = set()
        for anchor in soup.select("a.result__a"):
            url = self.unwrap(anchor.get("href", ""))
            if not url or url in seen or not context.on_domain(url):
                continue
            seen.add(url)
            links.append(CandidateLink(
                url=url,
                text=anchor.get_text(" ", strip=True),
                context="unknown",
                strategy=self.name,
            ))
            if len(links) >= self.MAX_RESULTS:
                break

        return context.scorer.rank(links, context.base_url)


class SiteCrawlStrategy(DiscoveryStrategy):
    """Extracts and ranks the links on the homepage."""

    name = "site_crawl"
    MAX_CANDIDATES = 25

    def run(self, context: DiscoveryContext) -> List[CandidateLink]:
        result = context.fetch(context.base_url)
        links = context.extractor.extract(result.html, result.final_url, strategy=self.name)
        ranked = context.scorer.rank(links, result.final_url)
        return ranked[:self.MAX_CANDIDATES]


class SitemapStrategy(DiscoveryStrategy):
    """Reads policy-looking URLs from the site's sitemaps."""

    name = "sitemap"
    MAX_SITEMAPS = 4
    MAX_CANDIDATES = 15

    def _sitemap_urls(self, context: DiscoveryContext) -> List[str]:
        urls = []
        try:
            robots = context.fetch(urljoin(context.base_url, "/robots.txt"))
            for line in robots.html.splitlines():
                if line.lower().startswith("sitemap:"):
                    urls.append(line.split(":", 1)[1].strip())
        except FetchError as e:
            logger.debug(f"No robots.txt for {context.domain}: {e}")

        urls.append(urljoin(context.base_url, "/sitemap.xml"))
        return list(dict.fromkeys(url for url in urls if url))

    def run(self, context: DiscoveryContext) -> List[CandidateLink]:
        pending = self._sitemap_urls(context)
        visited = set()
        links: Dict[str, CandidateLink] = {}

        while pending and len(visited) < self.MAX_SITEMAPS and not context.should_stop():
            sitemap_url = pending.pop(0)
            if sitemap_url in visited:
                continue
            visited.add(sitemap_url)
            try:
                result = context.fetch(sitemap_url)
            except FetchError as e:
                logger.debug(f"Sitemap {sitemap_url} unavailable: {e}")
                continue

            for loc in extract_sitemap_urls(result.html):
                lower = loc.lower()
                if lower.endswith((".xml", ".xml.gz")):
                    pending.append(loc)
                    continue
                if loc in links or not context.on_domain(loc):
                    continue
                if infer_doc_type(loc) is None:
                    continue
                links[loc] = CandidateLink(
                    url=loc,
                    text=_text_from_url(loc),
                    context="unknown",
                    strategy=self.name,
                )

        ranked = context.scorer.rank(list(links.values()), context.base_url)
        return ranked[:self.MAX_CANDIDATES]


class LegalHubStrategy(DiscoveryStrategy):
    """Crawls the site's legal / policies landing pages."""

    name = "legal_hub"
    HUB_PATHS = ["/legal", "/policies"]

    def run(self, context: DiscoveryContext) -> List[CandidateLink]:
        collected: Dict[str, CandidateLink] = {}
        for path in self.HUB_PATHS:
            if context.should_stop():
                break
            hub_url = urljoin(context.base_url, path)
            try:
                result = context.fetch(hub_url)
            except FetchError as e:
                logger.debug(f"Legal hub {hub_url} unavailable: {e}")
                continue

            for link in context.extractor.extract(result.html, result.final_url, strategy=self.name):
                if link.url not in collected:
                    collected[link.url] = link

        return context.scorer.rank(list(collected.values()), context.base_url)


STRATEGIES: Dict[str, Type[DiscoveryStrategy]] = {
    strategy.name: strategy
    for strategy in (
        DirectProbeStrategy,
        SearchEngineStrategy,
        SiteCrawlStrategy,
        SitemapStrategy,
        LegalHubStrategy,
    )
}


def build_strategies(names: Optional[List[str]] = None) -> List[DiscoveryStrategy]:
    """Instantiate the named strategies, skipping unknown names."""
    names = names or settings.discovery_strategies_list
    strategies = []
    for name in names:
        strategy_cls = STRATEGIES.get(name)
        if strategy_cls is None:
            logger.warning(f"Unknown discovery strategy '{name}', skipping")
            continue
        strategies.append(strategy_cls())
    return strategies
