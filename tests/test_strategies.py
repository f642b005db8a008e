"""
Tests for the discovery strategies
"""
import time
from urllib.parse import quote_plus

import pytest

from conftest import FakeFetcher, make_page
from policy_engine.features import CandidateScorer
from policy_engine.fetcher import FetchTimeout
from policy_engine.link_extractor import LinkExtractor
from policy_engine.strategies import (
    DirectProbeStrategy,
    LegalHubStrategy,
    SearchEngineStrategy,
    SiteCrawlStrategy,
    SitemapStrategy,
    DiscoveryContext,
    build_strategies,
)


BASE = "https://example.com"


def make_context(fetcher, seconds=5.0):
    return DiscoveryContext(
        domain="example.com",
        base_url=BASE,
        fetcher=fetcher,
        extractor=LinkExtractor(),
        scorer=CandidateScorer(None, neural_weight=30),
        deadline=time.monotonic() + seconds,
    )


def raw(url, body):
    return make_page(url, body, html=body)


class TestSiteCrawl:

    def test_ranks_homepage_links(self, homepage_html):
        fetcher = FakeFetcher({BASE: raw(BASE, homepage_html)})

        candidates = SiteCrawlStrategy().run(make_context(fetcher))

        urls = [c.url for c in candidates]
        assert urls[:2] == [f"{BASE}/privacy", f"{BASE}/terms"]
        assert f"{BASE}/hidden-offer" not in urls
        assert all(c.strategy == "site_crawl" for c in candidates)
        assert all(len(c.features) == 24 for c in candidates)

    def test_deadline_reached(self, homepage_html):
        fetcher = FakeFetcher({BASE: raw(BASE, homepage_html)})

        with pytest.raises(FetchTimeout):
            SiteCrawlStrategy().run(make_context(fetcher, seconds=-1))
        assert fetcher.calls == []


class TestDirectProbe:

    def test_keeps_substantial_pages(self, policy_text):
        fetcher = FakeFetcher({
            f"{BASE}/privacy": make_page(f"{BASE}/privacy", policy_text, "Privacy Policy"),
            f"{BASE}/terms": make_page(f"{BASE}/terms", "Terms", html="<html>Terms</html>"),
        })

        candidates = DirectProbeStrategy().run(make_context(fetcher))

        assert [c.url for c in candidates] == [f"{BASE}/privacy"]
        assert candidates[0].text == "Privacy Policy"
        assert len(fetcher.calls) == len(DirectProbeStrategy.PROBE_PATHS)

    def test_redirects_collapse_to_one_candidate(self, policy_text):
        target = f"{BASE}/legal/privacy"
        page = make_page(target, policy_text, "Privacy Policy", final_url=target)
        fetcher = FakeFetcher({f"{BASE}/privacy": page, f"{BASE}/privacy-policy": page, target: page})

        candidates = DirectProbeStrategy().run(make_context(fetcher))

        assert [c.url for c in candidates] == [target]


class TestSearchEngine:

    def test_unwraps_and_filters_results(self):
        endpoint = "https://search.test/html/"
        query = quote_plus("site:example.com privacy policy")
        results = (
            '<a class="result__a" href="//search.test/l/?uddg=https%3A%2F%2Fexample.com%2Fprivacy">Privacy Policy</a>'
            '<a class="result__a" href="https://other.org/privacy">Other privacy</a>'
            '<a class="result__a" href="https://help.example.com/terms">Terms of Service</a>'
            '<a class="result__a" href="/relative">Relative</a>'
        )
        fetcher = FakeFetcher({f"{endpoint}?q={query}": raw(endpoint, results)})

        candidates = SearchEngineStrategy(endpoint).run(make_context(fetcher))

        assert {c.url for c in candidates} == {
            "https://example.com/privacy", "https://help.example.com/terms",
        }

    @pytest.mark.parametrize("href,expected", [
        ("//duck.test/l/?uddg=https%3A%2F%2Fexample.com%2Fprivacy&rut=x", "https://example.com/privacy"),
        ("https://example.com/terms", "https://example.com/terms"),
        ("/relative", None),
        ("", None),
    ])
    def test_unwrap(self, href, expected):
        assert SearchEngineStrategy.unwrap(href) == expected


class TestSitemap:

    def test_follows_robots_and_nested_sitemaps(self):
        fetcher = FakeFetcher({
            f"{BASE}/robots.txt": raw(f"{BASE}/robots.txt", f"User-agent: *\nSitemap: {BASE}/sitemap-main.xml\n"),
            f"{BASE}/sitemap-main.xml": raw(f"{BASE}/sitemap-main.xml", f"""<?xml version="1.0"?>
                <urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
                  <url><loc>{BASE}/privacy-policy</loc></url>
                  <url><loc>{BASE}/blog/hello</loc></url>
                  <url><loc>https://other.org/privacy</loc></url>
                  <url><loc>{BASE}/sitemap-legal.xml</loc></url>
                </urlset>"""),
            f"{BASE}/sitemap-legal.xml": raw(f"{BASE}/sitemap-legal.xml", f"""<?xml version="1.0"?>
                <urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
                  <url><loc>{BASE}/terms-of-service</loc></url>
                </urlset>"""),
        })

        candidates = SitemapStrategy().run(make_context(fetcher))

        assert {c.url for c in candidates} == {f"{BASE}/privacy-policy", f"{BASE}/terms-of-service"}
        assert fetcher.calls_for(f"{BASE}/sitemap.xml") == [f"{BASE}/sitemap.xml"]

    def test_no_sitemaps(self):
        assert SitemapStrategy().run(make_context(FakeFetcher())) == []


class TestLegalHub:

    def test_collects_hub_links(self):
        hub = '<html><body><a href="/privacy">Privacy Notice</a><a href="/cookies">Cookie Policy</a></body></html>'
        fetcher = FakeFetcher({f"{BASE}/legal": raw(f"{BASE}/legal", hub)})

        candidates = LegalHubStrategy().run(make_context(fetcher))

        assert {c.url for c in candidates} == {f"{BASE}/privacy", f"{BASE}/cookies"}
        assert {c.context for c in candidates} == {"legal_hub"}


class TestBuildStrategies:

    def test_default_order(self):
        names = [s.name for s in build_strategies()]
        assert names == ["direct_probe", "search_engine", "site_crawl", "sitemap", "legal_hub"]

    def test_unknown_names_are_skipped(self):
        assert [s.name for s in build_strategies(["site_crawl", "carrier_pigeon"])] == ["site_crawl"]
