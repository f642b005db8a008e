"""
Tests for link extraction
"""
import pytest

from policy_engine.link_extractor import (
    LinkExtractor,
    extract_sitemap_urls,
    is_legal_hub,
    resolve_href,
)


BASE = "https://example.com"


@pytest.fixture
def extractor():
    return LinkExtractor()


class TestLinkExtractor:
    """Test context classification and filtering"""

    def test_extracts_navigational_links_once(self, extractor, homepage_html):
        links = extractor.extract(homepage_html, BASE, strategy="site_crawl")

        assert [link.url for link in links] == [
            f"{BASE}/shop",
            f"{BASE}/about",
            f"{BASE}/blog/post-1",
            f"{BASE}/hidden-offer",
            f"{BASE}/privacy",
            f"{BASE}/terms",
            "https://partner.example.org/legal",
        ]
        assert all(link.strategy == "site_crawl" for link in links)

    def test_contexts(self, extractor, homepage_html):
        contexts = {link.url: link.context for link in extractor.extract(homepage_html, BASE)}

        assert contexts[f"{BASE}/shop"] == "nav"
        assert contexts[f"{BASE}/blog/post-1"] == "body"
        assert contexts[f"{BASE}/privacy"] == "footer"
        assert contexts["https://partner.example.org/legal"] == "footer"

    def test_first_occurrence_wins(self, extractor, homepage_html):
        privacy = [link for link in extractor.extract(homepage_html, BASE) if link.url.endswith("/privacy")]

        assert len(privacy) == 1
        assert privacy[0].text == "Privacy Policy"

    def test_visibility(self, extractor, homepage_html):
        visible = {link.url: link.is_visible for link in extractor.extract(homepage_html, BASE)}

        assert visible[f"{BASE}/hidden-offer"] is False
        assert visible[f"{BASE}/privacy"] is True

    def test_hidden_ancestor(self, extractor):
        html = '<div aria-hidden="true"><a href="/privacy">Privacy</a></div><a href="/terms">Terms</a>'
        visible = {link.url: link.is_visible for link in extractor.extract(html, BASE)}

        assert visible == {f"{BASE}/privacy": False, f"{BASE}/terms": True}

    def test_role_and_class_landmarks(self, extractor):
        html = (
            '<div role="contentinfo"><a href="/privacy">Privacy</a></div>'
            '<ul class="site-navigation"><li><a href="/products">Products</a></li></ul>'
        )
        contexts = {link.url: link.context for link in extractor.extract(html, BASE)}

        assert contexts == {f"{BASE}/privacy": "footer", f"{BASE}/products": "nav"}

    def test_legal_hub_page(self, extractor):
        html = '<div class="content"><a href="/privacy">Privacy</a><a href="/cookies">Cookies</a></div>'
        links = extractor.extract(html, f"{BASE}/legal")

        assert {link.context for link in links} == {"legal_hub"}

    def test_link_text_falls_back_to_title(self, extractor):
        html = '<a href="/privacy" title="Privacy notice"><img src="lock.png"></a>'
        assert extractor.extract(html, BASE)[0].text == "Privacy notice"

    def test_empty_html(self, extractor):
        assert extractor.extract("", BASE) == []


class TestHelpers:

    @pytest.mark.parametrize("href,expected", [
        ("/privacy", f"{BASE}/privacy"),
        ("privacy#section-2", f"{BASE}/privacy"),
        ("https://other.org/terms", "https://other.org/terms"),
        ("#top", None),
        ("mailto:privacy@example.com", None),
        ("javascript:void(0)", None),
        ("tel:+15551234567", None),
        ("", None),
    ])
    def test_resolve_href(self, href, expected):
        assert resolve_href(href, f"{BASE}/") == expected

    @pytest.mark.parametrize("url,title,expected", [
        (f"{BASE}/legal", None, True),
        (f"{BASE}/policies/overview", None, True),
        (f"{BASE}/help", "Legal Center", True),
        (f"{BASE}/help", "Help", False),
    ])
    def test_is_legal_hub(self, url, title, expected):
        assert is_legal_hub(url, title) is expected

    def test_sitemap_urls(self):
        xml = """<?xml version="1.0" encoding="UTF-8"?>
        <urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
          <url><loc>https://example.com/</loc></url>
          <url><loc> https://example.com/privacy-policy </loc></url>
        </urlset>"""

        assert extract_sitemap_urls(xml) == ["https://example.com/", "https://example.com/privacy-policy"]
