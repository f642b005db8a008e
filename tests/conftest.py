"""
Shared fixtures: in-memory database, fake fetcher, HTML and policy text samples.
"""
import threading

import pytest

from policy_engine.content_validator import DOCUMENT_TYPES, POLICY_KEYWORDS
from policy_engine.database import DatabaseManager
from policy_engine.fetcher import FetchedPage, FetchMode, FetchResult, HttpStatusError


class FakeFetcher:
    """Serves canned pages by URL and records every request."""

    def __init__(self, pages=None, timeout_ms=5000):
        self.pages = dict(pages or {})
        self.timeout_ms = timeout_ms
        self.calls = []
        self._lock = threading.Lock()

    def _lookup(self, url):
        with self._lock:
            self.calls.append(url)
        entry = self.pages.get(url)
        if entry is None:
            raise HttpStatusError(url, 404)
        if isinstance(entry, Exception):
            raise entry
        return entry

    def fetch(self, url, timeout_ms=None, retry_budget_ms=None, cancel_event=None):
        page = self._lookup(url)
        return FetchResult(status=200, final_url=page.final_url, html=page.html)

    def fetch_page(self, url, mode=FetchMode.LIGHTWEIGHT, timeout_ms=None,
                   retry_budget_ms=None, cancel_event=None):
        return self._lookup(url)

    def calls_for(self, url):
        return [call for call in self.calls if call == url]


def make_page(url, text, title=None, html=None, final_url=None):
    return FetchedPage(
        url=url,
        final_url=final_url or url,
        status=200,
        html=html or f"<html><head><title>{title or ''}</title></head><body><p>{text}</p></body></html>",
        text=text,
        title=title,
    )


@pytest.fixture
def db():
    """Fresh in-memory database with the schema created."""
    manager = DatabaseManager("sqlite://")
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def policy_text():
    """A privacy policy rich in every policy vocabulary."""
    sentences = [
        "Privacy Policy",
        "Last updated: January 1, 2024",
        "Section 1. Information we collect.",
    ]
    for keywords in POLICY_KEYWORDS.values():
        sentences.append("This policy covers " + ", ".join(keywords) + ".")
    for _ in range(3):
        sentences.append("Read about " + ", ".join(DOCUMENT_TYPES["privacy_policy"]) + ".")
    sentences.append("We may update this policy from time to time. Contact us with questions about this policy.")
    return " ".join(sentences)


@pytest.fixture
def privacy_excerpt():
    """An ordinary privacy policy written in plain prose."""
    return """
Privacy Policy

Last updated: March 3, 2024

This Privacy Policy explains how Acme Inc. collects, uses and shares personal
information when you use our website and services.

Information we collect. We collect information you provide directly, such as
your name, email address and payment details, and information collected
automatically, including your IP address, browser type and pages visited. We use
cookies and similar tracking technologies to remember your preferences.

How we use your information. We use personal information to provide and improve
our services, process payments, respond to requests and send updates you have
agreed to receive.

Sharing. We share information with service providers who process it on our
behalf, and with third parties when required by law. We do not sell your
personal information.

Your rights. Depending on where you live, including under the GDPR and the CCPA,
you may have the right to access, correct or delete your personal data, and to
withdraw consent at any time.

Retention and security. We keep personal data only as long as necessary and
protect it with encryption and other security measures.

Contact us. If you have questions about this policy, contact us at
privacy@acme.example.
"""


@pytest.fixture
def shop_text():
    """Long, clean text that is clearly not a policy."""
    return (
        "Our shoes are handmade from the finest leather. " * 20
        + "We value privacy. Data matters to us. Read our return policy before ordering."
    )


@pytest.fixture
def homepage_html():
    return """
    <html>
      <head><title>Example Store</title></head>
      <body>
        <nav class="main-menu">
          <a href="/shop">Shop</a>
          <a href="/about">About us</a>
        </nav>
        <div class="content">
          <a href="/blog/post-1">Read our blog</a>
          <a href="mailto:hello@example.com">Email us</a>
          <a href="javascript:void(0)">Open chat</a>
          <a href="#top">Back to top</a>
          <a href="/hidden-offer" style="display: none">Secret offer</a>
        </div>
        <footer>
          <a href="/privacy">Privacy Policy</a>
          <a href="/terms">Terms of Service</a>
          <a href="/privacy">Privacy (again)</a>
          <a href="https://partner.example.org/legal">Partner legal</a>
        </footer>
      </body>
    </html>
    """
