"""
Fetcher Module

Resilient page retrieval for discovery and verification:
- User-agent rotation on 401/403 responses
- Per-attempt timeouts inside a wall-clock retry budget
- Per-host rate limiting with 429 back-off
- Optional hand-off to an external page renderer when the lightweight
  fetch yields too little content
- Main-content text extraction
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

import requests
import trafilatura
from bs4 import BeautifulSoup

from policy_engine.config import settings
from policy_engine.utils import normalize_domain

logger = logging.getLogger(__name__)


# URLs that indicate an authentication wall rather than a document
AUTH_WALL_PATTERNS = [
    "/login",
    "/signin",
    "/sign-in",
    "/authenticate",
    "/auth/",
    "accounts.google.com",
    "/oauth",
    "/sso/",
    "login.php",
    "/challenge/",
    "/checkpoint/",
]


class FetchMode(Enum):
    """How a page is retrieved."""
    LIGHTWEIGHT = "lightweight"
    RENDERED = "rendered"


class FetchError(Exception):
    """Base error for a failed fetch, raised once the retry budget is spent."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{message} ({url})")
        self.url = url


class FetchTimeout(FetchError):
    """The request (or the whole retry budget) timed out."""


class NetworkFailure(FetchError):
    """Connection-level failure: DNS, refused connection, TLS, etc."""


class HttpStatusError(FetchError):
    """The server answered with a non-2xx status."""

    def __init__(self, url: str, code: int, message: Optional[str] = None):
        super().__init__(url, message or f"HTTP {code}")
        self.code = code


@dataclass
class FetchResult:
    """Raw outcome of a successful HTTP fetch."""
    status: int
    final_url: str
    html: str
    user_agent: Optional[str] = None


@dataclass
class FetchedPage:
    """A fetched page with its extracted text, ready for verification."""
    url: str
    final_url: str
    status: int
    html: str
    text: str
    title: Optional[str]
    mode: FetchMode = FetchMode.LIGHTWEIGHT


# A renderer takes (url, timeout_seconds) and returns rendered HTML.
Renderer = Callable[[str, float], str]


def extract_text(html: str) -> str:
    """
    Extract the main readable text from an HTML document.

    Args:
        html: Raw HTML

    Returns:
        Extracted text, possibly empty
    """
    if not html:
        return ""
    try:
        extracted = trafilatura.extract(html)
    except Exception as e:
        logger.debug(f"trafilatura extraction failed: {e}")
        extracted = None

    if extracted and len(extracted) >= 200:
        return extracted

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    body = soup.body or soup
    fallback = body.get_text(separator=" ", strip=True)
    if extracted and len(extracted) >= len(fallback):
        return extracted
    return fallback


def extract_title(html: str) -> Optional[str]:
    """Return the document <title>, if any."""
    if not html:
        return None
    soup = BeautifulSoup(html, "html.parser")
    if soup.title and soup.title.string:
        return soup.title.string.strip()
    return None


def is_auth_wall(url: str) -> bool:
    """True when a (redirected) URL points at a login or SSO page."""
    lower = url.lower()
    return any(pattern in lower for pattern in AUTH_WALL_PATTERNS)


# ============================================================================
# Rate Limiting
# ============================================================================

DEFAULT_RETRY_AFTER_S = 5.0
MAX_RETRY_AFTER_S = 60.0


def parse_retry_after(value: Optional[str]) -> float:
    """
    Seconds to back off for a Retry-After header value.

    Accepts delta-seconds or an HTTP date; capped at MAX_RETRY_AFTER_S.
    """
    if not value:
        return DEFAULT_RETRY_AFTER_S
    value = str(value).strip()
    if value.isdigit():
        return min(float(value), MAX_RETRY_AFTER_S)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_S
    if when is None:
        return DEFAULT_RETRY_AFTER_S
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    wait = (when - datetime.now(timezone.utc)).total_seconds()
    return min(max(wait, 1.0), MAX_RETRY_AFTER_S)


@dataclass
class _HostState:
    last_slot: float = float("-inf")
    recent: Deque[float] = field(default_factory=deque)
    cooldown_until: float = float("-inf")


class HostThrottle:
    """Paces requests per host: minimum interval, burst window and 429 cooldown."""

    def __init__(
        self,
        min_interval_ms: Optional[int] = None,
        burst: Optional[int] = None,
        window_ms: Optional[int] = None,
        cooldown_ms: Optional[int] = None,
    ):
        """
        Initialize throttle.

        Args:
            min_interval_ms: Minimum gap between two requests to a host
            burst: Requests allowed per window (0 disables the window)
            window_ms: Length of the burst window
            cooldown_ms: Minimum back-off after a 429 response
        """
        interval = min_interval_ms if min_interval_ms is not None else settings.rate_limit_interval_ms
        window = window_ms if window_ms is not None else settings.rate_limit_window_ms
        cooldown = cooldown_ms if cooldown_ms is not None else settings.rate_limit_cooldown_ms
        self.min_interval_s = interval / 1000.0
        self.burst = burst if burst is not None else settings.rate_limit_burst
        self.window_s = window / 1000.0
        self.cooldown_s = cooldown / 1000.0
        self._hosts: Dict[str, _HostState] = {}
        self._lock = threading.Lock()

    def _state(self, url: str) -> _HostState:
        return self._hosts.setdefault(normalize_domain(url), _HostState())

    def reserve(self, url: str, deadline: float) -> Optional[float]:
        """
        Book the next free request slot for the URL's host.

        Args:
            url: URL about to be requested
            deadline: time.monotonic() value the request must start before

        Returns:
            Seconds to wait before sending, or None (nothing booked) when the
            slot would fall after the deadline
        """
        with self._lock:
            state = self._state(url)
            now = time.monotonic()
            slot = max(now, state.cooldown_until, state.last_slot + self.min_interval_s)

            if self.burst > 0:
                while state.recent and state.recent[0] <= slot - self.window_s:
                    state.recent.popleft()
                if len(state.recent) >= self.burst:
                    slot = max(slot, state.recent[-self.burst] + self.window_s)

            if slot > deadline:
                return None

            state.last_slot = slot
            if self.burst > 0:
                state.recent.append(slot)
            return slot - now

    def wait(self, url: str, deadline: float, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Block until the host may be requested again.

        Returns:
            False when the host cannot be requested before the deadline

        Raises:
            FetchTimeout: If cancelled while waiting
        """
        delay = self.reserve(url, deadline)
        if delay is None:
            return False
        if delay > 0:
            logger.debug(f"Rate limiting: waiting {delay:.2f}s before {url}")
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise FetchTimeout(url, "Fetch cancelled")
            else:
                time.sleep(delay)
        return True

    def penalize(self, url: str, retry_after: Optional[str] = None) -> float:
        """Start a cooldown for the URL's host after a 429; returns its length in seconds."""
        wait_s = max(parse_retry_after(retry_after), self.cooldown_s)
        with self._lock:
            state = self._state(url)
            state.cooldown_until = max(state.cooldown_until, time.monotonic() + wait_s)
            state.recent.clear()
        logger.warning(f"429 received for {normalize_domain(url)}, backing off {wait_s:.1f}s")
        return wait_s


class Fetcher:
    """Fetches pages with user-agent rotation inside a retry budget."""

    def __init__(
        self,
        user_agents: Optional[List[str]] = None,
        timeout_ms: Optional[int] = None,
        retry_budget_ms: Optional[int] = None,
        renderer: Optional[Renderer] = None,
        render_min_chars: Optional[int] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        throttle: Optional[HostThrottle] = None,
    ):
        """
        Initialize fetcher.

        Args:
            user_agents: Ordered user agents to rotate through on 401/403
            timeout_ms: Per-attempt timeout
            retry_budget_ms: Wall-clock budget for the whole retry loop
            renderer: Optional external page renderer (browser automation)
            render_min_chars: Extracted-text length below which the renderer is used
            session_factory: Builds a fresh HTTP session per fetch
            throttle: Per-host pacing, shared by every caller of this fetcher
        """
        self.user_agents = list(user_agents) if user_agents else settings.user_agents_list
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.fetch_timeout_ms
        self.retry_budget_ms = retry_budget_ms if retry_budget_ms is not None else settings.retry_budget_ms
        self.renderer = renderer
        self.render_min_chars = (
            render_min_chars if render_min_chars is not None else settings.render_min_chars
        )
        self.session_factory = session_factory
        self.throttle = throttle if throttle is not None else HostThrottle()

    def _headers(self, user_agent: Optional[str]) -> dict:
        headers = {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": settings.accept_language,
        }
        if user_agent:
            headers["User-Agent"] = user_agent
        return headers

    def fetch(
        self,
        url: str,
        timeout_ms: Optional[int] = None,
        retry_budget_ms: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> FetchResult:
        """
        Fetch a URL.

        Args:
            url: URL to fetch
            timeout_ms: Per-attempt timeout override
            retry_budget_ms: Retry budget override
            cancel_event: Set by the caller to abandon remaining attempts

        Returns:
            FetchResult for the first 2xx response

        Raises:
            FetchTimeout, NetworkFailure, HttpStatusError
        """
        timeout_s = (timeout_ms if timeout_ms is not None else self.timeout_ms) / 1000.0
        budget_s = (retry_budget_ms if retry_budget_ms is not None else self.retry_budget_ms) / 1000.0
        deadline = time.monotonic() + budget_s
        agents = self.user_agents or [None]
        last_error: Optional[FetchError] = None
        throttled = False

        session = self.session_factory()
        try:
            for attempt, agent in enumerate(agents, start=1):
                if cancel_event is not None and cancel_event.is_set():
                    raise FetchTimeout(url, "Fetch cancelled")

                if deadline - time.monotonic() <= 0:
                    break
                if not self.throttle.wait(url, deadline, cancel_event):
                    throttled = True
                    break

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break

                attempt_timeout = min(timeout_s, remaining)
                try:
                    response = session.get(
                        url,
                        headers=self._headers(agent),
                        timeout=attempt_timeout,
                        allow_redirects=True,
                    )
                except requests.Timeout:
                    last_error = FetchTimeout(url, f"Timed out after {attempt_timeout:.1f}s")
                    logger.debug(f"Attempt {attempt}/{len(agents)} timed out for {url}")
                    continue
                except requests.RequestException as e:
                    last_error = NetworkFailure(url, str(e))
                    logger.debug(f"Attempt {attempt}/{len(agents)} network failure for {url}: {e}")
                    continue

                try:
                    status = response.status_code
                    final_url = response.url or url

                    if status in (401, 403):
                        last_error = HttpStatusError(url, status)
                        logger.debug(f"HTTP {status} with user agent #{attempt} for {url}, rotating")
                        continue

                    if status == 429:
                        last_error = HttpStatusError(url, status)
                        self.throttle.penalize(url, response.headers.get("Retry-After"))
                        continue

                    if not 200 <= status < 300:
                        raise HttpStatusError(url, status)

                    if is_auth_wall(final_url) and not is_auth_wall(url):
                        raise HttpStatusError(url, 401, f"Redirected to authentication page {final_url}")

                    return FetchResult(
                        status=status,
                        final_url=final_url,
                        html=response.text,
                        user_agent=agent,
                    )
                finally:
                    response.close()

            if last_error is None:
                if throttled:
                    last_error = FetchTimeout(url, "Host is rate limited beyond the retry budget")
                else:
                    last_error = FetchTimeout(url, f"Retry budget of {budget_s:.1f}s exhausted")
            raise last_error
        finally:
            session.close()

    def fetch_page(
        self,
        url: str,
        mode: FetchMode = FetchMode.LIGHTWEIGHT,
        timeout_ms: Optional[int] = None,
        retry_budget_ms: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> FetchedPage:
        """
        Fetch a page and extract its text.

        The lightweight fetch runs first; the renderer is used when the mode
        asks for it or when the extracted text is shorter than render_min_chars.
        """
        result = self.fetch(
            url,
            timeout_ms=timeout_ms,
            retry_budget_ms=retry_budget_ms,
            cancel_event=cancel_event,
        )
        html = result.html
        text = extract_text(html)
        used_mode = FetchMode.LIGHTWEIGHT

        wants_render = mode == FetchMode.RENDERED or len(text) < self.render_min_chars
        if wants_render and self.renderer is not None:
            if cancel_event is not None and cancel_event.is_set():
                raise FetchTimeout(url, "Fetch cancelled")
            timeout_s = (timeout_ms if timeout_ms is not None else self.timeout_ms) / 1000.0
            try:
                rendered = self.renderer(result.final_url, timeout_s)
            except Exception as e:
                logger.warning(f"Renderer failed for {url}, keeping lightweight content: {e}")
            else:
                rendered_text = extract_text(rendered)
                if len(rendered_text) > len(text):
                    html, text = rendered, rendered_text
                    used_mode = FetchMode.RENDERED

        return FetchedPage(
            url=url,
            final_url=result.final_url,
            status=result.status,
            html=html,
            text=text,
            title=extract_title(html),
            mode=used_mode,
        )
