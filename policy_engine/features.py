"""
Feature Extraction & Candidate Scoring Module

Turns candidate links into:
- A fixed 24-dimension feature vector (every value in [0, 1]) for the
  neural scorer
- A rule-based heuristic score
- A combined ranking score (heuristic + weighted neural probability)
"""

import logging
import re
from typing import Iterable, List, Optional, TYPE_CHECKING
from urllib.parse import urljoin, urlparse

from policy_engine.config import settings
from policy_engine.link_extractor import CandidateLink

if TYPE_CHECKING:
    from policy_engine.neural_scorer import NeuralScorer

logger = logging.getLogger(__name__)


# ============================================================================
# Keyword Dictionaries
# ============================================================================

PRIVACY_KEYWORDS = [
    # English
    "privacy", "privacy policy", "data protection", "personal data", "your data",
    "personal information", "data privacy", "privacy notice", "privacy statement",
    # German
    "datenschutz", "datenschutzerklärung", "datenschutzrichtlinie", "datenschutzhinweise",
    "privatsphäre", "personenbezogene daten",
    # French
    "confidentialité", "politique de confidentialité", "données personnelles",
    # Spanish
    "privacidad", "política de privacidad", "datos personales",
    # Regulations
    "gdpr", "ccpa", "dsgvo", "rgpd",
]

TERMS_KEYWORDS = [
    "terms", "terms of service", "terms of use", "terms and conditions",
    "conditions of use", "user agreement", "service agreement",
    "nutzungsbedingungen", "agb", "allgemeine geschäftsbedingungen",
    "conditions générales", "condiciones de uso", "términos y condiciones",
]

COOKIE_KEYWORDS = [
    "cookie", "cookies", "cookie policy", "cookie notice",
    "cookie-richtlinie", "cookies policy", "use of cookies",
    "politique cookies", "política de cookies",
]

LEGAL_HUB_KEYWORDS = [
    "legal", "legal notice", "legal information", "impressum",
    "rechtliche hinweise", "mentions légales", "aviso legal",
]

PRIVACY_URL_PATTERNS = [
    "privacy", "privacypolicy", "datenschutz", "data-protection",
    "dataprotection", "gdpr", "ccpa", "confidentialite", "privacidad",
]
TERMS_URL_PATTERNS = [
    "terms", "termsofservice", "tos", "conditions", "nutzungsbedingungen",
    "agb", "eula", "user-agreement",
]
LEGAL_URL_PATTERNS = ["legal", "policies", "impressum", "imprint"]

STRUCTURE_KEYWORDS = [
    "data collection", "information we collect", "how we use",
    "your rights", "third parties", "cookies", "security",
    "retention", "updates to this policy", "contact us",
    "datenerhebung", "ihre rechte", "dritte",
]

LEGAL_JARGON = [
    "pursuant to", "hereby", "notwithstanding", "liability",
    "indemnify", "consent", "processing", "controller", "processor",
    "gemäß", "hiermit", "verarbeitung", "verantwortlicher",
]

ICON_SYMBOLS = ("🔒", "🛡", "⚖")
ICON_URL_HINTS = ("shield", "lock", "secure")

# Keyword tiers for the heuristic score
HEURISTIC_PRIVACY = [
    "privacy", "data protection", "gdpr", "ccpa", "datenschutz",
    "confidentialité", "confidentialite", "privacidad", "cookie", "personal data",
]
HEURISTIC_TERMS = [
    "terms", "conditions", "tos", "user agreement", "nutzungsbedingungen",
    "agb", "service agreement", "legal notice",
]
HEURISTIC_LEGAL = ["legal", "compliance", "policies", "rechtliches", "impressum", "imprint"]

KNOWN_LANGUAGE_CODES = {
    "en", "de", "fr", "es", "it", "nl", "pt", "sv", "da", "no", "fi", "pl",
    "cs", "sk", "hu", "ro", "bg", "el", "tr", "ru", "uk", "ja", "zh", "ko",
    "ar", "he", "hi", "th", "vi", "id",
}

_LANG_SEGMENT = re.compile(r"/([a-z]{2})(?:[-_][a-z]{2})?(?=/|$)")
_LANG_QUERY = re.compile(r"[?&](?:lang|locale|hl)=([a-z]{2})\b")
_PHONE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")
_YEAR = re.compile(r"\b20[2-3]\d\b")

FEATURE_NAMES = [
    # Text signals (5)
    "has_privacy_keyword", "has_terms_keyword", "has_cookie_keyword",
    "has_legal_keyword", "text_match_strength",
    # URL signals (6)
    "url_has_privacy_path", "url_has_terms_path", "url_has_legal_path",
    "url_depth", "url_length", "url_is_https",
    # Context signals (4)
    "is_in_footer", "is_in_nav", "is_in_legal_hub", "is_in_body",
    # Content signals (5)
    "page_has_privacy_content", "page_has_policy_structure", "page_has_legal_jargon",
    "page_word_count", "page_has_contact_info",
    # Link characteristics (4)
    "link_text_length", "link_has_icon", "link_is_external", "link_has_year",
]

FEATURE_COUNT = len(FEATURE_NAMES)


# ============================================================================
# Matching Helpers
# ============================================================================

def _matches(text: str, keyword: str) -> bool:
    # Short tokens ("tos", "agb") need word boundaries to avoid "photos" etc.
    if len(keyword) <= 3:
        return re.search(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])", text) is not None
    return keyword in text


def count_keywords(text: str, keywords: Iterable[str]) -> int:
    """Count how many keywords occur in text (case-insensitive)."""
    lower = text.lower()
    return sum(1 for keyword in keywords if _matches(lower, keyword.lower()))


def has_keywords(text: str, keywords: Iterable[str]) -> bool:
    """True when any keyword occurs in text (case-insensitive)."""
    lower = text.lower()
    return any(_matches(lower, keyword.lower()) for keyword in keywords)


def normalize(value: float, maximum: float) -> float:
    """Scale a value into [0, 1]."""
    return min(max(value / maximum, 0.0), 1.0)


# ============================================================================
# Feature Extraction
# ============================================================================

def extract_features(
    link_text: str,
    href: str,
    context: str,
    base_url: str,
    page_content: Optional[str] = None,
) -> List[float]:
    """
    Extract the 24-dimension feature vector for a link.

    Args:
        link_text: Visible anchor text
        href: Link target (absolute or relative)
        context: One of footer, nav, body, legal_hub, unknown
        base_url: URL of the page the link was found on
        page_content: Optional text of the page, enables content signals

    Returns:
        List of 24 floats in [0, 1], ordered as FEATURE_NAMES
    """
    text = (link_text or "").lower().strip()
    try:
        absolute = urljoin(base_url, href or "")
    except ValueError:
        absolute = href or ""
    url = absolute.lower()
    content = (page_content or "").lower()

    # Text signals
    has_privacy = 1.0 if has_keywords(text, PRIVACY_KEYWORDS) else 0.0
    has_terms = 1.0 if has_keywords(text, TERMS_KEYWORDS) else 0.0
    has_cookie = 1.0 if has_keywords(text, COOKIE_KEYWORDS) else 0.0
    has_legal = 1.0 if has_keywords(text, LEGAL_HUB_KEYWORDS) else 0.0
    match_strength = normalize(
        count_keywords(text, PRIVACY_KEYWORDS + TERMS_KEYWORDS + COOKIE_KEYWORDS), 5
    )

    # URL signals
    try:
        parsed = urlparse(absolute)
        path = (parsed.path or "").lower()
        link_host = (parsed.hostname or "").lower()
    except ValueError:
        path, link_host = "", ""
    url_privacy = 1.0 if has_keywords(path, PRIVACY_URL_PATTERNS) else 0.0
    url_terms = 1.0 if has_keywords(path, TERMS_URL_PATTERNS) else 0.0
    url_legal = 1.0 if has_keywords(path, LEGAL_URL_PATTERNS) else 0.0
    depth = len([segment for segment in path.split("/") if segment])
    url_depth = normalize(depth, 5)
    url_length = normalize(len(url), 200)
    url_https = 1.0 if url.startswith("https") else 0.0

    # Context signals
    in_footer = 1.0 if context == "footer" else 0.0
    in_nav = 1.0 if context == "nav" else 0.0
    in_hub = 1.0 if context == "legal_hub" else 0.0
    in_body = 1.0 if context in ("body", "unknown") else 0.0

    # Content signals
    page_privacy = page_structure = page_jargon = page_words = page_contact = 0.0
    if content:
        page_privacy = 1.0 if has_keywords(content, PRIVACY_KEYWORDS) else 0.0
        page_structure = 1.0 if count_keywords(content, STRUCTURE_KEYWORDS) >= 3 else 0.0
        page_jargon = 1.0 if count_keywords(content, LEGAL_JARGON) >= 2 else 0.0
        page_words = normalize(len(content.split()), 5000)
        page_contact = 1.0 if (
            "@" in content or _PHONE.search(content) or "contact us" in content
        ) else 0.0

    # Link characteristics
    text_length = normalize(len(text), 50)
    has_icon = 1.0 if (
        any(symbol in text for symbol in ICON_SYMBOLS)
        or any(hint in url for hint in ICON_URL_HINTS)
    ) else 0.0
    base_host = (urlparse(base_url).hostname or "").lower()
    is_external = 1.0 if link_host and base_host and link_host != base_host else 0.0
    has_year = 1.0 if _YEAR.search(text) else 0.0

    return [
        has_privacy, has_terms, has_cookie, has_legal, match_strength,
        url_privacy, url_terms, url_legal, url_depth, url_length, url_https,
        in_footer, in_nav, in_hub, in_body,
        page_privacy, page_structure, page_jargon, page_words, page_contact,
        text_length, has_icon, is_external, has_year,
    ]


# ============================================================================
# Heuristic Scoring
# ============================================================================

def language_of(url: str) -> Optional[str]:
    """Language code carried by a URL path segment or query parameter."""
    lower = url.lower()
    match = _LANG_QUERY.search(lower)
    if match:
        return match.group(1)
    try:
        path = urlparse(lower).path
    except ValueError:
        return None
    for match in _LANG_SEGMENT.finditer(path):
        if match.group(1) in KNOWN_LANGUAGE_CODES:
            return match.group(1)
    return None


def heuristic_score(link: CandidateLink, preferred_language: Optional[str] = None) -> int:
    """
    Rule-based score for a candidate link.

    +50 preferred-language segment, -20 other language segment,
    +40 / +20 / +10 for privacy / terms / legal keywords in URL or text
    (tiers add up), +30 footer, +5 visible.
    """
    preferred = (preferred_language or settings.preferred_language).lower()
    url = link.url.lower()
    text = (link.text or "").lower()
    score = 0

    language = language_of(url)
    if language == preferred:
        score += 50
    elif language is not None:
        score -= 20

    if has_keywords(url, HEURISTIC_PRIVACY) or has_keywords(text, HEURISTIC_PRIVACY):
        score += 40
    if has_keywords(url, HEURISTIC_TERMS) or has_keywords(text, HEURISTIC_TERMS):
        score += 20
    if has_keywords(url, HEURISTIC_LEGAL) or has_keywords(text, HEURISTIC_LEGAL):
        score += 10

    if link.context == "footer":
        score += 30
    if link.is_visible:
        score += 5

    return score


def infer_doc_type(url: str, text: str = "") -> Optional[str]:
    """Guess which document type a link points at from its URL and text."""
    haystack = f"{url} {text}".lower()
    if has_keywords(haystack, ["data-processing", "data processing", "dpa", "subprocessor"]):
        return "data_processing_agreement"
    if has_keywords(haystack, PRIVACY_URL_PATTERNS + ["privacy", "personal data"]):
        return "privacy"
    if has_keywords(haystack, ["cookie"]):
        return "cookie"
    if has_keywords(haystack, TERMS_URL_PATTERNS + ["terms of"]):
        return "terms"
    return None


class CandidateScorer:
    """Ranks candidate links by heuristic score combined with the neural score."""

    def __init__(
        self,
        neural_scorer: Optional["NeuralScorer"] = None,
        neural_weight: Optional[float] = None,
        preferred_language: Optional[str] = None,
    ):
        self.neural_scorer = neural_scorer
        self.neural_weight = neural_weight if neural_weight is not None else settings.neural_weight
        self.preferred_language = preferred_language or settings.preferred_language

    def score(
        self,
        link: CandidateLink,
        base_url: str,
        page_content: Optional[str] = None,
    ) -> Optional[CandidateLink]:
        """
        Score a single link in place.

        Returns:
            The link, or None when it is excluded (score <= 0 or scoring failed)
        """
        from policy_engine.neural_scorer import DimensionError

        link.features = extract_features(link.text, link.url, link.context, base_url, page_content)
        link.heuristic_score = heuristic_score(link, self.preferred_language)
        if link.heuristic_score <= 0:
            return None

        if self.neural_scorer is not None:
            try:
                link.neural_score = self.neural_scorer.predict(link.features)
            except DimensionError as e:
                logger.warning(f"Excluding {link.url}: {e}")
                return None

        link.combined_score = link.heuristic_score + self.neural_weight * link.neural_score
        if link.doc_type_hint is None:
            link.doc_type_hint = infer_doc_type(link.url, link.text)
        return link

    def rank(
        self,
        links: Iterable[CandidateLink],
        base_url: str,
        page_content: Optional[str] = None,
    ) -> List[CandidateLink]:
        """Score links and return the survivors, best first."""
        ranked = []
        for link in links:
            scored = self.score(link, base_url, page_content)
            if scored is not None:
                ranked.append(scored)
        ranked.sort(key=lambda c: (c.combined_score, c.neural_score), reverse=True)
        return ranked


def rank_candidates(
    links: Iterable[CandidateLink],
    base_url: str,
    scorer: Optional["NeuralScorer"] = None,
    page_content: Optional[str] = None,
    neural_weight: Optional[float] = None,
) -> List[CandidateLink]:
    """
    Score and rank raw candidate links.

    Args:
        links: Raw links from the link extractor
        base_url: URL of the page the links came from
        scorer: Neural scorer used for the learned component (optional)
        page_content: Optional page text for content signals
        neural_weight: Multiplier applied to the neural score

    Returns:
        Links with score > 0, sorted by combined score descending
    """
    return CandidateScorer(scorer, neural_weight).rank(links, base_url, page_content)
