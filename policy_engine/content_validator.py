"""
Content Validation & Classification Module

Decides whether fetched text is a legal policy document, and which kind:
- Garbage detection (error pages, bot walls, JavaScript-required shells)
- Minimum length and keyword-density validation
- Weighted keyword-category scoring with structural indicators
- Optional LLM tie-breaker for ambiguous scores
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from policy_engine.config import settings

logger = logging.getLogger(__name__)


MIN_TEXT_LENGTH = 500
GARBAGE_MAX_LENGTH = 1000
MIN_GENERAL_KEYWORDS = 3
DOC_TYPE_MIN_SCORE = 0.15

GARBAGE_PHRASES = [
    "enable javascript",
    "browser not supported",
    "please update your browser",
    "access denied",
    "403 forbidden",
    "404 not found",
    "captcha",
    "verify you are human",
    "click here to continue",
]

GENERAL_KEYWORDS = [
    "privacy", "data", "personal information", "collect", "share",
    "cookies", "rights", "contact us", "policy", "terms",
]

POLICY_KEYWORDS: Dict[str, List[str]] = {
    "core": [
        "privacy policy", "privacy notice", "data protection", "personal data",
        "personal information", "data subject", "data controller", "data processor",
        "terms of service", "terms of use", "terms and conditions", "user agreement",
        "cookie policy", "cookie notice",
    ],
    "legal": [
        "gdpr", "ccpa", "cpra", "lgpd", "pipeda", "dpa", "vcdpa",
        "general data protection regulation", "california consumer privacy act",
        "virginia consumer data protection act", "colorado privacy act",
        "data protection act", "privacy act", "electronic communications",
        "e-privacy", "coppa", "children's online privacy protection",
    ],
    "data_handling": [
        "collect", "collection", "process", "processing", "store", "storage",
        "retain", "retention", "delete", "deletion", "anonymize", "anonymization",
        "pseudonymize", "pseudonymization", "aggregate", "aggregation",
        "transfer", "disclose", "disclosure", "share", "sharing",
    ],
    "rights": [
        "consent", "withdraw consent", "opt-out", "opt out", "opt-in", "opt in",
        "right to access", "right to rectification", "right to erasure",
        "right to delete", "right to portability", "right to object",
        "data subject rights", "your rights", "user rights", "exercise your rights",
        "request deletion", "request access", "do not sell", "do not share",
    ],
    "third_party": [
        "third party", "third parties", "service provider", "service providers",
        "business partner", "affiliate", "affiliates", "vendor", "vendors",
        "advertising partner", "analytics provider", "subprocessor",
    ],
    "security": [
        "encryption", "encrypted", "ssl", "tls", "secure", "security measures",
        "data breach", "breach notification", "unauthorized access",
        "security safeguards", "protect your data", "protect your information",
    ],
    "cookies": [
        "cookie", "cookies", "tracking technology", "tracking technologies",
        "pixel", "pixels", "web beacon", "web beacons", "local storage",
        "session storage", "fingerprint", "fingerprinting", "device identifier",
    ],
    "structure": [
        "effective date", "last updated", "last modified", "revision date",
        "table of contents", "definitions", "scope", "applicability",
        "contact us", "how to contact", "questions about this",
        "changes to this", "updates to this", "modifications to this",
        "governing law", "jurisdiction", "dispute resolution", "arbitration",
        "limitation of liability", "indemnification", "warranty", "disclaimer",
    ],
}

CATEGORY_WEIGHTS = {
    "core": 3.0,
    "legal": 2.5,
    "data_handling": 1.5,
    "rights": 1.5,
    "third_party": 1.2,
    "security": 1.2,
    "cookies": 1.2,
    "structure": 0.8,
}

# Keyword evidence at which a category counts as fully present
CATEGORY_SATURATION = {
    "core": 5,
}
DEFAULT_SATURATION = 3

# Weighted category evidence that maps to a base score of 1.0; a saturated
# "core" category alone reaches 0.6
EVIDENCE_SCALE = 5.0

MONTHS = r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?"

DOCUMENT_TYPES: Dict[str, List[str]] = {
    "privacy_policy": [
        "privacy policy", "privacy notice", "privacy statement", "data protection",
        "personal data", "personal information", "information we collect",
        "how we use your", "how we collect",
    ],
    "terms_of_service": [
        "terms of service", "terms of use", "terms and conditions", "user agreement",
        "service agreement", "acceptable use", "prohibited conduct",
        "your responsibilities", "account termination",
    ],
    "cookie_policy": [
        "cookie policy", "cookie notice", "use of cookies", "cookie statement",
        "cookies we use", "types of cookies", "cookie preferences",
    ],
    "data_processing_agreement": [
        "data processing agreement", "data processing addendum", "dpa",
        "subprocessor", "data processor", "standard contractual clauses",
    ],
}

# Classifier label -> PolicyDocument.document_type
DOCUMENT_TYPE_NAMES = {
    "privacy_policy": "privacy",
    "terms_of_service": "terms",
    "cookie_policy": "cookie",
    "data_processing_agreement": "data_processing_agreement",
}

STRUCTURE_INDICATORS = {
    "numbered_sections": re.compile(r"\b(?:section|article|clause)\s*\d+", re.I),
    "definitions_section": re.compile(r"\b(?:\"[^\"]+\"\s+(?:means|refers to|shall mean)|definitions?:)", re.I),
    "date_reference": re.compile(
        rf"(?:effective(?:\s+date)?|last\s+(?:updated|modified|revised))[:\s]+(?:\d|{MONTHS}\s+\d)", re.I
    ),
    "legal_boilerplate": re.compile(
        r"(?:to the (?:fullest|maximum) extent (?:permitted|allowed) by law)", re.I
    ),
    "contact_section": re.compile(
        r"(?:contact\s+us|how\s+to\s+contact|questions?\s+(?:about|regarding)|reach\s+us)", re.I
    ),
    "table_of_contents": re.compile(r"(?:table\s+of\s+contents|contents:|index:)", re.I),
    "change_notification": re.compile(
        r"(?:we\s+(?:may|will|reserve\s+the\s+right\s+to)\s+(?:update|modify|change|revise)\s+this)", re.I
    ),
}

_NON_WORD = re.compile(r"[^\w\s'-]")
_WHITESPACE = re.compile(r"\s+")


class ValidationRejected(Exception):
    """Fetched content is not an acceptable policy document."""

    REASONS = ("garbage", "too_short", "low_keyword_density", "not_policy")

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


@dataclass
class ValidationResult:
    valid: bool
    reason: Optional[str] = None


@dataclass
class ClassificationResult:
    """Outcome of keyword classification, optionally blended with the tie-breaker."""
    document_type: Optional[str]
    confidence: float
    is_policy: bool
    high_confidence: bool
    document_type_confidence: float = 0.0
    category_scores: Dict[str, float] = field(default_factory=dict)
    category_matches: Dict[str, List[str]] = field(default_factory=dict)
    structure_indicators: List[str] = field(default_factory=list)
    reasoning: str = ""
    ai_reasoning: Optional[str] = None


@dataclass(frozen=True)
class PolicyDocument:
    """A verified legal document."""
    url: str
    title: Optional[str]
    text: str
    document_type: str
    confidence: float
    source: str

    def to_dict(self, include_text: bool = False) -> dict:
        data = {
            "url": self.url,
            "title": self.title,
            "document_type": self.document_type,
            "confidence": round(self.confidence, 4),
            "source": self.source,
        }
        if include_text:
            data["text"] = self.text
        return data


class TieBreaker(Protocol):
    """Second-opinion classifier consulted for ambiguous scores."""

    def adjudicate(self, text: str): ...


# ============================================================================
# Text Helpers
# ============================================================================

def normalize_text(text: str) -> str:
    """Lowercase, replace punctuation with spaces and collapse whitespace."""
    return _WHITESPACE.sub(" ", _NON_WORD.sub(" ", text.lower())).strip()


def _occurrences(normalized: str, phrase: str) -> int:
    return len(re.findall(rf"\b{re.escape(phrase.lower())}\b", normalized))


def score_keywords(normalized: str, keywords: List[str]):
    """
    Score keyword matches with diminishing returns for repeats.

    Returns:
        (matched keywords, raw score)
    """
    matches = []
    score = 0.0
    for keyword in keywords:
        count = _occurrences(normalized, keyword)
        if count > 0:
            matches.append(keyword)
            score += 1 + min(count - 1, 4) * 0.2
    return matches, score


def detect_structure(text: str) -> List[str]:
    """Names of the structural indicators present in the text."""
    return [name for name, pattern in STRUCTURE_INDICATORS.items() if pattern.search(text)]


def detect_document_type(normalized: str):
    """
    Best matching document type.

    Returns:
        (type label or None, confidence in [0, 1])
    """
    scores = {}
    for doc_type, phrases in DOCUMENT_TYPES.items():
        score = 0.0
        for phrase in phrases:
            count = _occurrences(normalized, phrase)
            if count > 0:
                score += 1 + min(count - 1, 3) * 0.3
        scores[doc_type] = score / len(phrases)

    best_type = max(scores, key=scores.get)
    best_score = scores[best_type]
    if best_score > DOC_TYPE_MIN_SCORE:
        return best_type, min(1.0, best_score)
    return None, 0.0


# ============================================================================
# Validation
# ============================================================================

def is_garbage(text: str) -> bool:
    """True for short error pages, bot challenges and JavaScript shells."""
    text = text or ""
    if len(text) >= GARBAGE_MAX_LENGTH:
        return False
    lower = text.lower()
    return any(phrase in lower for phrase in GARBAGE_PHRASES)


def validate(text: str) -> ValidationResult:
    """Check minimum length and general keyword density."""
    if not text or len(text) < MIN_TEXT_LENGTH:
        return ValidationResult(False, "too_short")

    lower = text.lower()
    found = sum(1 for keyword in GENERAL_KEYWORDS if keyword in lower)
    if found < MIN_GENERAL_KEYWORDS:
        return ValidationResult(False, "low_keyword_density")

    return ValidationResult(True)


# ============================================================================
# Classification
# ============================================================================

def _reasoning(confidence: float, is_policy: bool, high: bool,
               doc_type: Optional[str], matched_categories: List[str]) -> str:
    if high:
        return f"High confidence policy document. Strong matches in: {', '.join(matched_categories)}"
    if is_policy:
        return (
            "Likely a policy document based on keyword analysis. "
            f"Document appears to be {doc_type or 'a legal document'}."
        )
    if confidence >= 0.3:
        return "Some policy-related content detected, but not enough to classify as a policy document."
    return "Does not appear to be a policy document. Few policy-specific keywords found."


def classify_document_type(
    text: str,
    tie_breaker: Optional[TieBreaker] = None,
    policy_threshold: Optional[float] = None,
    high_threshold: Optional[float] = None,
) -> ClassificationResult:
    """
    Classify text as a policy document.

    Args:
        text: Extracted page text
        tie_breaker: Optional second opinion for scores in the ambiguous band
        policy_threshold: Confidence needed to count as a policy
        high_threshold: Confidence counted as high

    Returns:
        ClassificationResult
    """
    policy_threshold = policy_threshold if policy_threshold is not None else settings.policy_confidence_threshold
    high_threshold = high_threshold if high_threshold is not None else settings.high_confidence_threshold
    normalized = normalize_text(text or "")

    category_scores: Dict[str, float] = {}
    category_matches: Dict[str, List[str]] = {}
    evidence = 0.0
    for category, keywords in POLICY_KEYWORDS.items():
        matches, raw = score_keywords(normalized, keywords)
        saturation = CATEGORY_SATURATION.get(category, DEFAULT_SATURATION)
        category_score = min(raw, saturation) / saturation
        category_scores[category] = category_score
        if matches:
            category_matches[category] = matches
        evidence += category_score * CATEGORY_WEIGHTS.get(category, 1.0)

    indicators = detect_structure(text or "")
    doc_type, doc_type_confidence = detect_document_type(normalized)

    base = min(1.0, evidence / EVIDENCE_SCALE)
    confidence = min(1.0, base + len(indicators) * 0.05 + doc_type_confidence * 0.1)
    confidence = max(0.0, confidence)

    is_policy = confidence >= policy_threshold
    high = confidence >= high_threshold
    result = ClassificationResult(
        document_type=doc_type,
        confidence=confidence,
        is_policy=is_policy,
        high_confidence=high,
        document_type_confidence=doc_type_confidence,
        category_scores=category_scores,
        category_matches=category_matches,
        structure_indicators=indicators,
        reasoning=_reasoning(confidence, is_policy, high, doc_type, list(category_matches)),
    )

    if tie_breaker is not None and settings.ambiguous_lower <= confidence < settings.ambiguous_upper:
        result = _apply_tie_breaker(result, text, tie_breaker, policy_threshold, high_threshold)

    return result


def _apply_tie_breaker(result: ClassificationResult, text: str, tie_breaker: TieBreaker,
                       policy_threshold: float, high_threshold: float) -> ClassificationResult:
    try:
        verdict = tie_breaker.adjudicate(text)
    except Exception as e:
        logger.warning(f"Tie-breaker failed, using keyword analysis only: {e}")
        return result

    combined = min(1.0, max(0.0, result.confidence * 0.6 + verdict.confidence * 0.4))
    doc_type = result.document_type
    if verdict.document_type in DOCUMENT_TYPE_NAMES:
        doc_type = verdict.document_type

    result.confidence = combined
    result.document_type = doc_type
    result.is_policy = combined >= policy_threshold
    result.high_confidence = combined >= high_threshold
    result.ai_reasoning = verdict.reasoning
    logger.debug(f"Tie-breaker verdict {verdict.document_type} ({verdict.confidence:.2f}), combined {combined:.2f}")
    return result


def document_type_name(label: Optional[str]) -> str:
    """Map a classifier label to the document type stored on PolicyDocument."""
    return DOCUMENT_TYPE_NAMES.get(label or "", "other")


class ContentClassifier:
    """Turns fetched pages into verified PolicyDocuments."""

    def __init__(self, tie_breaker: Optional[TieBreaker] = None):
        self.tie_breaker = tie_breaker

    def verify(self, url: str, text: str, title: Optional[str] = None, source: str = "") -> PolicyDocument:
        """
        Validate and classify fetched text.

        Args:
            url: Final URL of the page
            text: Extracted page text
            title: Page title
            source: Name of the strategy that found the page

        Returns:
            PolicyDocument

        Raises:
            ValidationRejected: With reason garbage, too_short,
                low_keyword_density or not_policy
        """
        if is_garbage(text):
            raise ValidationRejected("garbage", url)

        validation = validate(text)
        if not validation.valid:
            raise ValidationRejected(validation.reason, url)

        classification = classify_document_type(text, self.tie_breaker)
        if not classification.is_policy:
            raise ValidationRejected(
                "not_policy", f"{url} (confidence {classification.confidence:.2f})"
            )

        return PolicyDocument(
            url=url,
            title=title,
            text=text,
            document_type=document_type_name(classification.document_type),
            confidence=classification.confidence,
            source=source,
        )
