"""
Tests for feature extraction, heuristic scoring and candidate ranking
"""
import pytest

from policy_engine.features import (
    FEATURE_COUNT,
    FEATURE_NAMES,
    CandidateScorer,
    extract_features,
    heuristic_score,
    infer_doc_type,
    language_of,
    rank_candidates,
)
from policy_engine.link_extractor import CandidateLink
from policy_engine.neural_scorer import DimensionError


BASE = "https://example.com"


class FixedScorer:
    """Neural scorer stand-in returning a constant probability."""

    def __init__(self, default=0.5):
        self.default = default

    def predict(self, features):
        if len(features) != FEATURE_COUNT:
            raise DimensionError("bad width")
        return self.default


class ExplodingScorer:
    def predict(self, features):
        raise DimensionError("Expected 24 features, got 23")


def feature(vector, name):
    return vector[FEATURE_NAMES.index(name)]


class TestExtractFeatures:
    """Test the 24-dimension feature vector"""

    @pytest.mark.parametrize("text,href,context,content", [
        ("Privacy Policy", "/privacy", "footer", None),
        ("", "", "unknown", None),
        ("Terms 2024 🔒", "https://other.org/legal/terms/of/use/really/deep", "nav", "contact us at a@b.com"),
        ("x" * 500, "/" + "a" * 400, "body", "word " * 20000),
    ])
    def test_vector_shape_and_range(self, text, href, context, content):
        vector = extract_features(text, href, context, BASE, content)

        assert len(vector) == FEATURE_COUNT == 24
        assert all(0.0 <= value <= 1.0 for value in vector)

    def test_footer_privacy_link(self):
        vector = extract_features("Privacy Policy", "/privacy", "footer", BASE)

        assert feature(vector, "has_privacy_keyword") == 1.0
        assert feature(vector, "has_terms_keyword") == 0.0
        assert feature(vector, "url_has_privacy_path") == 1.0
        assert feature(vector, "url_is_https") == 1.0
        assert feature(vector, "is_in_footer") == 1.0
        assert feature(vector, "is_in_body") == 0.0
        assert feature(vector, "link_is_external") == 0.0

    def test_content_signals_zero_without_page_text(self):
        vector = extract_features("Privacy", "/privacy", "footer", BASE)

        for name in ("page_has_privacy_content", "page_has_policy_structure",
                     "page_has_legal_jargon", "page_word_count", "page_has_contact_info"):
            assert feature(vector, name) == 0.0

    def test_content_signals_with_page_text(self):
        content = (
            "We explain data collection, how we use information, your rights, "
            "third parties and security. Processing is based on consent. "
            "Contact us at privacy@example.com."
        )
        vector = extract_features("Privacy", "/privacy", "footer", BASE, content)

        assert feature(vector, "page_has_privacy_content") == 1.0
        assert feature(vector, "page_has_policy_structure") == 1.0
        assert feature(vector, "page_has_legal_jargon") == 1.0
        assert feature(vector, "page_has_contact_info") == 1.0
        assert 0.0 < feature(vector, "page_word_count") < 1.0

    def test_link_characteristics(self):
        vector = extract_features(
            "Privacy Policy 2024", "https://other.org/legal/privacy/policy", "body", BASE
        )

        assert feature(vector, "link_has_year") == 1.0
        assert feature(vector, "link_is_external") == 1.0
        assert feature(vector, "url_depth") == pytest.approx(3 / 5)
        assert feature(vector, "is_in_body") == 1.0

    def test_short_tokens_need_word_boundaries(self):
        vector = extract_features("Photos", "/photos", "body", BASE)

        assert feature(vector, "has_terms_keyword") == 0.0
        assert feature(vector, "url_has_terms_path") == 0.0

    def test_unknown_context_counts_as_body(self):
        vector = extract_features("Privacy", "/privacy", "unknown", BASE)
        assert feature(vector, "is_in_body") == 1.0


class TestHeuristicScore:
    """Test rule-based link scoring"""

    def test_preferred_language_footer_privacy(self):
        link = CandidateLink(url=f"{BASE}/en/privacy", text="Privacy Policy", context="footer")
        assert heuristic_score(link, "en") == 50 + 40 + 30 + 5

    def test_other_language_is_penalized(self):
        link = CandidateLink(url=f"{BASE}/de/datenschutz", text="Datenschutz", context="body")
        assert heuristic_score(link, "en") == -20 + 40 + 5

    def test_tiers_are_additive(self):
        link = CandidateLink(
            url=f"{BASE}/legal/terms", text="Privacy and Terms", context="nav", is_visible=False
        )
        assert heuristic_score(link, "en") == 40 + 20 + 10

    def test_irrelevant_hidden_link_scores_zero(self):
        link = CandidateLink(url=f"{BASE}/shop", text="Shop", context="body", is_visible=False)
        assert heuristic_score(link, "en") == 0

    def test_is_deterministic(self):
        link = CandidateLink(url=f"{BASE}/terms", text="Terms of Service", context="footer")
        assert heuristic_score(link, "en") == heuristic_score(link, "en") == 20 + 30 + 5

    def test_language_detection(self):
        assert language_of(f"{BASE}/en-us/privacy") == "en"
        assert language_of(f"{BASE}/fr/confidentialite") == "fr"
        assert language_of(f"{BASE}/privacy?lang=de") == "de"
        assert language_of(f"{BASE}/privacy") is None


class TestRanking:
    """Test candidate ranking"""

    def _links(self):
        return [
            CandidateLink(url=f"{BASE}/shop", text="Shop", context="body", is_visible=False),
            CandidateLink(url=f"{BASE}/terms", text="Terms of Service", context="footer"),
            CandidateLink(url=f"{BASE}/privacy", text="Privacy Policy", context="footer"),
        ]

    def test_drops_non_positive_and_sorts(self):
        ranked = rank_candidates(self._links(), BASE, FixedScorer(), neural_weight=30)

        assert [c.url for c in ranked] == [f"{BASE}/privacy", f"{BASE}/terms"]
        assert ranked[0].combined_score == pytest.approx(75 + 30 * 0.5)
        assert all(len(c.features) == 24 for c in ranked)

    def test_dimension_error_excludes_candidate(self):
        ranked = rank_candidates(self._links(), BASE, ExplodingScorer())
        assert ranked == []

    def test_without_neural_scorer_uses_heuristics(self):
        ranked = CandidateScorer(None, neural_weight=30).rank(self._links(), BASE)

        assert [c.combined_score for c in ranked] == [75, 55]
        assert all(c.neural_score == 0.0 for c in ranked)

    def test_doc_type_hint_is_filled(self):
        ranked = rank_candidates(self._links(), BASE, FixedScorer())
        hints = {c.url: c.doc_type_hint for c in ranked}

        assert hints[f"{BASE}/privacy"] == "privacy"
        assert hints[f"{BASE}/terms"] == "terms"


class TestInferDocType:

    @pytest.mark.parametrize("url,text,expected", [
        ("https://a.com/privacy-policy", "", "privacy"),
        ("https://a.com/legal/cookie-policy", "Cookies", "cookie"),
        ("https://a.com/terms-of-service", "", "terms"),
        ("https://a.com/legal/dpa", "", "data_processing_agreement"),
        ("https://a.com/about", "About us", None),
    ])
    def test_infer(self, url, text, expected):
        assert infer_doc_type(url, text) == expected
