"""
Policy Discovery Engine

Locates and classifies privacy policies, terms of service, cookie policies
and related legal documents on arbitrary websites, and learns to rank
candidate links better from verification outcomes.
"""

__version__ = "0.1.0"
__all__ = [
    "config",
    "fetcher",
    "link_extractor",
    "features",
    "neural_scorer",
    "content_validator",
    "llm_tiebreaker",
    "strategies",
    "orchestrator",
    "queue_processor",
    "database",
    "utils",
]
