"""
Discovery Orchestrator Module

Runs one discovery session for a domain:

    idle -> dispatching -> collecting -> verifying -> done

Strategies run concurrently on a bounded thread pool, each under its own
timeout and all under a global wall-clock budget. Their candidates are merged
by normalized URL, then verified best-first until enough documents pass.
Progress is published as PhaseEvents to registered callbacks and/or a queue.
"""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from policy_engine.config import settings
from policy_engine.content_validator import ContentClassifier, PolicyDocument, ValidationRejected
from policy_engine.database import PersistenceError, PolicyCacheStore
from policy_engine.features import CandidateScorer
from policy_engine.fetcher import FetchError, Fetcher, HttpStatusError
from policy_engine.link_extractor import CandidateLink, LinkExtractor
from policy_engine.neural_scorer import NeuralScorer, confidence_label
from policy_engine.strategies import DiscoveryContext, DiscoveryStrategy, build_strategies
from policy_engine.utils import dedupe_key, elapsed_ms, normalize_domain

logger = logging.getLogger(__name__)


# Well-known sites whose policy pages sit behind redirects or login walls
SPECIAL_DOMAINS: Dict[str, Dict[str, str]] = {
    'facebook.com': {
        'privacy': 'https://www.facebook.com/privacy/policy/',
        'terms': 'https://www.facebook.com/legal/terms',
    },
    'meta.com': {
        'privacy': 'https://www.facebook.com/privacy/policy/',
    },
    'instagram.com': {
        'privacy': 'https://privacycenter.instagram.com/policy',
        'terms': 'https://help.instagram.com/581066165581870',
    },
    'whatsapp.com': {
        'privacy': 'https://www.whatsapp.com/legal/privacy-policy',
        'terms': 'https://www.whatsapp.com/legal/terms-of-service',
    },
    'x.com': {
        'privacy': 'https://x.com/en/privacy',
        'terms': 'https://x.com/en/tos',
    },
    'twitter.com': {
        'privacy': 'https://twitter.com/en/privacy',
        'terms': 'https://twitter.com/en/tos',
    },
    'google.com': {
        'privacy': 'https://policies.google.com/privacy',
        'terms': 'https://policies.google.com/terms',
    },
    'youtube.com': {
        'privacy': 'https://policies.google.com/privacy',
        'terms': 'https://www.youtube.com/static?template=terms',
    },
    'linkedin.com': {
        'privacy': 'https://www.linkedin.com/legal/privacy-policy',
        'terms': 'https://www.linkedin.com/legal/user-agreement',
    },
    'amazon.com': {
        'privacy': 'https://www.amazon.com/gp/help/customer/display.html?nodeId=468496',
        'terms': 'https://www.amazon.com/gp/help/customer/display.html?nodeId=508088',
    },
    'microsoft.com': {
        'privacy': 'https://privacy.microsoft.com/en-us/privacystatement',
        'terms': 'https://www.microsoft.com/en-us/servicesagreement',
    },
    'apple.com': {
        'privacy': 'https://www.apple.com/legal/privacy/',
        'terms': 'https://www.apple.com/legal/internet-services/terms/site.html',
    },
    'netflix.com': {
        'privacy': 'https://help.netflix.com/legal/privacy',
        'terms': 'https://help.netflix.com/legal/termsofuse',
    },
    'spotify.com': {
        'privacy': 'https://www.spotify.com/us/legal/privacy-policy/',
        'terms': 'https://www.spotify.com/us/legal/end-user-agreement/',
        'cookie': 'https://www.spotify.com/us/legal/cookies-policy/',
    },
}

# HTTP statuses that say the candidate link itself is bad
DEAD_LINK_STATUSES = (404, 410)


class Phase(Enum):
    """Discovery session state."""
    IDLE = "idle"
    DISPATCHING = "dispatching"
    COLLECTING = "collecting"
    VERIFYING = "verifying"
    DONE = "done"


@dataclass
class PhaseEvent:
    """Progress notification published to observers."""
    domain: str
    phase: Phase
    message: str
    elapsed_ms: int
    data: Dict = field(default_factory=dict)


@dataclass
class WorkerReport:
    """What one strategy worker produced (or why it produced nothing)."""
    strategy: str
    candidates: List[CandidateLink] = field(default_factory=list)
    error: Optional[str] = None
    timed_out: bool = False
    elapsed_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "candidates": len(self.candidates),
            "error": self.error,
            "timed_out": self.timed_out,
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass
class VerificationOutcome:
    """A labeled verification attempt, used as training feedback."""
    url: str
    features: List[float]
    label: int
    reason: Optional[str] = None
    document_type: Optional[str] = None


class SessionExhausted(Exception):
    """Discovery ended without a single verified document."""

    def __init__(self, domain: str, worker_errors: Dict[str, str], rejections: Dict[str, str]):
        self.domain = domain
        self.worker_errors = worker_errors
        self.rejections = rejections
        super().__init__(
            f"No policy documents found for {domain} "
            f"({len(worker_errors)} worker errors, {len(rejections)} rejected candidates)"
        )


@dataclass
class DiscoverySession:
    """Full record of one discovery run."""
    domain: str
    phase: Phase = Phase.IDLE
    success: bool = False
    documents: List[PolicyDocument] = field(default_factory=list)
    events: List[PhaseEvent] = field(default_factory=list)
    worker_reports: List[WorkerReport] = field(default_factory=list)
    verification_attempts: int = 0
    outcomes: List[VerificationOutcome] = field(default_factory=list)
    candidates: List[CandidateLink] = field(default_factory=list)
    rejections: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: int = 0
    source: str = "discovery"
    failure: Optional[SessionExhausted] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        """JSON-compatible summary (document text omitted)."""
        return {
            "domain": self.domain,
            "phase": self.phase.value,
            "success": self.success,
            "source": self.source,
            "documents": [doc.to_dict() for doc in self.documents],
            "workers": [report.to_dict() for report in self.worker_reports],
            "top_candidates": [
                {
                    "url": c.url,
                    "strategy": c.strategy,
                    "context": c.context,
                    "heuristic_score": c.heuristic_score,
                    "neural_score": round(c.neural_score, 4),
                    "neural_confidence": confidence_label(c.neural_score),
                    "combined_score": round(c.combined_score, 2),
                }
                for c in self.candidates[:10]
            ],
            "verification_attempts": self.verification_attempts,
            "rejections": dict(self.rejections),
            "elapsed_ms": self.elapsed_ms,
            "error": self.error,
        }


ProgressCallback = Callable[[PhaseEvent], None]


class DiscoveryOrchestrator:
    """Coordinates strategy workers, candidate merging and verification."""

    def __init__(
        self,
        fetcher: Optional[Fetcher] = None,
        scorer: Optional[NeuralScorer] = None,
        classifier: Optional[ContentClassifier] = None,
        extractor: Optional[LinkExtractor] = None,
        strategies: Optional[List[DiscoveryStrategy]] = None,
        cache: Optional[PolicyCacheStore] = None,
        budget_ms: Optional[int] = None,
        worker_timeout_ms: Optional[int] = None,
        max_workers: Optional[int] = None,
        max_results: Optional[int] = None,
        max_verifications: Optional[int] = None,
        special_domains: Optional[Dict[str, Dict[str, str]]] = None,
        progress_channel: Optional[queue.Queue] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            fetcher: Page fetcher shared by workers and verification
            scorer: Neural scorer used for ranking (None ranks on heuristics only)
            classifier: Content classifier used for verification
            extractor: Link extractor
            strategies: Strategy instances, defaults to DISCOVERY_STRATEGIES
            cache: Optional cache of verified documents
            budget_ms: Global wall-clock budget per session
            worker_timeout_ms: Per-worker timeout
            max_workers: Thread pool size
            max_results: Documents to verify before stopping
            max_verifications: Verification attempts before stopping
            special_domains: Pre-configured policy URLs per domain
            progress_channel: Queue receiving every PhaseEvent
        """
        self.fetcher = fetcher or Fetcher()
        self.scorer = scorer
        self.classifier = classifier or ContentClassifier()
        self.extractor = extractor or LinkExtractor()
        self.strategies = strategies if strategies is not None else build_strategies()
        self.cache = cache
        self.budget_ms = budget_ms if budget_ms is not None else settings.discovery_budget_ms
        self.worker_timeout_ms = (
            worker_timeout_ms if worker_timeout_ms is not None else settings.worker_timeout_ms
        )
        self.max_workers = max_workers or settings.max_workers
        self.max_results = max_results or settings.max_results
        self.max_verifications = max_verifications or settings.max_verifications
        self.special_domains = special_domains if special_domains is not None else SPECIAL_DOMAINS
        self.progress_channel = progress_channel
        self._observers: List[ProgressCallback] = []
        self._candidate_scorer = CandidateScorer(scorer)

    def on_progress(self, callback: ProgressCallback):
        """Register a progress observer."""
        self._observers.append(callback)
        return callback

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _emit(self, session: DiscoverySession, start: float, phase: Phase, message: str, **data):
        event = PhaseEvent(session.domain, phase, message, elapsed_ms(start), data)
        session.phase = phase
        session.events.append(event)
        logger.debug(f"[{session.domain}] {phase.value}: {message}")

        for callback in list(self._observers):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Progress observer failed: {e}", exc_info=True)

        if self.progress_channel is not None:
            try:
                self.progress_channel.put_nowait(event)
            except queue.Full:
                logger.warning(f"Progress channel full, dropping {phase.value} event")

    def _finish(self, session: DiscoverySession, start: float, message: str) -> DiscoverySession:
        session.success = bool(session.documents)
        session.elapsed_ms = elapsed_ms(start)
        if not session.success and session.failure is None:
            session.failure = SessionExhausted(
                session.domain,
                {r.strategy: r.error for r in session.worker_reports if r.error},
                dict(session.rejections),
            )
        if session.failure is not None and session.error is None:
            session.error = str(session.failure)
        self._emit(session, start, Phase.DONE, message, success=session.success,
                   documents=len(session.documents))
        return session

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def discover(self, domain: str, budget_ms: Optional[int] = None) -> DiscoverySession:
        """
        Discover and verify policy documents for a domain.

        Args:
            domain: Domain or URL
            budget_ms: Budget override for this session

        Returns:
            DiscoverySession; success is False only when nothing verified
        """
        start = time.monotonic()
        clean = normalize_domain(domain or "")
        session = DiscoverySession(domain=clean or (domain or ""))
        budget_ms = self.budget_ms if budget_ms is None else budget_ms

        if not clean:
            session.error = f"Invalid domain: {domain!r}"
            return self._finish(session, start, "Invalid domain")

        if budget_ms <= 0:
            session.error = "Discovery budget exhausted before dispatch"
            return self._finish(session, start, "No budget")

        special = self._special_documents(clean)
        if special:
            session.documents = special
            session.source = "special_domain"
            return self._finish(session, start, f"Found {len(special)} pre-configured policies")

        cached = self._cached_documents(clean)
        if cached:
            session.documents = cached
            session.source = "cache"
            return self._finish(session, start, f"Found {len(cached)} cached policies")

        deadline = start + budget_ms / 1000.0
        base_url = f"https://{clean}"

        reports = self._run_workers(session, start, clean, base_url, deadline)
        session.worker_reports = reports

        candidates = self.merge_candidates(reports)
        session.candidates = candidates
        self._verify(session, start, candidates, deadline)

        message = (
            f"Found {len(session.documents)} policies"
            if session.documents else "No policy documents verified"
        )
        return self._finish(session, start, message)

    # ------------------------------------------------------------------
    # Dispatching / collecting
    # ------------------------------------------------------------------

    def _run_worker(self, strategy: DiscoveryStrategy, context: DiscoveryContext) -> WorkerReport:
        started = time.monotonic()
        try:
            candidates = strategy.run(context)
            return WorkerReport(strategy.name, candidates=list(candidates), elapsed_ms=elapsed_ms(started))
        except Exception as e:
            logger.info(f"Strategy {strategy.name} failed for {context.domain}: {e}")
            return WorkerReport(strategy.name, error=str(e) or e.__class__.__name__,
                                elapsed_ms=elapsed_ms(started))

    def _run_workers(self, session: DiscoverySession, start: float, domain: str,
                     base_url: str, deadline: float) -> List[WorkerReport]:
        if not self.strategies:
            return []

        cancel_event = threading.Event()
        worker_deadline = min(time.monotonic() + self.worker_timeout_ms / 1000.0, deadline)

        self._emit(session, start, Phase.DISPATCHING,
                   f"Deploying {len(self.strategies)} workers", workers=len(self.strategies))

        executor = ThreadPoolExecutor(
            max_workers=max(1, min(self.max_workers, len(self.strategies))),
            thread_name_prefix="discovery",
        )
        futures = []
        try:
            for strategy in self.strategies:
                context = DiscoveryContext(
                    domain=domain,
                    base_url=base_url,
                    fetcher=self.fetcher,
                    extractor=self.extractor,
                    scorer=self._candidate_scorer,
                    deadline=worker_deadline,
                    cancel_event=cancel_event,
                )
                futures.append((strategy, executor.submit(self._run_worker, strategy, context)))

            self._emit(session, start, Phase.COLLECTING, f"Waiting for {len(futures)} workers")

            reports = []
            for strategy, future in futures:
                wait_s = max(0.0, worker_deadline - time.monotonic())
                try:
                    report = future.result(timeout=wait_s)
                except FutureTimeout:
                    report = WorkerReport(strategy.name, error="Worker timed out", timed_out=True,
                                          elapsed_ms=elapsed_ms(start))
                except Exception as e:
                    report = WorkerReport(strategy.name, error=str(e) or e.__class__.__name__)
                reports.append(report)

            found = sum(len(r.candidates) for r in reports)
            self._emit(session, start, Phase.COLLECTING, f"Collected {found} candidates",
                       candidates=found, failed_workers=sum(1 for r in reports if r.error))
            return reports
        finally:
            cancel_event.set()
            executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def merge_candidates(reports: List[WorkerReport]) -> List[CandidateLink]:
        """
        Deduplicate candidates across workers by normalized URL.

        The highest combined score wins per URL; the result is sorted best first.
        """
        best: Dict[str, CandidateLink] = {}
        for report in reports:
            for candidate in report.candidates:
                key = dedupe_key(candidate.url)
                current = best.get(key)
                if current is None or candidate.combined_score > current.combined_score:
                    best[key] = candidate
        return sorted(best.values(), key=lambda c: (c.combined_score, c.neural_score), reverse=True)

    # ------------------------------------------------------------------
    # Verifying
    # ------------------------------------------------------------------

    def _verify(self, session: DiscoverySession, start: float,
                candidates: List[CandidateLink], deadline: float):
        if not candidates:
            return

        self._emit(session, start, Phase.VERIFYING, f"Verifying up to {len(candidates)} candidates",
                   candidates=len(candidates))

        verified_keys = set()
        found_types = set()

        for candidate in candidates:
            remaining_ms = int((deadline - time.monotonic()) * 1000)
            if remaining_ms <= 0:
                logger.info(f"Budget expired for {session.domain} during verification")
                break
            if len(session.documents) >= self.max_results:
                break
            if session.verification_attempts >= self.max_verifications:
                break

            key = dedupe_key(candidate.url)
            if key in verified_keys:
                continue
            if candidate.doc_type_hint and candidate.doc_type_hint in found_types:
                continue
            verified_keys.add(key)
            session.verification_attempts += 1

            document = self._verify_candidate(session, candidate, remaining_ms, verified_keys)
            if document is None:
                continue
            if document.document_type in found_types:
                logger.debug(f"Already have a {document.document_type} document, skipping {document.url}")
                continue

            found_types.add(document.document_type)
            session.documents.append(document)
            self._emit(session, start, Phase.VERIFYING,
                       f"Verified {document.document_type} at {document.url}",
                       url=document.url, document_type=document.document_type)
            self._cache_document(session.domain, document)

    def _verify_candidate(self, session: DiscoverySession, candidate: CandidateLink,
                          remaining_ms: int, verified_keys: set) -> Optional[PolicyDocument]:
        try:
            page = self.fetcher.fetch_page(
                candidate.url,
                timeout_ms=min(self.fetcher.timeout_ms, remaining_ms),
                retry_budget_ms=remaining_ms,
            )
        except HttpStatusError as e:
            session.rejections[candidate.url] = f"http_{e.code}"
            if e.code in DEAD_LINK_STATUSES:
                self._record(session, candidate, 0, f"http_{e.code}")
            return None
        except FetchError as e:
            session.rejections[candidate.url] = e.__class__.__name__
            logger.debug(f"Could not fetch {candidate.url}: {e}")
            return None

        verified_keys.add(dedupe_key(page.final_url))

        try:
            document = self.classifier.verify(page.final_url, page.text, page.title, candidate.strategy)
        except ValidationRejected as e:
            session.rejections[candidate.url] = e.reason
            self._record(session, candidate, 0, e.reason)
            return None

        self._record(session, candidate, 1, None, document.document_type)
        return document

    @staticmethod
    def _record(session: DiscoverySession, candidate: CandidateLink, label: int,
                reason: Optional[str], document_type: Optional[str] = None):
        if not candidate.features:
            return
        session.outcomes.append(VerificationOutcome(
            url=candidate.url,
            features=list(candidate.features),
            label=label,
            reason=reason,
            document_type=document_type,
        ))

    # ------------------------------------------------------------------
    # Shortcuts
    # ------------------------------------------------------------------

    def _special_documents(self, domain: str) -> List[PolicyDocument]:
        config = self.special_domains.get(domain)
        if not config:
            return []
        return [
            PolicyDocument(url=url, title=None, text="", document_type=doc_type,
                           confidence=1.0, source="special_domain")
            for doc_type, url in config.items()
        ]

    def _cached_documents(self, domain: str) -> List[PolicyDocument]:
        if self.cache is None:
            return []
        try:
            entries = self.cache.get(domain)
        except PersistenceError as e:
            logger.warning(f"Policy cache unavailable for {domain}: {e}")
            return []
        return [
            PolicyDocument(url=entry.url, title=entry.title, text=entry.text or "",
                           document_type=entry.doc_type, confidence=entry.confidence,
                           source=entry.source or "cache")
            for entry in entries[:self.max_results]
        ]

    def _cache_document(self, domain: str, document: PolicyDocument):
        if self.cache is None:
            return
        try:
            self.cache.put(domain, document.document_type, document.url, document.title,
                           document.text, document.confidence, document.source)
        except PersistenceError as e:
            logger.warning(f"Could not cache {document.url}: {e}")
