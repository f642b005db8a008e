"""
Queue Processing Module

Batch operation over the durable discovery queue:
- Enqueue normalized, de-duplicated domains
- Claim, discover and complete/fail items one at a time
- Feed verification outcomes back into the neural scorer
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from policy_engine.config import settings
from policy_engine.database import DiscoveryQueueItem, QueueStore
from policy_engine.neural_scorer import NeuralScorer, train_on_outcomes
from policy_engine.orchestrator import DiscoveryOrchestrator, DiscoverySession
from policy_engine.utils import ProgressTracker, normalize_domain

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryJob:
    """Snapshot of a discovery_queue row."""
    id: int
    domain: str
    status: str
    result: Optional[dict] = None
    error: Optional[str] = None
    attempt_count: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: DiscoveryQueueItem) -> "DiscoveryJob":
        return cls(
            id=row.id,
            domain=row.domain,
            status=row.status,
            result=row.result,
            error=row.error_message,
            attempt_count=row.attempt_count,
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
        )


@dataclass
class ProcessOutcome:
    """Result of process_next: kind is empty, completed or failed."""
    kind: str
    job: Optional[DiscoveryJob] = None
    session: Optional[DiscoverySession] = None

    @property
    def is_empty(self) -> bool:
        return self.kind == "empty"


class QueueProcessor:
    """Drives the orchestrator over queued domains."""

    def __init__(
        self,
        store: QueueStore,
        orchestrator: DiscoveryOrchestrator,
        scorer: Optional[NeuralScorer] = None,
        learn: Optional[bool] = None,
    ):
        """
        Initialize processor.

        Args:
            store: Queue persistence
            orchestrator: Runs one discovery per claimed item
            scorer: Receives training feedback (defaults to the orchestrator's)
            learn: Whether to train on verification outcomes
        """
        self.store = store
        self.orchestrator = orchestrator
        self.scorer = scorer or orchestrator.scorer
        self.learn = (
            learn if learn is not None else settings.train_on_outcomes
        )

    def add_domains(self, domains: Iterable[str]) -> int:
        """
        Queue domains for discovery.

        Domains are normalized (trimmed, lowercased, scheme and "www." dropped);
        empties and duplicates, within the input or already queued in any
        status, are skipped.

        Returns:
            Number of domains inserted
        """
        cleaned: List[str] = []
        for domain in domains:
            normalized = normalize_domain(domain or "")
            if normalized and normalized not in cleaned:
                cleaned.append(normalized)

        added = self.store.add_if_absent(cleaned)
        logger.info(f"Queued {added} of {len(cleaned)} domains")
        return added

    def process_next(self) -> ProcessOutcome:
        """
        Claim and process the oldest pending domain.

        Returns:
            ProcessOutcome; kind is "empty" when nothing is pending

        Raises:
            PersistenceError: The final status could not be written
        """
        row = self.store.claim_next()
        if row is None:
            return ProcessOutcome("empty")

        job = DiscoveryJob.from_row(row)
        logger.info(f"Processing {job.domain} (attempt {job.attempt_count})")

        try:
            session = self.orchestrator.discover(job.domain)
        except Exception as e:
            logger.error(f"Discovery crashed for {job.domain}: {e}", exc_info=True)
            self.store.transition(job.id, "failed", error=str(e) or e.__class__.__name__)
            job.status, job.error = "failed", str(e)
            return ProcessOutcome("failed", job)

        self._train(session)

        result = session.to_dict()
        if session.success:
            self.store.transition(job.id, "completed", result=result)
            job.status, job.result = "completed", result
            logger.info(f"Completed {job.domain}: {len(session.documents)} documents")
            return ProcessOutcome("completed", job, session)

        self.store.transition(job.id, "failed", result=result, error=session.error)
        job.status, job.result, job.error = "failed", result, session.error
        logger.info(f"Failed {job.domain}: {session.error}")
        return ProcessOutcome("failed", job, session)

    def _train(self, session: DiscoverySession):
        if not self.learn or self.scorer is None or not session.outcomes:
            return
        try:
            trained = train_on_outcomes(self.scorer, session.outcomes, domain=session.domain)
            logger.debug(f"Trained on {trained} outcomes from {session.domain}")
        except Exception as e:
            logger.warning(f"Training feedback failed for {session.domain}: {e}", exc_info=True)

    def get_status(self) -> Dict[str, int]:
        """Counts for pending, processing, completed and failed, plus total."""
        counts = self.store.counts()
        counts["total"] = sum(counts.values())
        return counts

    def process_all(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Process pending domains until the queue is empty or limit is reached.

        Returns:
            Counts of completed and failed items
        """
        pending = self.store.counts().get("pending", 0)
        total = min(pending, limit) if limit is not None else pending
        tracker = ProgressTracker(total, name="Discovery")
        summary = {"completed": 0, "failed": 0}

        while limit is None or summary["completed"] + summary["failed"] < limit:
            outcome = self.process_next()
            if outcome.is_empty:
                break
            summary[outcome.kind] += 1
            tracker.update(1, f"{outcome.job.domain}: {outcome.kind}")

        tracker.finish()
        return summary

    def requeue_failed(self, max_attempts: Optional[int] = None) -> int:
        """Move failed items with attempts left back to pending."""
        max_attempts = max_attempts or settings.queue_max_attempts
        count = self.store.requeue_failed(max_attempts)
        logger.info(f"Requeued {count} failed domains")
        return count

    def recover_stale(self, older_than: timedelta = timedelta(minutes=30)) -> int:
        """Return items stuck in processing (crashed workers) to pending."""
        count = self.store.recover_stale(older_than)
        if count:
            logger.warning(f"Recovered {count} stale processing items")
        return count

    def clear(self, statuses: Optional[Iterable[str]] = None) -> int:
        """Delete queue items, optionally filtered by status."""
        count = self.store.clear(statuses)
        logger.info(f"Cleared {count} queue items")
        return count
