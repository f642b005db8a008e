"""
Database Module

SQLAlchemy ORM models and stores for durable state:
- Scoring model weights (one row per logical model id)
- Recorded training examples
- The discovery queue
- A time-bounded cache of verified policy documents
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sqlalchemy import (
    JSON, Column, DateTime, Float, Integer, String, Text, UniqueConstraint, Index,
    create_engine, func, update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from policy_engine.config import settings
from policy_engine.utils import retry

logger = logging.getLogger(__name__)

Base = declarative_base()

QUEUE_STATUSES = ("pending", "processing", "completed", "failed")


class PersistenceError(Exception):
    """A store operation failed after its retries."""


# ============================================================================
# Models
# ============================================================================

class ModelWeights(Base):
    """Persisted weights of a scoring model."""
    __tablename__ = 'model_weights'

    model_id = Column(String(100), primary_key=True)
    weights = Column(JSON, nullable=False)
    generation = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TrainingExample(Base):
    """A labeled feature vector kept for replay."""
    __tablename__ = 'training_examples'

    id = Column(Integer, primary_key=True)
    features = Column(JSON, nullable=False)
    target = Column(Integer, nullable=False)
    domain = Column(String(255))
    url = Column(String(2048))
    created_at = Column(DateTime, default=datetime.utcnow)


class DiscoveryQueueItem(Base):
    """A domain waiting for (or done with) discovery."""
    __tablename__ = 'discovery_queue'

    id = Column(Integer, primary_key=True)
    domain = Column(String(255), unique=True, nullable=False)
    status = Column(String(20), default='pending', nullable=False)
    result = Column(JSON)
    error_message = Column(Text)
    attempt_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index('idx_discovery_queue_status', 'status'),
    )


class PolicyCacheEntry(Base):
    """A verified document remembered for a domain."""
    __tablename__ = 'policy_cache'

    id = Column(Integer, primary_key=True)
    domain = Column(String(255), nullable=False)
    doc_type = Column(String(50), nullable=False)
    url = Column(String(2048), nullable=False)
    title = Column(String(1024))
    text = Column(Text)
    confidence = Column(Float, default=0.0, nullable=False)
    source = Column(String(50))
    cached_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('domain', 'doc_type', name='uq_policy_cache_domain_doctype'),
        Index('idx_policy_cache_domain', 'domain'),
    )


# ============================================================================
# Connection Management
# ============================================================================

class DatabaseManager:
    """Manages database connections and sessions."""

    def __init__(self, url: Optional[str] = None):
        """
        Initialize database manager.

        Args:
            url: SQLAlchemy URL, defaults to settings.database_url
        """
        self.url = url or settings.database_url
        echo = settings.environment == 'development' and settings.log_level == 'DEBUG'

        if self.url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in self.url or self.url in ("sqlite://", "sqlite:///"):
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(self.url, echo=echo, **kwargs)
        else:
            self.engine = create_engine(
                self.url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_recycle=settings.db_pool_recycle,
                echo=echo,
            )
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def init_db(self):
        """Create the schema (and the SQLite data directory)."""
        try:
            if self.url.startswith("sqlite:///") and ":memory:" not in self.url:
                Path(self.url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
            Base.metadata.create_all(self.engine)
            logger.info("Database schema initialized")
        except Exception as e:
            logger.error(f"Error initializing database: {e}")
            raise

    def get_session(self):
        """Get database session."""
        return self.SessionLocal()

    def close(self):
        """Close database connections."""
        self.engine.dispose()


# ============================================================================
# Stores
# ============================================================================

class ModelStore:
    """Weights and training examples of scoring models."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def load_model(self, model_id: str) -> Optional[dict]:
        session = self.db.get_session()
        try:
            row = session.get(ModelWeights, model_id)
            return dict(row.weights) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load model {model_id}: {e}") from e
        finally:
            session.close()

    def save_model(self, model_id: str, payload: dict, generation: int) -> None:
        """Upsert the full weight set and generation in one transaction."""
        session = self.db.get_session()
        try:
            row = session.get(ModelWeights, model_id)
            if row is None:
                row = ModelWeights(model_id=model_id)
                session.add(row)
            row.weights = payload
            row.generation = generation
            row.updated_at = datetime.utcnow()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Could not save model {model_id}: {e}") from e
        finally:
            session.close()

    def add_training_example(self, features: List[float], target: int,
                             domain: Optional[str] = None, url: Optional[str] = None) -> None:
        session = self.db.get_session()
        try:
            session.add(TrainingExample(features=list(features), target=target, domain=domain, url=url))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Could not record training example: {e}") from e
        finally:
            session.close()

    def get_training_examples(self, limit: int = 10000) -> List[dict]:
        """Most recent examples first."""
        session = self.db.get_session()
        try:
            rows = (
                session.query(TrainingExample)
                .order_by(TrainingExample.created_at.desc(), TrainingExample.id.desc())
                .limit(limit)
                .all()
            )
            return [
                {"features": row.features, "target": row.target, "domain": row.domain, "url": row.url}
                for row in rows
            ]
        finally:
            session.close()


class QueueStore:
    """Durable discovery queue with atomic claims."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def add_if_absent(self, domains: Iterable[str]) -> int:
        """
        Insert domains as pending, skipping ones already queued in any status.

        Returns:
            Number of rows inserted
        """
        domains = list(dict.fromkeys(domains))
        if not domains:
            return 0

        session = self.db.get_session()
        try:
            existing = self._queued_domains(session, domains)
            added = 0
            for domain in domains:
                if domain in existing:
                    continue
                session.add(DiscoveryQueueItem(domain=domain, status='pending'))
                try:
                    session.commit()
                    added += 1
                except IntegrityError:
                    # Queued by a concurrent caller since the lookup
                    session.rollback()
                    logger.debug(f"{domain} already queued, skipping")
            return added
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Could not enqueue domains: {e}") from e
        finally:
            session.close()

    def _queued_domains(self, session, domains: List[str]) -> set:
        return {
            row.domain
            for row in session.query(DiscoveryQueueItem.domain)
            .filter(DiscoveryQueueItem.domain.in_(domains))
            .all()
        }

    def claim_next(self, max_attempts: int = 5) -> Optional[DiscoveryQueueItem]:
        """
        Atomically move the oldest pending item to processing.

        The status flip is a compare-and-swap UPDATE guarded by
        status='pending'; losing the race to another worker retries with the
        next candidate.

        Returns:
            The claimed item, or None when nothing is pending
        """
        for _ in range(max_attempts):
            session = self.db.get_session()
            try:
                candidate = (
                    session.query(DiscoveryQueueItem.id)
                    .filter(DiscoveryQueueItem.status == 'pending')
                    .order_by(DiscoveryQueueItem.created_at, DiscoveryQueueItem.id)
                    .first()
                )
                if candidate is None:
                    return None

                now = datetime.utcnow()
                result = session.execute(
                    update(DiscoveryQueueItem)
                    .where(DiscoveryQueueItem.id == candidate.id)
                    .where(DiscoveryQueueItem.status == 'pending')
                    .values(
                        status='processing',
                        attempt_count=DiscoveryQueueItem.attempt_count + 1,
                        started_at=now,
                        updated_at=now,
                    )
                )
                session.commit()
                if result.rowcount == 1:
                    return session.get(DiscoveryQueueItem, candidate.id, populate_existing=True)
                logger.debug(f"Lost claim race for queue item {candidate.id}, retrying")
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Could not claim queue item: {e}") from e
            finally:
                session.close()
        return None

    @retry(max_attempts=3, delay=0.2, backoff=2.0, exceptions=(PersistenceError,))
    def transition(self, item_id: int, status: str, result: Optional[dict] = None,
                   error: Optional[str] = None) -> None:
        """Move an item to completed or failed (retried on failure)."""
        if status not in QUEUE_STATUSES:
            raise ValueError(f"Unknown queue status {status!r}")

        session = self.db.get_session()
        try:
            now = datetime.utcnow()
            values = {"status": status, "updated_at": now, "error_message": error}
            if status in ("completed", "failed"):
                values["completed_at"] = now
            if result is not None:
                values["result"] = result
            session.execute(
                update(DiscoveryQueueItem).where(DiscoveryQueueItem.id == item_id).values(**values)
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Could not move queue item {item_id} to {status}: {e}") from e
        finally:
            session.close()

    def get(self, domain: str) -> Optional[DiscoveryQueueItem]:
        session = self.db.get_session()
        try:
            return session.query(DiscoveryQueueItem).filter_by(domain=domain).first()
        finally:
            session.close()

    def counts(self) -> Dict[str, int]:
        """Item count per status from a single grouped query."""
        session = self.db.get_session()
        try:
            rows = (
                session.query(DiscoveryQueueItem.status, func.count(DiscoveryQueueItem.id))
                .group_by(DiscoveryQueueItem.status)
                .all()
            )
            counts = {status: 0 for status in QUEUE_STATUSES}
            counts.update({status: count for status, count in rows})
            return counts
        finally:
            session.close()

    def requeue_failed(self, max_attempts: int) -> int:
        """Failed items with attempts left go back to pending."""
        session = self.db.get_session()
        try:
            result = session.execute(
                update(DiscoveryQueueItem)
                .where(DiscoveryQueueItem.status == 'failed')
                .where(DiscoveryQueueItem.attempt_count < max_attempts)
                .values(status='pending', updated_at=datetime.utcnow())
            )
            session.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Could not requeue failed items: {e}") from e
        finally:
            session.close()

    def recover_stale(self, older_than: timedelta) -> int:
        """Processing items started before the cutoff go back to pending."""
        cutoff = datetime.utcnow() - older_than
        session = self.db.get_session()
        try:
            result = session.execute(
                update(DiscoveryQueueItem)
                .where(DiscoveryQueueItem.status == 'processing')
                .where(DiscoveryQueueItem.started_at < cutoff)
                .values(status='pending', updated_at=datetime.utcnow())
            )
            session.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Could not recover stale items: {e}") from e
        finally:
            session.close()

    def clear(self, statuses: Optional[Iterable[str]] = None) -> int:
        """Delete items, optionally only those in the given statuses."""
        session = self.db.get_session()
        try:
            query = session.query(DiscoveryQueueItem)
            if statuses:
                query = query.filter(DiscoveryQueueItem.status.in_(list(statuses)))
            deleted = query.delete(synchronize_session=False)
            session.commit()
            return deleted
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Could not clear queue: {e}") from e
        finally:
            session.close()


class PolicyCacheStore:
    """Verified documents per domain, kept for a limited time."""

    def __init__(self, db: DatabaseManager, ttl_hours: Optional[int] = None):
        self.db = db
        self.ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.policy_cache_ttl_hours)

    def get(self, domain: str) -> List[PolicyCacheEntry]:
        """Fresh entries for a domain, best confidence first."""
        cutoff = datetime.utcnow() - self.ttl
        session = self.db.get_session()
        try:
            return (
                session.query(PolicyCacheEntry)
                .filter(PolicyCacheEntry.domain == domain)
                .filter(PolicyCacheEntry.cached_at >= cutoff)
                .order_by(PolicyCacheEntry.confidence.desc())
                .all()
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not read policy cache for {domain}: {e}") from e
        finally:
            session.close()

    def put(self, domain: str, doc_type: str, url: str, title: Optional[str], text: str,
            confidence: float, source: str) -> None:
        """Insert or refresh the entry for (domain, doc_type)."""
        session = self.db.get_session()
        try:
            entry = session.query(PolicyCacheEntry).filter_by(domain=domain, doc_type=doc_type).first()
            if entry is None:
                entry = PolicyCacheEntry(domain=domain, doc_type=doc_type)
                session.add(entry)
            entry.url = url
            entry.title = title
            entry.text = text
            entry.confidence = confidence
            entry.source = source
            entry.cached_at = datetime.utcnow()
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Could not cache {doc_type} for {domain}: {e}") from e
        finally:
            session.close()

    def clear(self, domain: Optional[str] = None) -> int:
        session = self.db.get_session()
        try:
            query = session.query(PolicyCacheEntry)
            if domain:
                query = query.filter(PolicyCacheEntry.domain == domain)
            deleted = query.delete(synchronize_session=False)
            session.commit()
            return deleted
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Could not clear policy cache: {e}") from e
        finally:
            session.close()


# Global database manager instance
db_manager = DatabaseManager()


def get_session():
    """Get database session."""
    return db_manager.get_session()


def init_database():
    """Initialize database."""
    db_manager.init_db()
