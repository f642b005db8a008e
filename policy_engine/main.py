"""
Main Entry Point

Command-line interface for the discovery engine:
- discover: run one discovery session and print the result
- enqueue / process / status / clear: operate the durable queue
- replay: retrain the scoring model on stored examples
"""

import argparse
import csv
import json
import logging
import queue
import sys
from typing import List, Optional

from policy_engine.config import settings
from policy_engine.content_validator import ContentClassifier
from policy_engine.database import (
    DatabaseManager, ModelStore, PolicyCacheStore, QueueStore, db_manager,
)
from policy_engine.llm_tiebreaker import build_tiebreaker
from policy_engine.neural_scorer import NeuralScorer, train_on_outcomes
from policy_engine.orchestrator import DiscoveryOrchestrator
from policy_engine.queue_processor import QueueProcessor
from policy_engine.utils import setup_logging

logger = logging.getLogger(__name__)


class DiscoveryPipeline:
    """Wires stores, scorer, classifier, orchestrator and queue processor together."""

    def __init__(self, db: Optional[DatabaseManager] = None, use_cache: bool = True,
                 progress_channel: Optional[queue.Queue] = None):
        self.db = db or db_manager
        self.model_store = ModelStore(self.db)
        self.scorer = NeuralScorer(self.model_store)
        self.cache = PolicyCacheStore(self.db) if use_cache else None
        self.orchestrator = DiscoveryOrchestrator(
            scorer=self.scorer,
            classifier=ContentClassifier(build_tiebreaker()),
            cache=self.cache,
            progress_channel=progress_channel,
        )
        self.processor = QueueProcessor(QueueStore(self.db), self.orchestrator, self.scorer)

    def initialize(self):
        """Create the schema and load (or initialize) the scoring model."""
        logger.info("Initializing pipeline...")
        self.db.init_db()
        self.scorer.load()
        logger.info(f"Scoring model '{self.scorer.model_id}' at generation {self.scorer.generation}")

    def cleanup(self):
        self.db.close()
        logger.info("Pipeline cleanup complete")


def _load_domains_from_csv(csv_path: str) -> List[str]:
    """Read the domain column of a CSV file."""
    domains = []
    with open(csv_path, 'r', encoding='utf-8') as f:
        reader = csv.DictReader(f)
        for row in reader:
            domain = (row.get('domain') or '').strip()
            if domain:
                domains.append(domain)
    logger.info(f"Loaded {len(domains)} domains from {csv_path}")
    return domains


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def cmd_discover(pipeline: DiscoveryPipeline, args) -> int:
    def report(event):
        logger.info(f"[{event.phase.value}] {event.message} ({event.elapsed_ms} ms)")

    pipeline.orchestrator.on_progress(report)
    session = pipeline.orchestrator.discover(args.domain, budget_ms=args.budget_ms)

    if args.train and session.outcomes:
        trained = train_on_outcomes(pipeline.scorer, session.outcomes, domain=session.domain)
        logger.info(f"Trained on {trained} outcomes")

    result = session.to_dict()
    result["verification_outcomes"] = [
        {"url": o.url, "label": o.label, "reason": o.reason} for o in session.outcomes
    ]
    _print_json(result)
    return 0 if session.success else 1


def cmd_enqueue(pipeline: DiscoveryPipeline, args) -> int:
    domains = list(args.domains or [])
    if args.input:
        domains.extend(_load_domains_from_csv(args.input))
    added = pipeline.processor.add_domains(domains)
    _print_json({"added": added, "status": pipeline.processor.get_status()})
    return 0


def cmd_process(pipeline: DiscoveryPipeline, args) -> int:
    if args.recover_stale:
        pipeline.processor.recover_stale()
    if args.requeue_failed:
        pipeline.processor.requeue_failed()
    summary = pipeline.processor.process_all(limit=args.limit)
    _print_json({"processed": summary, "status": pipeline.processor.get_status()})
    return 0


def cmd_status(pipeline: DiscoveryPipeline, args) -> int:
    _print_json({
        "queue": pipeline.processor.get_status(),
        "model": {"id": pipeline.scorer.model_id, "generation": pipeline.scorer.generation},
    })
    return 0


def cmd_clear(pipeline: DiscoveryPipeline, args) -> int:
    cleared = pipeline.processor.clear(args.status)
    result = {"cleared": cleared}
    if args.cache and pipeline.cache is not None:
        result["cache_cleared"] = pipeline.cache.clear()
    _print_json(result)
    return 0


def cmd_replay(pipeline: DiscoveryPipeline, args) -> int:
    report = pipeline.scorer.replay(limit=args.limit, epochs=args.epochs)
    _print_json({
        "generation": report.generation,
        "examples_used": report.examples_used,
        "accuracy": round(report.accuracy, 4),
    })
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Policy Discovery Engine')
    parser.add_argument('--log-level', default=settings.log_level,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level')
    parser.add_argument('--database-url', help='SQLAlchemy database URL (overrides DATABASE_URL)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    discover = subparsers.add_parser('discover', help='Discover policies for one domain')
    discover.add_argument('domain', help='Domain or URL')
    discover.add_argument('--budget-ms', type=int, default=None, help='Discovery budget in milliseconds')
    discover.add_argument('--no-cache', action='store_true', help='Ignore and do not write the policy cache')
    discover.add_argument('--train', action='store_true', help='Train the scoring model on the outcomes')
    discover.set_defaults(func=cmd_discover)

    enqueue = subparsers.add_parser('enqueue', help='Add domains to the discovery queue')
    enqueue.add_argument('domains', nargs='*', help='Domains to queue')
    enqueue.add_argument('--input', help='CSV file with a domain column')
    enqueue.set_defaults(func=cmd_enqueue)

    process = subparsers.add_parser('process', help='Process pending queue items')
    process.add_argument('--limit', type=int, default=None, help='Maximum items to process')
    process.add_argument('--requeue-failed', action='store_true', help='Retry failed items with attempts left')
    process.add_argument('--recover-stale', action='store_true', help='Reset items stuck in processing')
    process.set_defaults(func=cmd_process)

    status = subparsers.add_parser('status', help='Show queue and model status')
    status.set_defaults(func=cmd_status)

    clear = subparsers.add_parser('clear', help='Delete queue items')
    clear.add_argument('--status', nargs='*', choices=['pending', 'processing', 'completed', 'failed'],
                       help='Only delete items in these statuses')
    clear.add_argument('--cache', action='store_true', help='Also clear the policy cache')
    clear.set_defaults(func=cmd_clear)

    replay = subparsers.add_parser('replay', help='Retrain the scoring model on stored examples')
    replay.add_argument('--limit', type=int, default=10000, help='Most recent examples to use')
    replay.add_argument('--epochs', type=int, default=5, help='Passes over the examples')
    replay.set_defaults(func=cmd_replay)

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    setup_logging(level=log_level)

    db = DatabaseManager(args.database_url) if args.database_url else None
    use_cache = not getattr(args, 'no_cache', False)
    pipeline = DiscoveryPipeline(db=db, use_cache=use_cache)
    exit_code = 0

    try:
        pipeline.initialize()
        exit_code = args.func(pipeline, args)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)

    except Exception as e:
        logger.critical(f"Command '{args.command}' failed: {e}", exc_info=True)
        sys.exit(1)

    finally:
        try:
            pipeline.cleanup()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}", exc_info=True)
            sys.exit(1)

    sys.exit(exit_code)


if __name__ == '__main__':
    main()
