"""
Utility functions and helpers for the discovery engine.
"""

import logging
import logging.handlers
import time
from datetime import datetime
from functools import wraps
from typing import Optional
from urllib.parse import urlparse, urlunparse

from policy_engine.config import settings, LOGS_DIR


# ============================================================================
# Logging Setup
# ============================================================================

def setup_logging(name: str = "policy_engine", level: Optional[int] = None) -> logging.Logger:
    """
    Configure and return a logger instance.

    Args:
        name: Logger name (typically the package name)
        level: Optional level override, defaults to settings.log_level

    Returns:
        logging.Logger: Configured logger
    """
    level = level if level is not None else getattr(logging, settings.log_level)
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_format = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console_handler.setFormatter(console_format)

    # File handler
    LOGS_DIR.mkdir(exist_ok=True)
    log_file = LOGS_DIR / f"discovery_{datetime.now().strftime('%Y%m%d')}.log"
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
    )
    file_handler.setLevel(level)
    file_format = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler.setFormatter(file_format)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    return logger


logger = logging.getLogger(__name__)


# ============================================================================
# Decorators
# ============================================================================

def retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0, exceptions=(Exception,)):
    """
    Retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay in seconds
        backoff: Backoff multiplier
        exceptions: Exception types that trigger a retry
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            current_delay = delay

            while attempt < max_attempts:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    attempt += 1
                    if attempt >= max_attempts:
                        logger.error(f"Failed after {max_attempts} attempts: {str(e)}")
                        raise

                    logger.warning(
                        f"Attempt {attempt}/{max_attempts} failed for {func.__name__}, "
                        f"retrying in {current_delay}s: {str(e)}"
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff

        return wrapper
    return decorator


# ============================================================================
# URL Utilities
# ============================================================================

def normalize_domain(domain: str) -> str:
    """
    Reduce a domain or URL to a bare lowercase host ("www." stripped).

    Args:
        domain: Domain name or URL

    Returns:
        Bare host, or an empty string when nothing usable remains
    """
    domain = domain.strip().lower()
    if not domain:
        return ""
    try:
        parsed = urlparse(domain if "://" in domain else f"https://{domain}")
        host = (parsed.hostname or "").strip(".")
    except ValueError as e:
        logger.warning(f"Ignoring malformed domain {domain!r}: {str(e)}")
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host


def dedupe_key(url: str) -> str:
    """
    Key used to merge candidate URLs across workers.

    Case-insensitive and trailing-slash-insensitive; fragments are dropped.
    """
    parsed = urlparse(url.strip())
    path = parsed.path.rstrip("/")
    cleaned = urlunparse((parsed.scheme, parsed.netloc, path, parsed.params, parsed.query, ""))
    return cleaned.lower()


def elapsed_ms(start: float) -> int:
    """Milliseconds elapsed since a time.monotonic() reading."""
    return int((time.monotonic() - start) * 1000)


# ============================================================================
# Progress and Reporting
# ============================================================================

class ProgressTracker:
    """Track progress of batch operations."""

    def __init__(self, total: int, name: str = "Processing"):
        self.total = total
        self.name = name
        self.current = 0
        self.start_time = datetime.now()

    def update(self, increment: int = 1, message: str = ""):
        """Update progress."""
        self.current += increment
        elapsed = (datetime.now() - self.start_time).total_seconds()
        rate = self.current / elapsed if elapsed > 0 else 0
        remaining = (self.total - self.current) / rate if rate > 0 else 0

        percentage = (self.current / self.total) * 100 if self.total else 100.0
        suffix = f" - {message}" if message else ""
        logger.info(
            f"{self.name}: {self.current}/{self.total} ({percentage:.1f}%) - "
            f"Rate: {rate:.1f} items/s - ETA: {remaining:.0f}s{suffix}"
        )

    def finish(self):
        """Mark as finished."""
        elapsed = (datetime.now() - self.start_time).total_seconds()
        logger.info(f"{self.name} completed in {elapsed:.1f}s")
