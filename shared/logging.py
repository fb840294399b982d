"""
Logger factory and utility functions.

Provides:
- get_logger(): Get a configured logger instance
- should_sample(): Determine if an event should be logged based on sampling rate
- hash_ip(): Hash IP addresses for privacy
- log_with_context(): Bind context to a logger
"""

from __future__ import annotations

import random
from typing import Optional

import structlog
from structlog.stdlib import BoundLogger

from shared.logging_config import SAMPLING_RATES, hash_ip as _hash_ip, setup_logging


def get_logger(name: str) -> BoundLogger:
    """
    Get a configured logger instance.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("evaluation_persisted", destination_url="https://a.example")
    """
    return structlog.get_logger(name)


def should_sample(event_type: str) -> bool:
    """
    Determine if an event should be logged based on sampling rate.

    Event types without a configured rate are always logged.

    Example:
        >>> if should_sample("url_redirect"):
        ...     log.info("url_redirect", short_code="abc123")
    """
    sample_rate = SAMPLING_RATES.get(event_type, 1.0)

    if sample_rate >= 1.0:
        return True
    if sample_rate <= 0.0:
        return False
    return random.random() < sample_rate


def hash_ip(ip_address: Optional[str]) -> Optional[str]:
    """Hash an IP address in production; pass None through."""
    if ip_address is None:
        return None
    return _hash_ip(ip_address)


def log_with_context(logger: BoundLogger, **context) -> BoundLogger:
    """Bind context to a logger for all subsequent log calls."""
    return logger.bind(**context)


__all__ = [
    "get_logger",
    "hash_ip",
    "log_with_context",
    "should_sample",
    "SAMPLING_RATES",
    "setup_logging",
]
