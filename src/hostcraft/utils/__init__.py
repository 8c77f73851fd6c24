"""Utility modules for logging, auditing and connection handling."""
from .connection import retry_policy, with_retry
from .logging_config import (
    setup_logging,
    timed,
    timed_section,
    perf_logger,
)

__all__ = [
    "retry_policy",
    "with_retry",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
]
