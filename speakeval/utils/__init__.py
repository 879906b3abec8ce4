"""Utility modules for logging and retry helpers."""

from .logging import setup_logging
from .retry import backoff_with_jitter, call_with_retries

__all__ = ["setup_logging", "backoff_with_jitter", "call_with_retries"]
