"""Failure-handling policies."""

from .retry_handler import MAX_RETRY_DELAY_MS, RetryHandler, retry_delay

__all__ = ["MAX_RETRY_DELAY_MS", "RetryHandler", "retry_delay"]
