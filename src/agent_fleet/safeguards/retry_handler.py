"""Retry handler with exponential backoff."""

from ..core.task import AgentRun

MAX_RETRY_DELAY_MS = 300_000


def retry_delay(attempt: int, base_delay_ms: int) -> int:
    """
    Backoff before retry number ``attempt`` (zero-based), in milliseconds.

    Formula: base * 2^attempt, capped at five minutes.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    # Cap the exponent too so huge attempt numbers stay cheap
    if attempt >= 32:
        return MAX_RETRY_DELAY_MS
    return min(base_delay_ms * (2 ** attempt), MAX_RETRY_DELAY_MS)


class RetryHandler:
    """
    Decides whether a failed run gets another attempt and how long to wait.

    - A run may be retried while retry_count < max_retries
    - max_retries == 0 disables retries entirely
    - Explicitly cancelled runs are never retried
    """

    def __init__(self, base_delay_ms: int = 30_000, max_retries: int = 1):
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.base_delay_ms = base_delay_ms
        self.max_retries = max_retries

    def calculate_backoff(self, retry_count: int) -> float:
        """Seconds to wait before the retry that follows ``retry_count`` retries."""
        return retry_delay(retry_count, self.base_delay_ms) / 1000

    def should_retry(self, run: AgentRun, cancelled: bool = False) -> bool:
        """Check if a failed run should be re-admitted."""
        if cancelled:
            return False
        return run.retry_count < run.max_retries
