"""Retry policy for failed download attempts."""
from .constants import RETRY_DELAY_TABLE_MS


def retry_delay_ms(attempt: int) -> int:
    """Returns the backoff in milliseconds for a table index, capped at the last entry.

    The worker passes the 1-based number of the retry about to run, so the first
    retry waits the second table entry.
    """
    index = min(max(attempt, 0), len(RETRY_DELAY_TABLE_MS) - 1)
    return RETRY_DELAY_TABLE_MS[index]


def retry_delay_seconds(attempt: int) -> float:
    return retry_delay_ms(attempt) / 1000


def should_retry(attempt: int, max_retries: int) -> bool:
    """True if another attempt is allowed after `attempt` (0-based) failed."""
    return attempt < max_retries
