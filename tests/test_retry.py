"""Unit tests for the retry policy."""

import pytest

from mediaqueue.retry import retry_delay_ms, retry_delay_seconds, should_retry


class TestBackoffTable:
    """Test the fixed delay schedule."""

    @pytest.mark.parametrize("attempt,expected", [(0, 2000), (1, 5000), (2, 10000), (3, 15000), (9, 15000)])
    def test_delay_per_attempt(self, attempt, expected):
        assert retry_delay_ms(attempt) == expected

    def test_seconds(self):
        assert retry_delay_seconds(0) == pytest.approx(2.0)

    def test_negative_attempt_uses_first_entry(self):
        assert retry_delay_ms(-1) == 2000


class TestShouldRetry:
    """Test the retry-or-fail decision."""

    def test_retries_until_budget_is_spent(self):
        decisions = [should_retry(attempt, 3) for attempt in range(5)]
        assert decisions == [True, True, True, False, False]

    def test_zero_retries_fails_immediately(self):
        assert not should_retry(0, 0)
