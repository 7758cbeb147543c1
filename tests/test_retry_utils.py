"""
Tests for error classification and backoff.
"""

import pytest

from arena.core.retry_utils import ErrorType, calculate_backoff_delay, classify_error


class TestClassifyError:

    @pytest.mark.parametrize(
        "error",
        [
            TimeoutError("request timed out"),
            ConnectionError("connection reset by peer"),
            Exception("429 Too Many Requests"),
            Exception("503 Service Unavailable"),
        ],
    )
    def test_transient(self, error):
        assert classify_error(error) == ErrorType.TRANSIENT

    @pytest.mark.parametrize(
        "error",
        [
            Exception("401 Unauthorized"),
            Exception("Invalid API key provided"),
            Exception("model not found: gpt-9"),
            Exception("Provider not configured"),
        ],
    )
    def test_permanent(self, error):
        assert classify_error(error) == ErrorType.PERMANENT

    def test_permanent_wins_over_transient(self):
        # both "timeout" and "unauthorized" appear
        assert classify_error(Exception("unauthorized after timeout")) == ErrorType.PERMANENT

    def test_unknown(self):
        assert classify_error(ValueError("something odd")) == ErrorType.UNKNOWN

    def test_type_name_is_considered(self):
        class AuthenticationError(Exception):
            pass

        assert classify_error(AuthenticationError("nope")) == ErrorType.PERMANENT


class TestBackoff:

    def test_exponential(self):
        assert [calculate_backoff_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert calculate_backoff_delay(10, base_delay=1.0, max_delay=30.0) == 30.0

    def test_custom_base(self):
        assert calculate_backoff_delay(2, base_delay=0.5) == 2.0

    def test_jitter_within_bounds(self):
        for _ in range(20):
            delay = calculate_backoff_delay(3, jitter=True)
            assert 0 <= delay <= 8.0
