"""
Tests for exponential backoff and the agent error taxonomy.
"""

from unittest.mock import Mock

import pytest

from trustpipe.agents.errors import (
    AgentAuthenticationError,
    AgentProcessingError,
    AgentTransientError,
    is_authentication_error,
    is_transient_error,
)
from trustpipe.utils.retry import backoff_delays, with_retry


class TestBackoffDelays:
    """Test the delay schedule."""

    def test_delays_double_from_base(self) -> None:
        assert backoff_delays(4, 0.5) == [0.5, 1.0, 2.0]

    def test_single_attempt_has_no_delay(self) -> None:
        assert backoff_delays(1, 1.0) == []


class TestWithRetry:
    """Test with_retry."""

    def test_returns_first_success_without_sleeping(self) -> None:
        sleep = Mock()
        fn = Mock(return_value="ok")

        assert with_retry(fn, "op", max_attempts=3, base_delay=1.0, sleep=sleep) == "ok"
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_authentication_error_is_attempted_once(self) -> None:
        """Credential failures are never retried."""
        sleep = Mock()
        fn = Mock(side_effect=AgentAuthenticationError("invalid x-api-key"))

        with pytest.raises(AgentAuthenticationError):
            with_retry(fn, "op", max_attempts=5, base_delay=1.0, sleep=sleep)

        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_timeout_retries_up_to_max_attempts_with_increasing_delays(self) -> None:
        sleep = Mock()
        fn = Mock(side_effect=AgentTransientError("request timed out"))

        with pytest.raises(AgentTransientError):
            with_retry(fn, "op", max_attempts=3, base_delay=1.0, sleep=sleep)

        assert fn.call_count == 3
        delays = [call.args[0] for call in sleep.call_args_list]
        assert delays == [1.0, 2.0]
        assert all(later > earlier for earlier, later in zip(delays, delays[1:]))

    def test_transient_error_then_success(self) -> None:
        sleep = Mock()
        fn = Mock(side_effect=[TimeoutError("slow"), ConnectionError("reset"), "done"])

        assert with_retry(fn, "op", max_attempts=3, base_delay=0.25, sleep=sleep) == "done"
        assert fn.call_count == 3
        assert [call.args[0] for call in sleep.call_args_list] == [0.25, 0.5]

    def test_other_errors_are_raised_immediately(self) -> None:
        sleep = Mock()
        fn = Mock(side_effect=AgentProcessingError("bad json"))

        with pytest.raises(AgentProcessingError):
            with_retry(fn, "op", max_attempts=3, base_delay=1.0, sleep=sleep)

        assert fn.call_count == 1
        sleep.assert_not_called()


class TestErrorClassification:
    """Test error predicates."""

    def test_authentication_error_is_not_transient(self) -> None:
        error = AgentAuthenticationError("nope")
        assert is_authentication_error(error)
        assert not is_transient_error(error)

    @pytest.mark.parametrize("error", [AgentTransientError("429"), TimeoutError(), ConnectionError()])
    def test_transient_errors(self, error: Exception) -> None:
        assert is_transient_error(error)
        assert not is_authentication_error(error)

    def test_plain_processing_error_is_neither(self) -> None:
        error = AgentProcessingError("parse failure")
        assert not is_transient_error(error)
        assert not is_authentication_error(error)
