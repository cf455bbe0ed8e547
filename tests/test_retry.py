"""
Tests for retry, timeout and deadline helpers.

Run with: pytest tests/test_retry.py -v
"""

import time
from unittest.mock import Mock

import pytest

from ragcore.deadline import Deadline
from ragcore.errors import ContentPolicyError, DeadlineExceeded, TerminalError, TransientError
from ragcore.retry import (
    call_with_timeout,
    is_transient_error,
    with_retry,
    with_retry_and_timeout,
)


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class TestIsTransientError:
    """Tests for error classification."""

    @pytest.mark.parametrize("error", [
        TimeoutError("slow"),
        ConnectionError("reset"),
        TransientError("flaky"),
        StatusError(503),
        StatusError(429),
        Exception("Rate limit reached"),
        Exception("ECONNRESET while reading"),
        Exception("Error code: 503 - upstream overloaded"),
        Exception("HTTP 502 from gateway"),
        Exception("request failed with status_code=500"),
    ])
    def test_transient(self, error):
        assert is_transient_error(error)

    @pytest.mark.parametrize("error", [
        TerminalError("bad request"),
        ContentPolicyError("blocked"),
        StatusError(400),
        StatusError(401),
        Exception("Request rejected by content_policy filter"),
        ValueError("malformed"),
        ValueError("max_tokens must be <= 500"),
        ValueError("timeout must be a positive number"),
        Exception("document 5029 not found"),
    ])
    def test_terminal(self, error):
        assert not is_transient_error(error)


class TestWithRetry:
    """Tests for exponential backoff."""

    def test_returns_first_success(self):
        """No retry when the call succeeds."""
        fn = Mock(return_value="ok")
        assert with_retry(fn, sleep=Mock()) == "ok"
        assert fn.call_count == 1

    def test_retries_transient_then_succeeds(self):
        """Transient errors are retried with growing delays."""
        fn = Mock(side_effect=[TimeoutError(), TimeoutError(), "ok"])
        sleep = Mock()

        assert with_retry(fn, max_retries=2, initial_delay=2, backoff_multiplier=2, sleep=sleep) == "ok"
        assert [c.args[0] for c in sleep.call_args_list] == [2, 4]

    def test_delay_is_capped(self):
        """Backoff never exceeds the max delay."""
        fn = Mock(side_effect=[TimeoutError()] * 3 + ["ok"])
        sleep = Mock()

        with_retry(fn, max_retries=3, initial_delay=4, backoff_multiplier=3, max_delay=10, sleep=sleep)

        assert [c.args[0] for c in sleep.call_args_list] == [4, 10, 10]

    def test_gives_up_after_max_retries(self):
        """The last error propagates once retries run out."""
        fn = Mock(side_effect=TimeoutError("still slow"))

        with pytest.raises(TimeoutError, match="still slow"):
            with_retry(fn, max_retries=2, sleep=Mock())
        assert fn.call_count == 3

    def test_terminal_errors_not_retried(self):
        """Content-policy errors surface immediately."""
        fn = Mock(side_effect=ContentPolicyError("blocked"))
        sleep = Mock()

        with pytest.raises(ContentPolicyError):
            with_retry(fn, max_retries=5, sleep=sleep)
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_backoff_past_deadline_raises(self):
        """No sleep starts when the delay would outlive the deadline."""
        fn = Mock(side_effect=[ConnectionError("reset"), "ok"])
        sleep = Mock()
        deadline = Deadline.after(0.5, clock=lambda: 0.0)

        with pytest.raises(DeadlineExceeded) as exc:
            with_retry(fn, max_retries=1, initial_delay=3.0, sleep=sleep, deadline=deadline)

        assert isinstance(exc.value.__cause__, ConnectionError)
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_backoff_within_deadline(self):
        """Retries proceed normally while the budget allows."""
        fn = Mock(side_effect=[TimeoutError(), "ok"])
        sleep = Mock()
        deadline = Deadline.after(30, clock=lambda: 0.0)

        assert with_retry(fn, max_retries=1, initial_delay=2, sleep=sleep, deadline=deadline) == "ok"
        sleep.assert_called_once_with(2)


class TestCallWithTimeout:
    """Tests for per-call timeouts."""

    def test_fast_call(self):
        assert call_with_timeout(lambda: 42, timeout=1) == 42

    def test_no_timeout(self):
        assert call_with_timeout(lambda: "x", timeout=None) == "x"

    def test_slow_call_times_out(self):
        """A call that outlives its timeout raises TimeoutError."""
        with pytest.raises(TimeoutError, match="slow-op"):
            call_with_timeout(lambda: time.sleep(1), timeout=0.05, label="slow-op")

    def test_errors_propagate(self):
        def boom():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            call_with_timeout(boom, timeout=1)

    def test_each_attempt_gets_its_own_timeout(self):
        """Timed-out attempts are retried as transient failures."""
        calls = []

        def sometimes_slow():
            calls.append(1)
            if len(calls) == 1:
                time.sleep(0.5)
            return "done"

        result = with_retry_and_timeout(
            sometimes_slow, timeout=0.05, max_retries=1, initial_delay=0, sleep=Mock()
        )

        assert result == "done"
        assert len(calls) == 2


class TestDeadline:
    """Tests for the end-to-end query budget."""

    def test_unbounded(self):
        deadline = Deadline.none()

        assert deadline.remaining() is None
        assert not deadline.expired
        assert deadline.clamp(45.0) == 45.0

    def test_expiry_and_check(self):
        """check raises once the clock passes the deadline."""
        now = [100.0]
        deadline = Deadline.after(10, clock=lambda: now[0])

        deadline.check("retrieval")
        now[0] = 111.0

        assert deadline.expired
        with pytest.raises(DeadlineExceeded, match="generation"):
            deadline.check("generation")

    def test_clamp(self):
        """Per-call timeouts shrink to the remaining budget."""
        now = [0.0]
        deadline = Deadline.after(20, clock=lambda: now[0])

        assert deadline.clamp(45.0) == 20.0
        assert deadline.clamp(5.0) == 5.0
        assert deadline.clamp(None) == 20.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
