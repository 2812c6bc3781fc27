import pytest

from obtrader.errors import ExchangeError, TransientError
from obtrader.execution.retry import exponential_backoff, retry_with_backoff


def test_backoff_doubles_and_caps():
    assert [exponential_backoff(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]
    assert exponential_backoff(10, max_delay=30.0) == 30.0


def test_transient_errors_are_retried():
    calls = []
    delays = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientError("rate limited")
        return "ok"

    assert retry_with_backoff(flaky, attempts=3, initial_delay=0.5, sleep=delays.append) == "ok"
    assert delays == [0.5, 1.0]


def test_last_error_is_raised_after_attempts():
    def always():
        raise TransientError("down")

    with pytest.raises(TransientError):
        retry_with_backoff(always, attempts=2, sleep=lambda s: None)


def test_other_errors_are_not_retried():
    calls = []

    def rejected():
        calls.append(1)
        raise ExchangeError("insufficient margin")

    with pytest.raises(ExchangeError):
        retry_with_backoff(rejected, attempts=3, sleep=lambda s: None)
    assert len(calls) == 1
