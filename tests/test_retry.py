"""
Unit tests for the retry policy.
"""

from unittest.mock import Mock

import pytest

from ai_orchestrator.core.retry import NO_RETRY, RetryPolicy
from ai_orchestrator.sdk.errors import ProviderError, ProviderUnavailable


def policy(max_attempts=3, **kwargs):
    sleeps = []
    kwargs.setdefault("rand", lambda low, high: 0.0)
    return RetryPolicy(max_attempts=max_attempts, sleep=sleeps.append, **kwargs), sleeps


class TestRetryPolicy:
    def test_success_first_try(self):
        retry, sleeps = policy()
        operation = Mock(return_value="ok")

        assert retry.call(operation) == "ok"
        assert operation.call_count == 1
        assert sleeps == []

    def test_retries_retryable_errors(self):
        retry, sleeps = policy(backoff_base=0.5)
        operation = Mock(side_effect=[
            ProviderError("boom", "completion", retryable=True),
            ProviderError("boom", "completion", retryable=True),
            "ok",
        ])

        assert retry.call(operation) == "ok"
        assert operation.call_count == 3
        assert sleeps == [0.5, 1.0]

    def test_non_retryable_raises_immediately(self):
        retry, sleeps = policy()
        operation = Mock(side_effect=ProviderError("bad request", "completion", status_code=400))

        with pytest.raises(ProviderError, match="bad request"):
            retry.call(operation)
        assert operation.call_count == 1
        assert sleeps == []

    def test_missing_key_is_never_retried(self):
        retry, _ = policy()
        operation = Mock(side_effect=ProviderUnavailable("Missing environment variable: X", "completion"))

        with pytest.raises(ProviderUnavailable):
            retry.call(operation)
        assert operation.call_count == 1

    def test_gives_up_after_max_attempts(self):
        retry, sleeps = policy(max_attempts=2)
        operation = Mock(side_effect=ProviderError("timeout", "completion", retryable=True))

        with pytest.raises(ProviderError):
            retry.call(operation)
        assert operation.call_count == 2
        assert len(sleeps) == 1

    def test_default_policy_makes_one_attempt(self):
        operation = Mock(side_effect=ProviderError("timeout", "completion", retryable=True))
        with pytest.raises(ProviderError):
            NO_RETRY.call(operation)
        assert operation.call_count == 1

    def test_delay_is_capped_and_jittered(self):
        retry = RetryPolicy(max_attempts=5, backoff_base=1.0, backoff_max=4.0, jitter=0.5,
                            rand=lambda low, high: high)
        assert retry.delay_for(0) == 1.5
        assert retry.delay_for(5) == 4.5

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(jitter=-1)
