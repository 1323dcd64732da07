"""Tests for the job-level retry/backoff policy."""

import pytest

from repurpose_ai.errors import (
    CapabilityError,
    CommitConflictError,
    FatalConfigError,
    TransientStoreError,
    ValidationError,
)
from repurpose_ai.models import RetryConfig
from repurpose_ai.queue import Job, RetryAction, RetryPolicy


def job_at(attempt, max_attempts=3):
    return Job(job_id="job-1", video_id="v", user_id="u", attempt=attempt, max_attempts=max_attempts)


class TestDelay:
    def test_delay_grows_with_attempt(self):
        policy = RetryPolicy(base_delay_s=30, max_delay_s=600)

        assert policy.delay_for(1) == 30
        assert policy.delay_for(2) == 60
        assert policy.delay_for(3) == 90

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay_s=30, max_delay_s=600)

        assert policy.delay_for(20) == 600
        assert policy.delay_for(1000) == 600

    def test_from_config(self):
        policy = RetryPolicy.from_config(RetryConfig(max_attempts=5, base_delay_s=1, max_delay_s=4))

        assert policy.delay_for(1) == 1
        assert policy.delay_for(10) == 4

    def test_invalid_delays(self):
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_s=-1)


class TestDecide:
    def test_retriable_error_is_retried(self):
        policy = RetryPolicy(base_delay_s=30)

        decision = policy.decide(job_at(1), CapabilityError("timeout", timed_out=True))

        assert decision.action is RetryAction.RETRY
        assert decision.is_retry
        assert decision.delay_s == 30

    def test_validation_error_is_retried(self):
        decision = RetryPolicy().decide(job_at(1), ValidationError("viralScore", "out of range", 0))
        assert decision.is_retry

    def test_store_error_is_retried(self):
        decision = RetryPolicy().decide(job_at(2), TransientStoreError("locked"))
        assert decision.is_retry
        assert decision.delay_s == 60

    def test_last_attempt_goes_dead(self):
        decision = RetryPolicy().decide(job_at(3), CapabilityError("boom"))

        assert decision.action is RetryAction.DEAD
        assert "exhausted" in decision.reason

    def test_budget_comes_from_the_job(self):
        policy = RetryPolicy.from_config(RetryConfig(max_attempts=2))

        assert policy.decide(job_at(3, max_attempts=5), CapabilityError("boom")).is_retry
        assert not policy.decide(job_at(2, max_attempts=2), CapabilityError("boom")).is_retry
        assert not policy.decide(job_at(7, max_attempts=5), CapabilityError("boom")).is_retry

    def test_non_retriable_error_goes_dead_immediately(self):
        policy = RetryPolicy()

        assert not policy.decide(job_at(1), FatalConfigError("missing url")).is_retry
        assert not policy.decide(job_at(1), CommitConflictError("v")).is_retry

    def test_untagged_exception_is_treated_as_transient(self):
        decision = RetryPolicy().decide(job_at(1), RuntimeError("unexpected"))
        assert decision.is_retry
