"""
Unit tests for policy_engine module.

Tests retry decisions, backoff schedules and catch rule matching.
"""

import pytest

from document_workflow.orchestration.policy_engine import (
    CatchPolicy,
    CatchRule,
    PolicyEngine,
    RetryPolicy,
    RetryTracker,
    backoff_delay,
    matches_error,
)
from document_workflow.utils.error_handlers import (
    ConfigurationError,
    ExtractionFailed,
    PollingTimeoutError,
    ValidationFailed,
)


@pytest.fixture
def engine():
    """Create policy engine instance."""
    return PolicyEngine()


class TestBackoffDelay:
    """Tests for backoff_delay function."""

    def test_exponential_growth(self):
        """Test that delays double with rate 2."""
        delays = [backoff_delay(attempt, 2.0, 2.0) for attempt in (1, 2, 3)]

        assert delays == [2.0, 4.0, 8.0]

    def test_cap(self):
        """Test that max_seconds caps the delay."""
        assert backoff_delay(10, 1.0, 2.0, max_seconds=60.0) == 60.0

    def test_invalid_attempt(self):
        """Test that attempt 0 is rejected."""
        with pytest.raises(ValueError):
            backoff_delay(0, 1.0, 2.0)


class TestMatchesError:
    """Tests for error kind matching."""

    def test_wildcard_matches_anything(self):
        assert matches_error(["*"], RuntimeError("boom"))

    def test_polling_timeout_matches_timeout_kind(self):
        """Test that PollingTimeoutError is matched as TimeoutError."""
        error = PollingTimeoutError("late", job_id="job-1")

        assert matches_error(["TimeoutError"], error)
        assert not matches_error(["PollingTimeoutError"], error)

    def test_foreign_exception_matches_class_name(self):
        assert matches_error(["ConnectionError"], ConnectionError("reset"))
        assert not matches_error(["ConnectionError"], ValueError("bad"))


class TestRetryPolicy:
    """Tests for RetryPolicy construction."""

    def test_from_dict(self):
        """Test building a policy from configuration."""
        policy = RetryPolicy.from_dict(
            {
                "error_equals": ["ConnectionError"],
                "max_attempts": 3,
                "interval_seconds": 2,
                "backoff_rate": 2,
                "max_delay_seconds": 60,
            }
        )

        assert policy.error_equals == ("ConnectionError",)
        assert policy.max_attempts == 3
        assert policy.interval_seconds == 2.0
        assert policy.max_delay_seconds == 60.0

    def test_single_matcher_string(self):
        policy = RetryPolicy(error_equals="ConnectionError")

        assert policy.error_equals == ("ConnectionError",)

    def test_negative_max_attempts_rejected(self):
        with pytest.raises(ConfigurationError):
            RetryPolicy(max_attempts=-1)

    def test_backoff_rate_below_one_rejected(self):
        with pytest.raises(ConfigurationError):
            RetryPolicy(backoff_rate=0.5)

    def test_empty_matchers_rejected(self):
        with pytest.raises(ConfigurationError):
            RetryPolicy(error_equals=())


class TestShouldRetry:
    """Tests for PolicyEngine.should_retry."""

    def test_three_retries_then_exhausted(self, engine):
        """Test max_attempts=3 grants three retries with 2, 4, 8 second waits."""
        policy = RetryPolicy(max_attempts=3, interval_seconds=2.0, backoff_rate=2.0)
        error = ConnectionError("reset")

        decisions = [engine.should_retry(error, attempt, policy) for attempt in (1, 2, 3, 4)]

        assert [d.retry for d in decisions] == [True, True, True, False]
        assert [d.wait_seconds for d in decisions[:3]] == [2.0, 4.0, 8.0]
        assert decisions[3].exhausted

    def test_unmatched_error_not_retried(self, engine):
        """Test that an error outside error_equals is not retried."""
        policy = RetryPolicy(error_equals=("ConnectionError",))

        decision = engine.should_retry(ValidationFailed("bad"), 1, policy)

        assert not decision.retry
        assert not decision.exhausted
        assert decision.policy is None

    def test_zero_max_attempts_never_retries(self, engine):
        policy = RetryPolicy(max_attempts=0)

        decision = engine.should_retry(RuntimeError("boom"), 1, policy)

        assert not decision.retry
        assert decision.exhausted

    def test_max_delay_caps_wait(self, engine):
        policy = RetryPolicy(
            max_attempts=10, interval_seconds=10.0, backoff_rate=3.0, max_delay_seconds=60.0
        )

        decision = engine.should_retry(RuntimeError("boom"), 4, policy)

        assert decision.wait_seconds == 60.0


class TestEvaluateRetriers:
    """Tests for PolicyEngine.evaluate_retriers."""

    def test_first_matching_retrier_applies(self, engine):
        """Test that retriers are evaluated in order."""
        retriers = [
            RetryPolicy(error_equals=("ExtractionFailed",), interval_seconds=5.0),
            RetryPolicy(error_equals=("*",), interval_seconds=1.0),
        ]
        tracker = RetryTracker()

        decision = engine.evaluate_retriers(ExtractionFailed("none"), retriers, tracker)

        assert decision.wait_seconds == 5.0
        assert decision.policy is retriers[0]

    def test_each_retrier_counts_its_own_failures(self, engine):
        """Test that failure counts are tracked per retrier."""
        retriers = [
            RetryPolicy(error_equals=("ConnectionError",), max_attempts=1),
            RetryPolicy(error_equals=("*",), max_attempts=1),
        ]
        tracker = RetryTracker()

        first = engine.evaluate_retriers(ConnectionError("a"), retriers, tracker)
        other = engine.evaluate_retriers(RuntimeError("b"), retriers, tracker)
        second = engine.evaluate_retriers(ConnectionError("c"), retriers, tracker)

        assert first.retry
        assert other.retry
        assert not second.retry
        assert second.exhausted

    def test_no_retriers(self, engine):
        decision = engine.evaluate_retriers(RuntimeError("boom"), [], RetryTracker())

        assert not decision.retry
        assert decision.policy is None


class TestMatchCatch:
    """Tests for PolicyEngine.match_catch."""

    def test_first_matching_rule_wins(self, engine):
        catch = CatchPolicy.from_list(
            [
                {"error_equals": ["TimeoutError"], "next": "TimedOut"},
                {"error_equals": ["*"], "next": "Anything", "result_segment": "error"},
            ]
        )

        timeout_rule = engine.match_catch(PollingTimeoutError("late", "job-1"), catch)
        other_rule = engine.match_catch(RuntimeError("boom"), catch)

        assert timeout_rule.next_state == "TimedOut"
        assert other_rule.next_state == "Anything"
        assert other_rule.result_segment == "error"

    def test_no_match_returns_none(self, engine):
        catch = CatchPolicy(rules=(CatchRule(("ValidationFailed",), "Review"),))

        assert engine.match_catch(RuntimeError("boom"), catch) is None

    def test_empty_policy_is_falsy(self):
        assert not CatchPolicy()

    def test_rule_requires_next_state(self):
        with pytest.raises(ConfigurationError):
            CatchRule.from_dict({"error_equals": ["*"]})
