# src/document_workflow/orchestration/policy_engine.py
"""Retry and catch policy evaluation.

Pure decision logic, no I/O and no sleeping: callers receive a
RetryDecision and perform the wait through their scheduler.

Retry semantics:
    ``attempt`` is the number of failures seen so far for the matching
    retrier (1 after the first failure). A retry is granted while
    ``attempt <= max_attempts`` and waits
    ``interval_seconds * backoff_rate ** (attempt - 1)``, optionally capped.
    With ``max_attempts=3`` a task is therefore invoked at most four times.
    For ``{max_attempts=3, interval_seconds=2, backoff_rate=2}`` the waits are
    2, 4 and 8 seconds, so the attempts start at t=0, 2, 6 and 14 rather than
    at evenly spaced offsets such as t=0, 2, 4.

Catch semantics:
    Consulted only once retries are exhausted (or no retrier matched). The
    first rule whose matchers accept the error kind wins.

Matchers are exact error-kind strings or the wildcard ``"*"``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from ..utils.error_handlers import ConfigurationError, error_kind

logger = logging.getLogger(__name__)

WILDCARD = "*"


def _normalise_matchers(matchers: Sequence[str], owner: str) -> Tuple[str, ...]:
    if isinstance(matchers, str):
        matchers = [matchers]
    normalised = tuple(str(m).strip() for m in matchers)
    if not normalised or any(not m for m in normalised):
        raise ConfigurationError(
            f"{owner} requires at least one non-empty error matcher",
            config_key=owner,
        )
    return normalised


def matches_error(matchers: Sequence[str], error: BaseException) -> bool:
    """Return True if any matcher accepts the error kind.

    Args:
        matchers: Error kind strings, ``"*"`` matching any kind.
        error: Exception to test.
    """
    kind = error_kind(error)
    return any(matcher == WILDCARD or matcher == kind for matcher in matchers)


def backoff_delay(
    attempt: int,
    base_seconds: float,
    rate: float,
    max_seconds: Optional[float] = None,
) -> float:
    """Calculate an exponential backoff delay.

    Args:
        attempt: 1-indexed attempt number.
        base_seconds: Delay for the first attempt.
        rate: Multiplier applied per further attempt.
        max_seconds: Optional cap.

    Returns:
        ``base_seconds * rate ** (attempt - 1)``, capped at ``max_seconds``.

    Example:
        >>> backoff_delay(3, 2.0, 2.0)
        8.0
        >>> backoff_delay(10, 1.0, 2.0, max_seconds=60.0)
        60.0
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    delay = base_seconds * (rate ** (attempt - 1))
    if max_seconds is not None:
        delay = min(delay, max_seconds)
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """Retry rule for a task state.

    Attributes:
        error_equals: Error kinds this retrier handles ("*" for any).
        max_attempts: Maximum number of retries (not counting the first call).
        interval_seconds: Wait before the first retry.
        backoff_rate: Multiplier applied to the wait for each further retry.
        max_delay_seconds: Optional upper bound on a single wait.
    """

    error_equals: Tuple[str, ...] = (WILDCARD,)
    max_attempts: int = 3
    interval_seconds: float = 1.0
    backoff_rate: float = 2.0
    max_delay_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "error_equals", _normalise_matchers(self.error_equals, "RetryPolicy")
        )
        if self.max_attempts < 0:
            raise ConfigurationError(
                f"max_attempts must be >= 0, got {self.max_attempts}",
                config_key="max_attempts",
            )
        if self.interval_seconds < 0:
            raise ConfigurationError(
                f"interval_seconds must be >= 0, got {self.interval_seconds}",
                config_key="interval_seconds",
            )
        if self.backoff_rate < 1.0:
            raise ConfigurationError(
                f"backoff_rate must be >= 1.0, got {self.backoff_rate}",
                config_key="backoff_rate",
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RetryPolicy":
        """Build a policy from a definition or config mapping."""
        return cls(
            error_equals=tuple(data.get("error_equals", (WILDCARD,))),
            max_attempts=int(data.get("max_attempts", 3)),
            interval_seconds=float(data.get("interval_seconds", 1.0)),
            backoff_rate=float(data.get("backoff_rate", 2.0)),
            max_delay_seconds=(
                float(data["max_delay_seconds"])
                if data.get("max_delay_seconds") is not None
                else None
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_equals": list(self.error_equals),
            "max_attempts": self.max_attempts,
            "interval_seconds": self.interval_seconds,
            "backoff_rate": self.backoff_rate,
            "max_delay_seconds": self.max_delay_seconds,
        }


@dataclass(frozen=True)
class CatchRule:
    """Route for an unrecovered error.

    Attributes:
        error_equals: Error kinds this rule handles ("*" for any).
        next_state: Fallback state to move to.
        result_segment: Context segment the error is stored under.
    """

    error_equals: Tuple[str, ...]
    next_state: str
    result_segment: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "error_equals", _normalise_matchers(self.error_equals, "CatchRule")
        )
        if not self.next_state:
            raise ConfigurationError("CatchRule requires a next_state")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CatchRule":
        return cls(
            error_equals=tuple(data.get("error_equals", ())),
            next_state=data.get("next", ""),
            result_segment=data.get("result_segment"),
        )


@dataclass(frozen=True)
class CatchPolicy:
    """Ordered catch rules for a state."""

    rules: Tuple[CatchRule, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))

    def __bool__(self) -> bool:
        return bool(self.rules)

    @classmethod
    def from_list(cls, entries: Sequence[Mapping[str, Any]]) -> "CatchPolicy":
        return cls(rules=tuple(CatchRule.from_dict(entry) for entry in entries))


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry evaluation.

    Attributes:
        retry: Whether the task should be invoked again.
        wait_seconds: Delay before the next invocation (0.0 if not retrying).
        policy: The retrier that matched, if any.
        attempt: Failure count the decision was made for.
    """

    retry: bool
    wait_seconds: float = 0.0
    policy: Optional[RetryPolicy] = None
    attempt: int = 0

    @property
    def exhausted(self) -> bool:
        """True when a retrier matched but has no attempts left."""
        return not self.retry and self.policy is not None


@dataclass
class RetryTracker:
    """Per-invocation failure counters, one per retrier.

    The coordinator creates one tracker per task execution so that each
    retrier counts only the failures it matched.
    """

    counts: Dict[int, int] = field(default_factory=dict)

    def record(self, policy_index: int) -> int:
        self.counts[policy_index] = self.counts.get(policy_index, 0) + 1
        return self.counts[policy_index]


class PolicyEngine:
    """Evaluates retry and catch policies.

    Stateless; a single instance is shared by the coordinator and the job
    poller.

    Example:
        >>> engine = PolicyEngine()
        >>> policy = RetryPolicy(max_attempts=3, interval_seconds=2, backoff_rate=2)
        >>> engine.should_retry(RuntimeError("boom"), 1, policy).wait_seconds
        2.0
    """

    def should_retry(
        self, error: BaseException, attempt: int, policy: RetryPolicy
    ) -> RetryDecision:
        """Decide whether to retry after the ``attempt``-th matching failure.

        Args:
            error: The error the task raised.
            attempt: Number of failures so far for this retrier (1-indexed).
            policy: Retry policy to apply.

        Returns:
            RetryDecision with the wait to apply before the next attempt.
        """
        if not matches_error(policy.error_equals, error):
            return RetryDecision(retry=False, attempt=attempt)

        if attempt > policy.max_attempts:
            logger.debug(
                f"Retries exhausted for [{error_kind(error)}] after "
                f"{attempt} failures (max_attempts={policy.max_attempts})"
            )
            return RetryDecision(retry=False, policy=policy, attempt=attempt)

        wait = backoff_delay(
            attempt,
            policy.interval_seconds,
            policy.backoff_rate,
            policy.max_delay_seconds,
        )
        return RetryDecision(retry=True, wait_seconds=wait, policy=policy, attempt=attempt)

    def evaluate_retriers(
        self,
        error: BaseException,
        retriers: Sequence[RetryPolicy],
        tracker: RetryTracker,
    ) -> RetryDecision:
        """Apply the first retrier whose matchers accept the error.

        Args:
            error: The error the task raised.
            retriers: Ordered retry policies of the state.
            tracker: Failure counters for the current task execution.

        Returns:
            Decision of the first matching retrier, or a no-retry decision
            when none matches.
        """
        for index, policy in enumerate(retriers):
            if matches_error(policy.error_equals, error):
                attempt = tracker.record(index)
                return self.should_retry(error, attempt, policy)
        return RetryDecision(retry=False)

    def match_catch(
        self, error: BaseException, catch_policy: CatchPolicy
    ) -> Optional[CatchRule]:
        """Return the first catch rule accepting the error, or None.

        Args:
            error: The unrecovered error.
            catch_policy: Ordered catch rules of the state.
        """
        for rule in catch_policy.rules:
            if matches_error(rule.error_equals, error):
                return rule
        return None
