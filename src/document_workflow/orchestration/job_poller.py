"""Asynchronous classification job poller.

Tracks outstanding classification jobs and resumes whoever is waiting on
them once they reach a terminal status. Each job id owns at most one polling
loop; further ``watch`` calls for the same id attach to the existing
registration. Registrations are guarded by per-job-id locks, and the only
state shared between jobs is the bounded pool of concurrent status queries.

Scheduling:
    - Submitted/Running: poll again after an exponential backoff with
      jitter, capped at ``max_interval_seconds``.
    - Succeeded/Failed: deregister, then invoke each callback exactly once.
    - Polling budget exceeded: deliver a synthesized Failed job whose
      ``error_kind`` is "TimeoutError".
    - Status query errors: consecutive failures are retried under
      ``status_retry``; a successful query resets the count. Exhaustion
      delivers a Failed job with ``error_kind`` "TaskFailure".

Example:
    poller = AsyncJobPoller(classification_service, PollerConfig())
    handle = await poller.watch("job-42", on_terminal=resume_execution)
    ...
    await poller.unwatch(handle)
"""

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Union,
)

import numpy as np

from ..models.data_structures import ClassificationJob, JobStatus
from ..services.interfaces import ClassificationService
from ..utils.error_handlers import (
    ClassificationError,
    PollingTimeoutError,
    TaskFailure,
    WorkflowError,
    error_kind,
)
from .policy_engine import PolicyEngine, RetryPolicy, RetryTracker, backoff_delay
from .scheduler import AsyncioScheduler, Scheduler

logger = logging.getLogger(__name__)

TerminalCallback = Callable[[ClassificationJob], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class PollerConfig:
    """Polling schedule and budget.

    Attributes:
        initial_interval_seconds: Delay before the second poll.
        backoff_multiplier: Growth factor of the delay per poll.
        max_interval_seconds: Upper bound for a single delay.
        jitter_ratio: Relative jitter applied to each delay (0.2 = ±20%).
        timeout_seconds: Total polling budget per job.
        max_concurrent_polls: Size of the shared status query pool.
        status_retry: Retry policy for failing status queries.
    """

    initial_interval_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_interval_seconds: float = 30.0
    jitter_ratio: float = 0.2
    timeout_seconds: float = 900.0
    max_concurrent_polls: int = 64
    status_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(max_attempts=5, interval_seconds=1.0)
    )

    def __post_init__(self) -> None:
        if self.initial_interval_seconds <= 0 or self.max_interval_seconds <= 0:
            raise ValueError("Polling intervals must be positive")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ValueError("jitter_ratio must be in [0, 1)")
        if self.max_concurrent_polls < 1:
            raise ValueError("max_concurrent_polls must be >= 1")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PollerConfig":
        """Build from the ``polling`` configuration section."""
        kwargs: Dict[str, Any] = {
            key: data[key]
            for key in (
                "initial_interval_seconds",
                "backoff_multiplier",
                "max_interval_seconds",
                "jitter_ratio",
                "timeout_seconds",
                "max_concurrent_polls",
            )
            if key in data
        }
        if "status_retry" in data:
            kwargs["status_retry"] = RetryPolicy.from_dict(data["status_retry"])
        return cls(**kwargs)


@dataclass(frozen=True)
class WatchHandle:
    """Returned by ``watch``; pass to ``unwatch`` to drop the callback."""

    job_id: str
    callback: TerminalCallback


@dataclass
class _Registration:
    job_id: str
    started_at: float
    callbacks: List[TerminalCallback]
    task: Optional["asyncio.Task[None]"] = None
    polls: int = 0


def error_for_failed_job(job: ClassificationJob) -> WorkflowError:
    """Translate a failed job into the error raised at the waiting state.

    Args:
        job: A job with status FAILED.

    Returns:
        PollingTimeoutError, TaskFailure or ClassificationError depending on
        the job's ``error_kind``.
    """
    message = job.error or f"Classification job {job.job_id} failed"
    if job.error_kind == PollingTimeoutError.kind:
        return PollingTimeoutError(message, job_id=job.job_id)
    if job.error_kind == TaskFailure.kind:
        return TaskFailure(message, state="classification")
    return ClassificationError(message, job_id=job.job_id)


class AsyncJobPoller:
    """Polls classification jobs until they finish and fires continuations.

    Attributes:
        config: Polling schedule and budget.
    """

    def __init__(
        self,
        classification_service: ClassificationService,
        config: Optional[PollerConfig] = None,
        policy_engine: Optional[PolicyEngine] = None,
        scheduler: Optional[Scheduler] = None,
        random_seed: Optional[int] = None,
    ) -> None:
        """Initialize the poller.

        Args:
            classification_service: Service answering status queries.
            config: Polling configuration. Defaults to PollerConfig().
            policy_engine: Policy engine for status query retries.
            scheduler: Timer abstraction. Defaults to AsyncioScheduler.
            random_seed: Optional seed for reproducible jitter (for testing).
        """
        self.config = config or PollerConfig()
        self._service = classification_service
        self._policy = policy_engine or PolicyEngine()
        self._scheduler = scheduler or AsyncioScheduler()
        self._rng = np.random.default_rng(random_seed)
        self._registrations: Dict[str, _Registration] = {}
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._slots = asyncio.Semaphore(self.config.max_concurrent_polls)

    @asynccontextmanager
    async def _job_lock(self, job_id: str) -> AsyncIterator[None]:
        """Hold the lock for ``job_id``.

        The lock entry is dropped on release once the job has no
        registration. Waiters that woke on a dropped lock retry with the
        current one.
        """
        while True:
            lock = self._key_locks.get(job_id)
            if lock is None:
                lock = self._key_locks[job_id] = asyncio.Lock()
            await lock.acquire()
            if self._key_locks.get(job_id) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            if (
                job_id not in self._registrations
                and self._key_locks.get(job_id) is lock
            ):
                del self._key_locks[job_id]
            lock.release()

    def is_watching(self, job_id: str) -> bool:
        """Whether a polling loop is registered for ``job_id``."""
        return job_id in self._registrations

    @property
    def active_job_ids(self) -> List[str]:
        return list(self._registrations)

    async def watch(self, job_id: str, on_terminal: TerminalCallback) -> WatchHandle:
        """Register interest in a job's terminal status.

        Starts a polling loop unless one already exists for ``job_id``, in
        which case the callback is attached to it. Attaching the same
        callback twice has no effect.

        Args:
            job_id: Classification job identifier.
            on_terminal: Called once with the terminal ClassificationJob.
                May be a coroutine function.

        Returns:
            WatchHandle for ``unwatch``.
        """
        if not job_id:
            raise ValueError("job_id cannot be empty")

        async with self._job_lock(job_id):
            registration = self._registrations.get(job_id)
            if registration is None:
                registration = _Registration(
                    job_id=job_id,
                    started_at=self._scheduler.now(),
                    callbacks=[on_terminal],
                )
                self._registrations[job_id] = registration
                registration.task = asyncio.create_task(
                    self._poll_loop(registration), name=f"poll-{job_id}"
                )
                logger.info(f"Started polling classification job {job_id}")
            elif on_terminal not in registration.callbacks:
                registration.callbacks.append(on_terminal)
                logger.debug(f"Attached callback to existing poller for {job_id}")
            else:
                logger.debug(f"Callback already registered for {job_id}")

        return WatchHandle(job_id=job_id, callback=on_terminal)

    async def unwatch(self, handle: WatchHandle) -> None:
        """Drop a callback; stops the polling loop when none remain.

        Args:
            handle: Handle returned by ``watch``.
        """
        async with self._job_lock(handle.job_id):
            registration = self._registrations.get(handle.job_id)
            if registration is None:
                return
            if handle.callback in registration.callbacks:
                registration.callbacks.remove(handle.callback)
            if not registration.callbacks:
                del self._registrations[handle.job_id]
                if registration.task is not None:
                    registration.task.cancel()
                logger.info(f"Stopped polling classification job {handle.job_id}")

    async def poll_once(self, job_id: str) -> ClassificationJob:
        """Query the job status once through the shared query pool.

        Args:
            job_id: Classification job identifier.

        Returns:
            Current ClassificationJob snapshot.

        Raises:
            ClassificationError: If the payload is unusable or the confidence
                is outside [0, 1].
            Exception: Whatever the classification service raises.
        """
        async with self._slots:
            payload = await self._service.get_status(job_id)
        return ClassificationJob.from_status(job_id, payload)

    def next_delay(self, poll_number: int) -> float:
        """Delay before the poll following poll number ``poll_number``.

        Args:
            poll_number: 1-indexed count of non-terminal polls so far.

        Returns:
            Backoff delay with jitter, never above ``max_interval_seconds``.
        """
        delay = backoff_delay(
            poll_number,
            self.config.initial_interval_seconds,
            self.config.backoff_multiplier,
            self.config.max_interval_seconds,
        )
        if self.config.jitter_ratio:
            jitter = float(
                self._rng.uniform(-self.config.jitter_ratio, self.config.jitter_ratio)
            )
            delay *= 1.0 + jitter
        return min(delay, self.config.max_interval_seconds)

    async def _poll_loop(self, registration: _Registration) -> None:
        try:
            job = await self._poll_until_terminal(registration)
        except asyncio.CancelledError:
            logger.debug(f"Polling loop for {registration.job_id} cancelled")
            raise
        await self._deliver(registration, job)

    async def _poll_until_terminal(self, registration: _Registration) -> ClassificationJob:
        job_id = registration.job_id
        timeout = self.config.timeout_seconds
        tracker = RetryTracker()
        non_terminal_polls = 0

        while True:
            elapsed = self._scheduler.now() - registration.started_at
            if elapsed >= timeout:
                logger.warning(
                    f"Classification job {job_id} exceeded polling budget "
                    f"({elapsed:.1f}s >= {timeout:.1f}s)"
                )
                return ClassificationJob(
                    job_id=job_id,
                    status=JobStatus.FAILED,
                    error=(
                        f"Polling budget of {timeout:.1f}s exceeded after "
                        f"{registration.polls} polls"
                    ),
                    error_kind=PollingTimeoutError.kind,
                )

            try:
                job = await self.poll_once(job_id)
                registration.polls += 1
            except ClassificationError as e:
                logger.warning(f"Rejected status for job {job_id}: {e}")
                return ClassificationJob(
                    job_id=job_id,
                    status=JobStatus.FAILED,
                    error=str(e),
                    error_kind=ClassificationError.kind,
                )
            except Exception as e:
                decision = self._policy.evaluate_retriers(
                    e, [self.config.status_retry], tracker
                )
                if not decision.retry:
                    logger.error(
                        f"Status query for job {job_id} failed permanently: "
                        f"[{error_kind(e)}] {e}"
                    )
                    return ClassificationJob(
                        job_id=job_id,
                        status=JobStatus.FAILED,
                        error=f"Status query failed: {e}",
                        error_kind=TaskFailure.kind,
                    )
                logger.warning(
                    f"Status query for job {job_id} failed (attempt "
                    f"{decision.attempt}), retrying in {decision.wait_seconds:.2f}s: {e}"
                )
                delay = decision.wait_seconds
            else:
                if job.status.is_terminal:
                    logger.info(
                        f"Classification job {job_id} finished with status "
                        f"{job.status.value} after {registration.polls} polls"
                    )
                    return job
                non_terminal_polls += 1
                tracker = RetryTracker()
                delay = self.next_delay(non_terminal_polls)

            remaining = timeout - (self._scheduler.now() - registration.started_at)
            await self._scheduler.sleep(max(0.0, min(delay, remaining)))

    async def _deliver(self, registration: _Registration, job: ClassificationJob) -> None:
        async with self._job_lock(registration.job_id):
            if self._registrations.get(registration.job_id) is registration:
                del self._registrations[registration.job_id]
            callbacks = list(registration.callbacks)
            registration.callbacks.clear()

        for callback in callbacks:
            try:
                result = callback(job)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    f"Terminal callback for classification job {job.job_id} failed"
                )

    async def close(self) -> None:
        """Cancel every polling loop and wait for them to stop."""
        tasks = [r.task for r in self._registrations.values() if r.task is not None]
        self._registrations.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
