"""
Workflow Coordinator Module

Drives executions through the compiled state graph: runs task states under
their retry/catch policies, evaluates choice states, suspends on
classification jobs, and ends executions in terminal states. Every
transition is appended to the transition store before the next state runs,
which makes executions auditable and recoverable by replay.

Each execution is driven by its own asyncio task and serialised by its own
lock. While an execution waits for a retry backoff or an async job it holds
no worker: backoffs go through the scheduler, and async jobs are resumed by
a continuation registered with the job poller.
"""

import asyncio
import dataclasses
import logging
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from ..database.transition_store import TransitionStore, create_transition_store
from ..extraction.extraction_orchestrator import ExtractionOrchestrator
from ..extraction.providers.base_provider import ExtractionProvider
from ..extraction.templates import TemplateRegistry
from ..models.context import ExecutionContext
from ..models.data_structures import (
    ClassificationJob,
    Document,
    ExecutionStatus,
    JobCompleted,
    JobStatus,
    TransitionRecord,
)
from ..services.interfaces import ActionHandler, ClassificationService, NotificationService
from ..utils.config_loader import WorkflowConfig
from ..utils.error_handlers import (
    ContextConflictError,
    ExecutionNotFound,
    TaskFailure,
    describe_error_chain,
    error_kind,
    log_error_with_context,
)
from ..utils.file_utils import generate_unique_id
from ..validation.data_validator import DataValidator, ValidationConfig
from .definitions import (
    EXTRACT,
    PROCESS_ACTION,
    SUBMIT_CLASSIFICATION,
    TRANSFORM_FOR_EXTRACTION,
    VALIDATE,
    definition_from_config,
)
from .job_poller import AsyncJobPoller, PollerConfig, WatchHandle, error_for_failed_job
from .policy_engine import PolicyEngine, RetryTracker
from .scheduler import AsyncioScheduler, Scheduler
from .state_graph import (
    ChoiceState,
    StateGraph,
    TaskState,
    TerminalState,
    WaitForJobState,
    compile_state_graph,
)
from .tasks import (
    DOCUMENT_SEGMENT,
    ExtractTask,
    ProcessActionTask,
    SubmitClassificationTask,
    TransformForExtractionTask,
    ValidateTask,
    manual_review_reasons,
)
from .workflow_state import Execution

logger: logging.Logger = logging.getLogger(__name__)

CANCELLED_STATE = "Cancelled"
DEFAULT_MANUAL_REVIEW_TOPIC = "document-workflow.manual-review"
ID_PREFIX_EXECUTION = "EXE"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowCoordinator:
    """
    State machine executor for document workflow executions.

    Usage:
        coordinator = WorkflowCoordinator.from_config(
            config, classification_service, providers, action_handler, notifier
        )
        execution_id = await coordinator.start(Document(location="s3://b/k.pdf"))
        execution = await coordinator.wait_for(execution_id)
        print(execution.status)

    Attributes:
        graph: Compiled workflow graph.
        manual_review_topic: Topic manual review notifications go to.
    """

    def __init__(
        self,
        graph: StateGraph,
        store: TransitionStore,
        poller: AsyncJobPoller,
        notifier: Optional[NotificationService] = None,
        policy_engine: Optional[PolicyEngine] = None,
        scheduler: Optional[Scheduler] = None,
        manual_review_topic: str = DEFAULT_MANUAL_REVIEW_TOPIC,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            graph: Compiled workflow graph.
            store: Transition store receiving every transition record.
            poller: Job poller resuming executions suspended on async jobs.
            notifier: Notification service for manual review routing.
            policy_engine: Retry/catch evaluator. Defaults to PolicyEngine().
            scheduler: Timer for retry backoff. Defaults to AsyncioScheduler.
            manual_review_topic: Destination topic for manual review messages.
        """
        self.graph = graph
        self.manual_review_topic = manual_review_topic
        self._store = store
        self._poller = poller
        self._notifier = notifier
        self._policy = policy_engine or PolicyEngine()
        self._scheduler = scheduler or AsyncioScheduler()

        self._active: Dict[str, Execution] = {}
        self._archive: Dict[str, Execution] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._drivers: Dict[str, "asyncio.Task[None]"] = {}
        self._watches: Dict[str, WatchHandle] = {}
        self._wait_entries: Dict[str, Tuple[datetime, Mapping[str, Any]]] = {}

        # Dispatch on compiled node type
        self._state_runners: Dict[type, Callable[[Execution, Any], Awaitable[None]]] = {
            TaskState: self._run_task,
            ChoiceState: self._run_choice,
            WaitForJobState: self._run_wait,
            TerminalState: self._run_terminal,
        }

        logger.info(
            f"WorkflowCoordinator initialized with {len(graph.states)} states, "
            f"start_at={graph.start_at}"
        )

    @classmethod
    def from_config(
        cls,
        config: WorkflowConfig,
        classification_service: ClassificationService,
        providers: Sequence[ExtractionProvider],
        action_handler: ActionHandler,
        notifier: Optional[NotificationService] = None,
        store: Optional[TransitionStore] = None,
        scheduler: Optional[Scheduler] = None,
        random_seed: Optional[int] = None,
    ) -> "WorkflowCoordinator":
        """
        Build a coordinator and all of its components from configuration.

        Args:
            config: Loaded workflow configuration.
            classification_service: Classification collaborator.
            providers: Extraction providers.
            action_handler: Business action collaborator.
            notifier: Notification collaborator.
            store: Transition store. Built from ``config.persistence`` if None.
            scheduler: Shared timer for the poller and retry backoff.
            random_seed: Optional seed for reproducible polling jitter.

        Returns:
            Configured WorkflowCoordinator.
        """
        scheduler = scheduler or AsyncioScheduler()
        policy_engine = PolicyEngine()

        templates = TemplateRegistry.from_config(config.extraction)
        orchestrator = ExtractionOrchestrator(
            providers=providers,
            templates=templates,
            epsilon=float(config.extraction.get("epsilon", 0.005)),
            provider_order=config.extraction.get("provider_order"),
        )
        validator = DataValidator(templates, ValidationConfig.from_dict(config.validation))

        resources = {
            SUBMIT_CLASSIFICATION: SubmitClassificationTask(classification_service),
            TRANSFORM_FOR_EXTRACTION: TransformForExtractionTask(
                templates, config.classification.get("type_aliases")
            ),
            EXTRACT: ExtractTask(orchestrator),
            VALIDATE: ValidateTask(validator),
            PROCESS_ACTION: ProcessActionTask(action_handler),
        }
        graph = compile_state_graph(definition_from_config(config), resources)

        poller = AsyncJobPoller(
            classification_service,
            PollerConfig.from_dict(config.polling),
            policy_engine=policy_engine,
            scheduler=scheduler,
            random_seed=random_seed,
        )

        return cls(
            graph=graph,
            store=store or create_transition_store(config.persistence),
            poller=poller,
            notifier=notifier,
            policy_engine=policy_engine,
            scheduler=scheduler,
            manual_review_topic=config.notification.get(
                "manual_review_topic", DEFAULT_MANUAL_REVIEW_TOPIC
            ),
        )

    # Public API

    async def start(
        self,
        document: Union[Document, str],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Create an execution for a document and start driving it.

        Args:
            document: Document or document location.
            metadata: Trigger metadata merged into the document metadata.

        Returns:
            The new execution id. The execution runs in the background.

        Raises:
            PersistenceError: If the execution record cannot be created.
        """
        if isinstance(document, str):
            document = Document(location=document, metadata=dict(metadata or {}))
        elif metadata:
            document = dataclasses.replace(
                document, metadata={**dict(document.metadata), **dict(metadata)}
            )

        execution_id = generate_unique_id(ID_PREFIX_EXECUTION)
        execution = Execution(
            execution_id=execution_id,
            document=document,
            current_state=self.graph.start_at,
            context=ExecutionContext().with_segment(DOCUMENT_SEGMENT, document.to_dict()),
        )

        await self._store.create(execution_id, document)
        self._register(execution)
        self._spawn_driver(execution_id)

        logger.info(f"Started execution {execution_id} for {document.location}")
        return execution_id

    async def advance(
        self, execution_id: str, event: Optional[JobCompleted] = None
    ) -> Execution:
        """
        Drive exactly one transition of an execution.

        Without an event the current state runs. With a JobCompleted event
        an execution suspended on that job resumes. Calls on terminal
        executions, suspended executions without an event, or with an event
        for a job the execution is not waiting on, change nothing.

        Args:
            execution_id: Execution to drive.
            event: Optional job completion event.

        Returns:
            The execution after the transition.

        Raises:
            ExecutionNotFound: If the execution is unknown.
        """
        execution = self.get_execution(execution_id)
        lock = self._locks.get(execution_id)
        if execution.is_terminal or lock is None:
            return execution

        async with lock:
            if execution.is_terminal:
                return execution

            state = self.graph[execution.current_state]

            if event is not None:
                if (
                    not isinstance(state, WaitForJobState)
                    or execution.waiting_on_job != event.job.job_id
                ):
                    logger.warning(
                        f"Execution {execution_id}: ignoring completion of job "
                        f"{event.job.job_id} in state {state.name}"
                    )
                    return execution
                await self._resume_wait(execution, state, event.job)
            elif execution.is_suspended:
                logger.debug(
                    f"Execution {execution_id} is waiting on job {execution.waiting_on_job}"
                )
            else:
                await self._state_runners[type(state)](execution, state)

        return execution

    async def cancel(self, execution_id: str) -> ExecutionStatus:
        """
        Cancel an execution.

        Stops pending retries, the execution's polling registration and any
        in-flight state, then records a single Cancelled transition.
        Cancelling a finished or already cancelled execution is a no-op.

        Args:
            execution_id: Execution to cancel.

        Returns:
            The execution status after the call.

        Raises:
            ExecutionNotFound: If the execution is unknown.
        """
        execution = self.get_execution(execution_id)
        lock = self._locks.get(execution_id)
        if execution.is_terminal or lock is None:
            return execution.status

        driver = self._drivers.get(execution_id)
        if (
            driver is not None
            and driver is not asyncio.current_task()
            and not driver.done()
        ):
            driver.cancel()
            await asyncio.wait({driver})

        async with lock:
            if execution.is_terminal:
                return execution.status

            handle = self._watches.pop(execution_id, None)
            if handle is not None:
                await self._poller.unwatch(handle)
            self._wait_entries.pop(execution_id, None)

            record = TransitionRecord(
                state=CANCELLED_STATE,
                entered_at=_utcnow(),
                input_snapshot=execution.context.snapshot(),
                output_snapshot={
                    "cancelled_in": execution.current_state,
                    "waiting_on_job": execution.waiting_on_job,
                },
            )
            await self._persist(execution, record)
            await self._finish(execution, ExecutionStatus.CANCELLED)

        logger.info(f"Execution {execution_id} cancelled")
        return execution.status

    async def wait_for(
        self, execution_id: str, timeout: Optional[float] = None
    ) -> Execution:
        """
        Wait until an execution reaches a terminal status.

        Raises:
            ExecutionNotFound: If the execution is unknown.
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        execution = self.get_execution(execution_id)
        done = self._done.get(execution_id)
        if done is not None and not execution.is_terminal:
            await asyncio.wait_for(done.wait(), timeout)
        return execution

    def get_execution(self, execution_id: str) -> Execution:
        """
        Return an active or archived execution.

        Raises:
            ExecutionNotFound: If the execution is unknown to this coordinator.
        """
        execution = self._active.get(execution_id) or self._archive.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    @property
    def active_execution_ids(self) -> List[str]:
        return list(self._active)

    @property
    def poller(self) -> AsyncJobPoller:
        return self._poller

    @property
    def store(self) -> TransitionStore:
        return self._store

    async def recover(self, execution_id: str) -> Execution:
        """
        Rebuild an execution from the transition store and resume it.

        The context is rebuilt by replaying the segments recorded in the
        history, and the execution resumes at the last record's next state
        (re-registering with the poller when that is a wait state). A state
        that ran but was not recorded before a crash runs again.

        Args:
            execution_id: Execution to recover.

        Returns:
            The recovered execution.

        Raises:
            ExecutionNotFound: If the store has no such execution.
        """
        if execution_id in self._active or execution_id in self._archive:
            return self.get_execution(execution_id)

        record = await self._store.load(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)

        document = record.load_document()
        context = ExecutionContext().with_segment(DOCUMENT_SEGMENT, document.to_dict())
        for transition in record.history:
            if transition.segment is None:
                continue
            value = (
                transition.output_snapshot if transition.error is None else transition.error
            )
            context = context.with_segment(transition.segment, value)

        last = record.history[-1] if record.history else None
        execution = Execution(
            execution_id=execution_id,
            document=document,
            current_state=(last.next_state or last.state) if last else self.graph.start_at,
            context=context,
            status=record.status,
            history=list(record.history),
        )
        self._register(execution)

        if execution.is_terminal:
            await self._finish(execution, execution.status)
        elif last is not None and last.next_state is None:
            # Crashed between the final record and the status update
            await self._finish(execution, self._terminal_status_of(last))
        else:
            self._spawn_driver(execution_id)

        logger.info(
            f"Recovered execution {execution_id} at {execution.current_state} "
            f"({len(record.history)} transitions, status {execution.status.value})"
        )
        return execution

    async def close(self) -> None:
        """Stop driving executions and release the poller and store."""
        drivers = [task for task in self._drivers.values() if not task.done()]
        for task in drivers:
            task.cancel()
        if drivers:
            await asyncio.gather(*drivers, return_exceptions=True)
        await self._poller.close()
        await self._store.close()

    # Driving

    def _register(self, execution: Execution) -> None:
        self._active[execution.execution_id] = execution
        self._locks[execution.execution_id] = asyncio.Lock()
        self._done[execution.execution_id] = asyncio.Event()

    def _spawn_driver(
        self, execution_id: str, event: Optional[JobCompleted] = None
    ) -> None:
        task = asyncio.create_task(
            self._drive(execution_id, event), name=f"drive-{execution_id}"
        )
        self._drivers[execution_id] = task

        def _forget(finished: "asyncio.Task[None]") -> None:
            if self._drivers.get(execution_id) is finished:
                del self._drivers[execution_id]

        task.add_done_callback(_forget)

    async def _drive(self, execution_id: str, event: Optional[JobCompleted]) -> None:
        try:
            if event is not None:
                await self.advance(execution_id, event)
            while True:
                execution = self._active.get(execution_id)
                if execution is None or execution.is_terminal or execution.is_suspended:
                    return
                await self.advance(execution_id)
        except asyncio.CancelledError:
            logger.debug(f"Driver for execution {execution_id} cancelled")
            raise
        except Exception as e:
            await self._fail_unexpected(execution_id, e)

    def _continuation(
        self, execution_id: str
    ) -> Callable[[ClassificationJob], Awaitable[None]]:
        async def on_terminal(job: ClassificationJob) -> None:
            self._spawn_driver(execution_id, JobCompleted(job))

        return on_terminal

    async def _persist(
        self,
        execution: Execution,
        record: TransitionRecord,
        context: Optional[ExecutionContext] = None,
        next_state: Optional[str] = None,
    ) -> None:
        await self._store.append(execution.execution_id, record)
        execution.record_transition(record, context, next_state)

    async def _finish(self, execution: Execution, status: ExecutionStatus) -> None:
        execution.mark_terminal(status)
        await self._store.set_status(execution.execution_id, status)
        self._active.pop(execution.execution_id, None)
        self._archive[execution.execution_id] = execution
        self._release(execution.execution_id)
        logger.info(
            f"Execution {execution.execution_id} finished in "
            f"{execution.current_state} with status {status.value}"
        )

    def _release(self, execution_id: str) -> None:
        # Holders of the lock keep their own reference until they exit
        self._locks.pop(execution_id, None)
        done = self._done.pop(execution_id, None)
        if done is not None:
            done.set()

    def _terminal_status_of(self, record: TransitionRecord) -> ExecutionStatus:
        if record.state == CANCELLED_STATE:
            return ExecutionStatus.CANCELLED
        state = self.graph.states.get(record.state)
        if isinstance(state, TerminalState):
            return state.status
        if record.error is not None:
            return ExecutionStatus.FAILED
        return ExecutionStatus.SUCCEEDED

    async def _fail_unexpected(self, execution_id: str, error: Exception) -> None:
        execution = self._active.get(execution_id)
        log_error_with_context(
            error,
            logger,
            {
                "execution_id": execution_id,
                "state": execution.current_state if execution else "unknown",
            },
        )
        if execution is None or execution.is_terminal:
            return

        record = TransitionRecord(
            state=execution.current_state,
            entered_at=_utcnow(),
            input_snapshot=execution.context.snapshot(),
            error=tuple(describe_error_chain(error)),
        )
        try:
            await self._persist(execution, record)
            await self._finish(execution, ExecutionStatus.FAILED)
        except Exception:
            logger.exception(f"Could not persist failure of execution {execution_id}")
            execution.mark_terminal(ExecutionStatus.FAILED)
            self._active.pop(execution_id, None)
            self._archive[execution_id] = execution
            self._release(execution_id)

    # State runners

    async def _run_task(self, execution: Execution, state: TaskState) -> None:
        entered_at = _utcnow()
        input_snapshot = execution.context.snapshot()
        tracker = RetryTracker()
        attempts = 0

        while True:
            attempts += 1
            try:
                output = await state.handler(execution.context, execution.execution_id)
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                decision = self._policy.evaluate_retriers(e, state.retry, tracker)
                if not decision.retry:
                    if decision.exhausted:
                        logger.error(
                            f"Execution {execution.execution_id}: state {state.name} "
                            f"failed after {attempts} attempts"
                        )
                    await self._handle_error(
                        execution, state, e, entered_at, input_snapshot, attempts
                    )
                    return
                logger.warning(
                    f"Execution {execution.execution_id}: state {state.name} failed "
                    f"(attempt {attempts}), retrying in {decision.wait_seconds:.1f}s: "
                    f"[{error_kind(e)}] {e}"
                )
                await self._scheduler.sleep(decision.wait_seconds)

        context = execution.context
        if state.result_segment:
            try:
                context = context.with_segment(state.result_segment, output)
            except ContextConflictError as e:
                await self._handle_error(
                    execution, state, e, entered_at, input_snapshot, attempts
                )
                return

        record = TransitionRecord(
            state=state.name,
            entered_at=entered_at,
            input_snapshot=input_snapshot,
            output_snapshot=output,
            segment=state.result_segment,
            next_state=state.next_state,
        )
        await self._persist(execution, record, context, state.next_state)
        if state.end:
            await self._finish(execution, ExecutionStatus.SUCCEEDED)

    async def _run_choice(self, execution: Execution, state: ChoiceState) -> None:
        next_state = state.select_next(execution.context)
        record = TransitionRecord(
            state=state.name,
            entered_at=_utcnow(),
            input_snapshot=execution.context.snapshot(),
            output_snapshot={"next": next_state},
            next_state=next_state,
        )
        await self._persist(execution, record, next_state=next_state)
        logger.debug(f"Execution {execution.execution_id}: {state.name} -> {next_state}")

    async def _run_wait(self, execution: Execution, state: WaitForJobState) -> None:
        entered_at = _utcnow()
        input_snapshot = execution.context.snapshot()
        try:
            job_id = execution.context.select(state.job_id_path)
        except KeyError as e:
            await self._handle_error(execution, state, e, entered_at, input_snapshot, 1)
            return

        execution.mark_suspended(job_id)
        self._wait_entries[execution.execution_id] = (entered_at, input_snapshot)
        self._watches[execution.execution_id] = await self._poller.watch(
            job_id, self._continuation(execution.execution_id)
        )
        logger.info(
            f"Execution {execution.execution_id} suspended in {state.name} "
            f"waiting on job {job_id}"
        )

    async def _resume_wait(
        self, execution: Execution, state: WaitForJobState, job: ClassificationJob
    ) -> None:
        entered_at, input_snapshot = self._wait_entries.pop(
            execution.execution_id, (_utcnow(), execution.context.snapshot())
        )
        handle = self._watches.pop(execution.execution_id, None)
        if handle is not None:
            await self._poller.unwatch(handle)
        execution.mark_resumed()

        if job.status is JobStatus.FAILED:
            error = error_for_failed_job(job)
            error.execution_id = execution.execution_id
            await self._handle_error(execution, state, error, entered_at, input_snapshot, 1)
            return

        output = job.to_dict()
        record = TransitionRecord(
            state=state.name,
            entered_at=entered_at,
            input_snapshot=input_snapshot,
            output_snapshot=output,
            segment=state.result_segment,
            next_state=state.next_state,
        )
        context = execution.context.with_segment(state.result_segment, output)
        await self._persist(execution, record, context, state.next_state)
        logger.info(
            f"Execution {execution.execution_id} resumed: job {job.job_id} classified "
            f"as {job.document_type} (confidence {job.confidence})"
        )

    async def _run_terminal(self, execution: Execution, state: TerminalState) -> None:
        entered_at = _utcnow()
        output: Dict[str, Any] = {"status": state.status.value}
        if state.error:
            output["error"] = state.error
            output["cause"] = state.cause
        error = None

        if state.notify:
            message = self._review_message(execution)
            output["notification"] = {"topic": self.manual_review_topic, "message": message}
            if self._notifier is None:
                logger.warning(
                    f"Execution {execution.execution_id}: no notification service, "
                    f"manual review message not sent"
                )
                output["notification"]["sent"] = False
            else:
                try:
                    await self._notifier.publish(self.manual_review_topic, message)
                    output["notification"]["sent"] = True
                except Exception as e:
                    logger.error(
                        f"Execution {execution.execution_id}: manual review "
                        f"notification failed: {e}"
                    )
                    output["notification"]["sent"] = False
                    error = tuple(describe_error_chain(e))

        record = TransitionRecord(
            state=state.name,
            entered_at=entered_at,
            input_snapshot=execution.context.snapshot(),
            output_snapshot=output,
            error=error,
        )
        await self._persist(execution, record)
        await self._finish(execution, state.status)

    def _review_message(self, execution: Execution) -> Dict[str, Any]:
        reached_from = execution.history[-1].state if execution.history else None
        return {
            "execution_id": execution.execution_id,
            "document": execution.document.location,
            "state": reached_from,
            "reasons": manual_review_reasons(execution.context),
        }

    async def _handle_error(
        self,
        execution: Execution,
        state: Union[TaskState, WaitForJobState],
        error: BaseException,
        entered_at: datetime,
        input_snapshot: Mapping[str, Any],
        attempts: int,
    ) -> None:
        """Route an unrecovered error through the state's catch rules.

        A matching rule stores the error chain under its result segment and
        moves to its fallback state. Otherwise the error is wrapped in a
        TaskFailure and the execution fails with the full chain recorded.
        """
        rule = self._policy.match_catch(error, state.catch)
        if rule is not None:
            chain = tuple(describe_error_chain(error))
            context = execution.context
            if rule.result_segment:
                context = context.with_segment(rule.result_segment, chain)
            record = TransitionRecord(
                state=state.name,
                entered_at=entered_at,
                input_snapshot=input_snapshot,
                error=chain,
                segment=rule.result_segment,
                next_state=rule.next_state,
            )
            logger.warning(
                f"Execution {execution.execution_id}: [{error_kind(error)}] in "
                f"{state.name} caught, routing to {rule.next_state}"
            )
            await self._persist(execution, record, context, rule.next_state)
            return

        failure = error
        if not isinstance(error, TaskFailure):
            failure = TaskFailure(
                f"State {state.name} failed after {attempts} attempts: {error}",
                execution_id=execution.execution_id,
                state=state.name,
                attempts=attempts,
                original_error=error,
            )
        log_error_with_context(
            failure,
            logger,
            {
                "execution_id": execution.execution_id,
                "state": state.name,
                "attempts": attempts,
            },
        )
        record = TransitionRecord(
            state=state.name,
            entered_at=entered_at,
            input_snapshot=input_snapshot,
            error=tuple(describe_error_chain(failure)),
        )
        await self._persist(execution, record)
        await self._finish(execution, ExecutionStatus.FAILED)
