# src/document_workflow/orchestration/state_graph.py
"""Workflow definition compiler.

A workflow definition is a plain mapping (typically loaded from YAML or
built in code) with a ``start_at`` state name and a ``states`` table. It is
compiled once into an immutable graph of typed nodes:

    TaskState        invoke a bound task handler, store its output
    ChoiceState      ordered predicates over the context, mandatory default
    WaitForJobState  suspend until an async classification job finishes
    TerminalState    end the execution with a fixed status

Every transition edge is checked at compile time, and task resources are
bound to their handler objects, so executing the graph never looks anything
up by string.

Example definition:
    {
        "start_at": "Classify",
        "states": {
            "Classify": {"type": "task", "resource": "classify",
                         "result_segment": "classification_job",
                         "next": "Await"},
            "Await": {"type": "wait_for_job",
                      "job_id_path": "classification_job.job_id",
                      "result_segment": "classification", "next": "Route"},
            "Route": {"type": "choice",
                      "choices": [{"variable": "classification.document_type",
                                   "is_null": True, "next": "Failed"}],
                      "default": "Done"},
            "Failed": {"type": "terminal", "status": "failed"},
            "Done": {"type": "terminal", "status": "succeeded"},
        },
    }
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..models.context import ExecutionContext
from ..models.data_structures import ExecutionStatus
from ..utils.error_handlers import ConfigurationError
from .policy_engine import CatchPolicy, RetryPolicy

logger = logging.getLogger(__name__)

TaskHandler = Callable[[ExecutionContext, str], Awaitable[Any]]

_MISSING = object()


class ChoiceOperator(Enum):
    """Comparison applied by a choice rule to a context path."""

    IS_NULL = "is_null"
    IS_PRESENT = "is_present"
    NUMERIC_LESS_THAN = "numeric_less_than"
    NUMERIC_GREATER_THAN_EQUALS = "numeric_greater_than_equals"
    BOOLEAN_EQUALS = "boolean_equals"
    STRING_EQUALS = "string_equals"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class ChoiceRule:
    """One ordered predicate of a choice state.

    Attributes:
        variable: Dotted context path, first part is the segment name.
        operator: Comparison to apply.
        value: Operand. For is_null/is_present a boolean expectation.
        next_state: State to move to when the predicate holds.
    """

    variable: str
    operator: ChoiceOperator
    value: Any
    next_state: str

    def evaluate(self, context: ExecutionContext) -> bool:
        """Return True if the predicate holds for ``context``.

        A path that does not resolve counts as null; numeric comparisons
        against non-numeric values are False.
        """
        actual = context.select(self.variable, _MISSING)

        if self.operator is ChoiceOperator.IS_NULL:
            return (actual is _MISSING or actual is None) == bool(self.value)
        if self.operator is ChoiceOperator.IS_PRESENT:
            return (actual is not _MISSING) == bool(self.value)
        if self.operator is ChoiceOperator.NUMERIC_LESS_THAN:
            return _is_number(actual) and actual < self.value
        if self.operator is ChoiceOperator.NUMERIC_GREATER_THAN_EQUALS:
            return _is_number(actual) and actual >= self.value
        if self.operator is ChoiceOperator.BOOLEAN_EQUALS:
            return isinstance(actual, bool) and actual == self.value
        if self.operator is ChoiceOperator.STRING_EQUALS:
            return isinstance(actual, str) and actual == self.value
        return False


@dataclass(frozen=True)
class TaskState:
    """Invoke a task handler under retry/catch policies.

    Attributes:
        name: State name.
        resource: Resource name the handler was bound from.
        handler: Bound coroutine function ``(context, execution_id)``.
        result_segment: Context segment receiving the handler output.
        next_state: Following state, None when ``end`` is set.
        end: Whether a successful run ends the execution as Succeeded.
        retry: Ordered retry policies.
        catch: Catch rules consulted once retries are exhausted.
    """

    name: str
    resource: str
    handler: TaskHandler = field(compare=False, repr=False)
    result_segment: Optional[str] = None
    next_state: Optional[str] = None
    end: bool = False
    retry: Tuple[RetryPolicy, ...] = ()
    catch: CatchPolicy = field(default_factory=CatchPolicy)


@dataclass(frozen=True)
class ChoiceState:
    """Ordered predicates; the first match wins, else ``default``."""

    name: str
    rules: Tuple[ChoiceRule, ...]
    default: str

    def select_next(self, context: ExecutionContext) -> str:
        for rule in self.rules:
            if rule.evaluate(context):
                return rule.next_state
        return self.default


@dataclass(frozen=True)
class WaitForJobState:
    """Suspend until the job named at ``job_id_path`` reaches a terminal status.

    Attributes:
        name: State name.
        job_id_path: Context path holding the job id.
        result_segment: Segment receiving the terminal job snapshot.
        next_state: State following a successful job.
        catch: Catch rules for failed jobs (timeouts included).
    """

    name: str
    job_id_path: str
    result_segment: str
    next_state: str
    catch: CatchPolicy = field(default_factory=CatchPolicy)


@dataclass(frozen=True)
class TerminalState:
    """Absorbing state ending the execution.

    Attributes:
        name: State name.
        status: Execution status set on entry.
        error: Optional error name recorded for failed terminals.
        cause: Optional human-readable cause.
        notify: Whether entering the state publishes a manual review
            notification.
    """

    name: str
    status: ExecutionStatus
    error: Optional[str] = None
    cause: Optional[str] = None
    notify: bool = False


State = Union[TaskState, ChoiceState, WaitForJobState, TerminalState]


@dataclass(frozen=True)
class StateGraph:
    """Compiled, immutable workflow graph."""

    start_at: str
    states: Mapping[str, State]

    def __post_init__(self) -> None:
        object.__setattr__(self, "states", MappingProxyType(dict(self.states)))

    def __getitem__(self, name: str) -> State:
        return self.states[name]

    def __contains__(self, name: object) -> bool:
        return name in self.states

    @property
    def state_names(self) -> List[str]:
        return list(self.states)

    def successors(self, name: str) -> List[str]:
        """Return every state reachable in one transition from ``name``."""
        state = self.states[name]
        if isinstance(state, TaskState):
            targets = [state.next_state] if state.next_state else []
            return targets + [rule.next_state for rule in state.catch.rules]
        if isinstance(state, WaitForJobState):
            return [state.next_state] + [rule.next_state for rule in state.catch.rules]
        if isinstance(state, ChoiceState):
            return [rule.next_state for rule in state.rules] + [state.default]
        return []


_STATE_TYPES = ("task", "choice", "wait_for_job", "terminal")


def _check_segment_name(state_name: str, segment: Optional[str]) -> None:
    if segment is not None and (not segment or "." in segment):
        raise ConfigurationError(
            f"State {state_name}: invalid result segment name {segment!r}",
            config_key=state_name,
        )


def _compile_catch(state_name: str, node: Mapping[str, Any]) -> CatchPolicy:
    catch = CatchPolicy.from_list(node.get("catch") or ())
    for rule in catch.rules:
        _check_segment_name(state_name, rule.result_segment)
    return catch


def _compile_choice_rule(state_name: str, node: Mapping[str, Any]) -> ChoiceRule:
    operators = [op for op in ChoiceOperator if op.value in node]
    unknown = set(node) - {"variable", "next"} - {op.value for op in ChoiceOperator}
    if unknown:
        raise ConfigurationError(
            f"State {state_name}: unknown choice operator(s) {sorted(unknown)}",
            config_key=state_name,
        )
    if len(operators) != 1:
        raise ConfigurationError(
            f"State {state_name}: each choice rule needs exactly one operator",
            config_key=state_name,
        )
    if not node.get("variable") or not node.get("next"):
        raise ConfigurationError(
            f"State {state_name}: choice rules need a variable and a next state",
            config_key=state_name,
        )

    operator = operators[0]
    value = node[operator.value]
    if operator in (
        ChoiceOperator.NUMERIC_LESS_THAN,
        ChoiceOperator.NUMERIC_GREATER_THAN_EQUALS,
    ) and not _is_number(value):
        raise ConfigurationError(
            f"State {state_name}: {operator.value} needs a numeric operand",
            config_key=state_name,
        )
    return ChoiceRule(
        variable=node["variable"],
        operator=operator,
        value=value,
        next_state=node["next"],
    )


def _compile_state(
    name: str, node: Mapping[str, Any], resources: Mapping[str, TaskHandler]
) -> State:
    state_type = node.get("type")
    if state_type not in _STATE_TYPES:
        raise ConfigurationError(
            f"State {name}: unknown state type {state_type!r} "
            f"(expected one of {list(_STATE_TYPES)})",
            config_key=name,
        )
    if state_type != "task" and state_type != "wait_for_job" and node.get("catch"):
        raise ConfigurationError(
            f"State {name}: catch is only allowed on task and wait_for_job states",
            config_key=name,
        )

    if state_type == "task":
        resource = node.get("resource")
        if resource not in resources:
            raise ConfigurationError(
                f"State {name}: unknown task resource {resource!r}", config_key=name
            )
        end = bool(node.get("end", False))
        next_state = node.get("next")
        if end == bool(next_state):
            raise ConfigurationError(
                f"State {name}: task states need exactly one of next or end",
                config_key=name,
            )
        _check_segment_name(name, node.get("result_segment"))
        return TaskState(
            name=name,
            resource=resource,
            handler=resources[resource],
            result_segment=node.get("result_segment"),
            next_state=next_state,
            end=end,
            retry=tuple(RetryPolicy.from_dict(r) for r in node.get("retry") or ()),
            catch=_compile_catch(name, node),
        )

    if state_type == "choice":
        if not node.get("default"):
            raise ConfigurationError(
                f"State {name}: choice states require a default transition",
                config_key=name,
            )
        return ChoiceState(
            name=name,
            rules=tuple(_compile_choice_rule(name, r) for r in node.get("choices") or ()),
            default=node["default"],
        )

    if state_type == "wait_for_job":
        for key in ("job_id_path", "result_segment", "next"):
            if not node.get(key):
                raise ConfigurationError(
                    f"State {name}: wait_for_job states require {key}",
                    config_key=name,
                )
        _check_segment_name(name, node["result_segment"])
        return WaitForJobState(
            name=name,
            job_id_path=node["job_id_path"],
            result_segment=node["result_segment"],
            next_state=node["next"],
            catch=_compile_catch(name, node),
        )

    try:
        status = ExecutionStatus(node.get("status"))
    except ValueError as e:
        raise ConfigurationError(
            f"State {name}: unknown terminal status {node.get('status')!r}",
            config_key=name,
        ) from e
    if status is ExecutionStatus.RUNNING:
        raise ConfigurationError(
            f"State {name}: terminal status cannot be running", config_key=name
        )
    return TerminalState(
        name=name,
        status=status,
        error=node.get("error"),
        cause=node.get("cause"),
        notify=bool(node.get("notify", False)),
    )


def compile_state_graph(
    definition: Mapping[str, Any], resources: Mapping[str, TaskHandler]
) -> StateGraph:
    """Compile a workflow definition into an immutable StateGraph.

    Args:
        definition: Mapping with ``start_at`` and ``states``.
        resources: Task handlers by resource name.

    Returns:
        Compiled StateGraph.

    Raises:
        ConfigurationError: On an unknown state type or operator, a missing
            start state, a dangling transition, a choice without default, a
            task without next/end, an unknown resource, or a catch on a state
            kind that cannot raise.
    """
    raw_states = definition.get("states") or {}
    if not raw_states:
        raise ConfigurationError("Workflow definition has no states")

    start_at = definition.get("start_at")
    if start_at not in raw_states:
        raise ConfigurationError(
            f"start_at {start_at!r} is not a defined state", config_key="start_at"
        )

    states: Dict[str, State] = {
        name: _compile_state(name, node, resources) for name, node in raw_states.items()
    }
    graph = StateGraph(start_at=start_at, states=states)

    for name in states:
        for target in graph.successors(name):
            if target not in states:
                raise ConfigurationError(
                    f"State {name}: transition to undefined state {target!r}",
                    config_key=name,
                )

    reachable = {start_at}
    frontier = [start_at]
    while frontier:
        for target in graph.successors(frontier.pop()):
            if target not in reachable:
                reachable.add(target)
                frontier.append(target)
    unreachable = [name for name in states if name not in reachable]
    if unreachable:
        logger.warning(f"Workflow states unreachable from {start_at}: {unreachable}")

    logger.debug(f"Compiled workflow graph with {len(states)} states")
    return graph
