"""
Orchestration module for the document workflow engine.
"""

from .definitions import definition_from_config, document_workflow_definition
from .job_poller import AsyncJobPoller, PollerConfig, WatchHandle
from .policy_engine import (
    CatchPolicy,
    CatchRule,
    PolicyEngine,
    RetryDecision,
    RetryPolicy,
    RetryTracker,
    backoff_delay,
)
from .scheduler import AsyncioScheduler, Scheduler
from .state_graph import (
    ChoiceOperator,
    ChoiceRule,
    ChoiceState,
    StateGraph,
    TaskState,
    TerminalState,
    WaitForJobState,
    compile_state_graph,
)
from .workflow_coordinator import WorkflowCoordinator
from .workflow_state import Execution


__all__ = [
    # Workflow Coordinator
    "WorkflowCoordinator",
    "Execution",
    # Definitions
    "document_workflow_definition",
    "definition_from_config",
    # State Graph
    "compile_state_graph",
    "StateGraph",
    "TaskState",
    "ChoiceState",
    "ChoiceRule",
    "ChoiceOperator",
    "WaitForJobState",
    "TerminalState",
    # Job Poller
    "AsyncJobPoller",
    "PollerConfig",
    "WatchHandle",
    # Policy Engine
    "PolicyEngine",
    "RetryPolicy",
    "RetryDecision",
    "RetryTracker",
    "CatchPolicy",
    "CatchRule",
    "backoff_delay",
    # Scheduler
    "Scheduler",
    "AsyncioScheduler",
]
