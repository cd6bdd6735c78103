"""Execution state management for the document workflow.

This module provides the Execution dataclass tracking one workflow run: the
state it is in, its accumulated context, its status and the transition
records written so far. Only the WorkflowCoordinator mutates an Execution.

Typical usage example:
    execution = Execution(execution_id="EXE-1", document=document,
                          current_state="Classify")
    execution.record_transition(record, context)
    execution.mark_terminal(ExecutionStatus.SUCCEEDED)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..models.context import ExecutionContext
from ..models.data_structures import Document, ExecutionStatus, TransitionRecord


@dataclass
class Execution:
    """Mutable view of a single workflow run.

    Attributes:
        execution_id: Unique identifier (e.g. "EXE-20261018-143022-a1b2c3d4").
        document: The document being processed.
        current_state: Name of the state to run next, or the terminal state
            the execution ended in.
        context: Immutable context of named segments; replaced, never
            mutated, on each transition.
        status: Current execution status.
        waiting_on_job: Classification job id while suspended in a
            wait state.
        history: Transition records in append order.
        created_at: Creation timestamp (UTC).
        updated_at: Last change timestamp (UTC).
    """

    execution_id: str
    document: Document
    current_state: str
    context: ExecutionContext = field(default_factory=ExecutionContext)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    waiting_on_job: Optional[str] = None
    history: List[TransitionRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        """Validate initial state.

        Raises:
            ValueError: If execution_id is empty.
        """
        if not self.execution_id or not self.execution_id.strip():
            raise ValueError("execution_id cannot be empty.")

    def __repr__(self) -> str:
        return (
            f"Execution(execution_id='{self.execution_id}', "
            f"state={self.current_state}, status={self.status.value})"
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_suspended(self) -> bool:
        """Whether the execution is waiting for an async job."""
        return self.waiting_on_job is not None

    def _touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)

    def record_transition(
        self,
        record: TransitionRecord,
        context: Optional[ExecutionContext] = None,
        next_state: Optional[str] = None,
    ) -> None:
        """Apply a persisted transition.

        Args:
            record: The record already written to the transition store.
            context: New context, if the transition wrote a segment.
            next_state: State to run next, if any.
        """
        self.history.append(record)
        if context is not None:
            self.context = context
        if next_state is not None:
            self.current_state = next_state
        self._touch()

    def mark_suspended(self, job_id: str) -> None:
        """Mark the execution as waiting on ``job_id``."""
        self.waiting_on_job = job_id
        self._touch()

    def mark_resumed(self) -> None:
        self.waiting_on_job = None
        self._touch()

    def mark_terminal(self, status: ExecutionStatus) -> None:
        """Set a terminal status.

        Raises:
            ValueError: If ``status`` is RUNNING.
        """
        if not status.is_terminal:
            raise ValueError(f"Not a terminal status: {status.value}")
        self.status = status
        self.waiting_on_job = None
        self._touch()

    @property
    def transitions(self) -> Tuple[TransitionRecord, ...]:
        return tuple(self.history)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted execution record shape.

        Returns:
            Dictionary with execution_id, document_ref, status, current
            state, context and history.
        """
        return {
            "execution_id": self.execution_id,
            "document_ref": self.document.location,
            "status": self.status.value,
            "current_state": self.current_state,
            "waiting_on_job": self.waiting_on_job,
            "context": self.context.to_dict(),
            "history": [record.to_dict() for record in self.history],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
