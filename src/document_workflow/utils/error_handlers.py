"""
Error handling utilities for the Document Workflow engine.

This module provides the error taxonomy used by the coordinator, the policy
engine and the external collaborator adapters, plus helpers to log errors
and turn them into serialisable cause chains for the audit trail.

Every workflow error exposes a ``kind`` string. Retry and catch matchers
compare against that string, so a ``PollingTimeoutError`` matches the
``"TimeoutError"`` matcher and a foreign exception such as ``ConnectionError``
matches its own class name.

Classes:
    WorkflowError: Base exception for all workflow errors.
    ClassificationError: Null or unusable classification result.
    PollingTimeoutError: Classification job polling budget exceeded.
    UnsupportedDocumentType: No extraction template registered for a type.
    ExtractionFailed: Extraction provider chain exhausted.
    ValidationFailed: Extraction result failed validation.
    TaskFailure: Generic task failure after retries are exhausted.
    ConfigurationError: Invalid configuration or workflow definition.
    ContextConflictError: Attempt to overwrite an existing context segment.
    PersistenceError: Transition store operation failed.
    ExecutionNotFound: Unknown execution identifier.

Functions:
    error_kind: Resolve the matcher kind of any exception.
    describe_error_chain: Serialise an error and its causes.
    log_error_with_context: Log error with full context for debugging.
"""

import logging
import traceback
from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """
    Base exception for document workflow errors.

    Attributes:
        message: Error message describing what went wrong.
        execution_id: Optional identifier of the execution being driven.
        state: Optional workflow state where the error occurred.
        recoverable: Whether the error is expected to clear on retry.
        original_error: Optional underlying exception that was wrapped.
    """

    kind: str = "WorkflowError"

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        state: Optional[str] = None,
        recoverable: bool = False,
        original_error: Optional[BaseException] = None,
    ):
        """
        Initialize WorkflowError.

        Args:
            message: Error message describing the issue.
            execution_id: Optional execution identifier.
            state: Optional workflow state name.
            recoverable: Whether error can be recovered with retry.
            original_error: Optional underlying exception that caused this error.
        """
        self.message = message
        self.execution_id = execution_id
        self.state = state
        self.recoverable = recoverable
        self.original_error = original_error
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for logging and storage.

        Returns:
            Dictionary containing error_type, kind, message, execution_id,
            state, recoverable status, and original error information if
            available.
        """
        result = {
            "error_type": self.__class__.__name__,
            "kind": self.kind,
            "message": self.message,
            "execution_id": self.execution_id,
            "state": self.state,
            "recoverable": self.recoverable,
        }

        if self.original_error:
            result["original_error_type"] = type(self.original_error).__name__
            result["original_error_message"] = str(self.original_error)

        return result


class ClassificationError(WorkflowError):
    """
    Exception for null or unusable classification results.

    Attributes:
        job_id: Optional classification job identifier.
    """

    kind = "ClassificationError"

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message=message,
            execution_id=execution_id,
            state="classification",
            recoverable=False,
            original_error=original_error,
        )
        self.job_id = job_id

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["job_id"] = self.job_id
        return result


class PollingTimeoutError(WorkflowError):
    """
    Exception for a classification job that exceeded its polling budget.

    Matched by the ``"TimeoutError"`` error kind.

    Attributes:
        job_id: Classification job identifier.
        elapsed_seconds: Time spent polling before giving up.
        timeout_seconds: Configured polling budget.
    """

    kind = "TimeoutError"

    def __init__(
        self,
        message: str,
        job_id: str,
        elapsed_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        execution_id: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            execution_id=execution_id,
            state="classification",
            recoverable=False,
        )
        self.job_id = job_id
        self.elapsed_seconds = elapsed_seconds
        self.timeout_seconds = timeout_seconds

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["job_id"] = self.job_id
        result["elapsed_seconds"] = self.elapsed_seconds
        result["timeout_seconds"] = self.timeout_seconds
        return result


class UnsupportedDocumentType(WorkflowError):
    """
    Exception raised when no extraction template exists for a document type.

    Attributes:
        document_type: The document type that has no template.
    """

    kind = "UnsupportedDocumentType"

    def __init__(
        self,
        message: str,
        document_type: Optional[str] = None,
        execution_id: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            execution_id=execution_id,
            state="extraction",
            recoverable=False,
        )
        self.document_type = document_type

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["document_type"] = self.document_type
        return result


class ExtractionFailed(WorkflowError):
    """
    Exception raised when every extraction provider failed.

    Attributes:
        document_type: Document type being extracted.
        provider_errors: Mapping of provider name to failure reason, in the
            order the providers were tried.
    """

    kind = "ExtractionFailed"

    def __init__(
        self,
        message: str,
        document_type: Optional[str] = None,
        provider_errors: Optional[Dict[str, str]] = None,
        execution_id: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message=message,
            execution_id=execution_id,
            state="extraction",
            recoverable=True,  # Providers are often transiently unavailable
            original_error=original_error,
        )
        self.document_type = document_type
        self.provider_errors = dict(provider_errors or {})

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["document_type"] = self.document_type
        result["provider_errors"] = dict(self.provider_errors)
        return result


class ValidationFailed(WorkflowError):
    """
    Exception for extraction results that did not pass validation.

    Attributes:
        reasons: Human-readable validation failure reasons.
    """

    kind = "ValidationFailed"

    def __init__(
        self,
        message: str,
        reasons: Optional[List[str]] = None,
        execution_id: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            execution_id=execution_id,
            state="validation",
            recoverable=False,
        )
        self.reasons = list(reasons or [])

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["reasons"] = list(self.reasons)
        return result


class TaskFailure(WorkflowError):
    """
    Generic failure of a task whose retries are exhausted.

    Attributes:
        attempts: Number of invocations made before giving up.
    """

    kind = "TaskFailure"

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        state: Optional[str] = None,
        attempts: int = 0,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message=message,
            execution_id=execution_id,
            state=state,
            recoverable=False,
            original_error=original_error,
        )
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["attempts"] = self.attempts
        return result


class ConfigurationError(WorkflowError):
    """
    Exception for configuration and workflow definition errors.

    Attributes:
        config_key: Optional configuration key or state name at fault.
    """

    kind = "ConfigurationError"

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message=message,
            state="initialization",
            recoverable=False,  # Config errors not recoverable without fix
            original_error=original_error,
        )
        self.config_key = config_key

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["config_key"] = self.config_key
        return result


class ContextConflictError(WorkflowError):
    """Exception raised when a stage tries to overwrite an existing segment."""

    kind = "ContextConflictError"

    def __init__(self, message: str, segment: str):
        super().__init__(message=message, recoverable=False)
        self.segment = segment

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["segment"] = self.segment
        return result


class PersistenceError(WorkflowError):
    """
    Exception for transition store failures.

    Attributes:
        operation: Optional store operation that failed.
    """

    kind = "PersistenceError"

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        operation: Optional[str] = None,
        recoverable: bool = True,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message=message,
            execution_id=execution_id,
            state="persistence",
            recoverable=recoverable,
            original_error=original_error,
        )
        self.operation = operation

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["operation"] = self.operation
        return result


class ExecutionNotFound(WorkflowError):
    """Exception raised for an unknown execution identifier."""

    kind = "ExecutionNotFound"

    def __init__(self, execution_id: str):
        super().__init__(
            message=f"Execution not found: {execution_id}",
            execution_id=execution_id,
        )


def error_kind(error: BaseException) -> str:
    """
    Resolve the error kind used by retry and catch matchers.

    Args:
        error: Any exception.

    Returns:
        The ``kind`` of a WorkflowError, otherwise the exception class name.

    Example:
        >>> error_kind(PollingTimeoutError("late", "job-1", 61.0, 60.0))
        'TimeoutError'
        >>> error_kind(ConnectionError("reset"))
        'ConnectionError'
    """
    if isinstance(error, WorkflowError):
        return error.kind
    return type(error).__name__


def describe_error_chain(error: BaseException) -> List[Dict[str, Any]]:
    """
    Serialise an error and every error that caused it.

    Follows ``original_error``, ``__cause__`` and ``__context__`` links in
    that order of preference, stopping on cycles.

    Args:
        error: The outermost exception.

    Returns:
        List of dictionaries, outermost first, each with ``kind``,
        ``error_type`` and ``message`` (plus ``details`` for WorkflowError
        instances).
    """
    chain: List[Dict[str, Any]] = []
    seen = set()
    current: Optional[BaseException] = error

    while current is not None and id(current) not in seen:
        seen.add(id(current))
        entry: Dict[str, Any] = {
            "kind": error_kind(current),
            "error_type": type(current).__name__,
            "message": str(current),
        }
        if isinstance(current, WorkflowError):
            entry["details"] = current.to_dict()
        chain.append(entry)

        if isinstance(current, WorkflowError) and current.original_error:
            current = current.original_error
        elif current.__cause__ is not None:
            current = current.__cause__
        else:
            current = current.__context__

    return chain


def log_error_with_context(
    error: BaseException, logger: logging.Logger, context: Dict[str, Any]
) -> None:
    """
    Log error with comprehensive context information for debugging.

    Logs error details including kind, message, every cause in the chain
    and all contextual information. In DEBUG mode, also logs the full
    stack trace.

    Args:
        error: The exception that occurred.
        logger: Logger instance to use for logging.
        context: Dictionary with contextual information (execution_id,
            state, etc.).
    """
    execution_id = context.get("execution_id", "unknown")
    state = context.get("state", "unknown")

    logger.error(
        f"Error in {state} for execution {execution_id}: "
        f"[{error_kind(error)}] {error}"
    )

    for cause in describe_error_chain(error)[1:]:
        logger.error(f"  Caused by: [{cause['kind']}] {cause['message']}")

    for key, value in context.items():
        if key not in ["execution_id", "state"]:
            logger.error(f"  {key}: {value}")

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("Stack trace:")
        logger.debug(
            "".join(traceback.format_exception(type(error), error, error.__traceback__))
        )
