"""Data models for the document workflow engine."""

from .context import ExecutionContext, freeze, thaw
from .data_structures import (
    ClassificationJob,
    Document,
    ExecutionRecord,
    ExecutionStatus,
    ExtractionResult,
    InconsistencyFlag,
    IssueType,
    JobCompleted,
    JobStatus,
    Severity,
    TransitionRecord,
    ValidationIssue,
    ValidationOutcome,
)

__all__ = [
    "ExecutionContext",
    "freeze",
    "thaw",
    "ClassificationJob",
    "Document",
    "ExecutionRecord",
    "ExecutionStatus",
    "ExtractionResult",
    "InconsistencyFlag",
    "IssueType",
    "JobCompleted",
    "JobStatus",
    "Severity",
    "TransitionRecord",
    "ValidationIssue",
    "ValidationOutcome",
]
