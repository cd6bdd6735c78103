"""Core data structures shared across the document workflow engine.

Documents, classification jobs, extraction results, validation outcomes and
transition records are immutable once created. Each offers ``to_dict`` /
``from_dict`` so it can travel through the execution context and the
transition store as plain JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .context import freeze, thaw
from ..utils.error_handlers import ClassificationError


class ExecutionStatus(Enum):
    """Lifecycle status of a workflow execution.

    Attributes:
        RUNNING: Execution is progressing or suspended on an async job.
        SUCCEEDED: Business action completed.
        FAILED: Unrecovered error or classification failure.
        CANCELLED: Cancelled by an external request.
        MANUAL_REVIEW: Routed to a human reviewer.
    """

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    MANUAL_REVIEW = "manual_review"

    @property
    def is_terminal(self) -> bool:
        """Whether the status ends the execution."""
        return self is not ExecutionStatus.RUNNING


class JobStatus(Enum):
    """Status of an asynchronous classification job."""

    SUBMITTED = "submitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether the job has finished."""
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


@dataclass(frozen=True)
class Document:
    """Reference to an uploaded document.

    Attributes:
        location: Storage location identifier (e.g. "s3://bucket/key.pdf").
        uploaded_at: Upload timestamp (UTC).
        metadata: Free-form metadata supplied by the trigger.
    """

    location: str
    uploaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.location or not self.location.strip():
            raise ValueError("Document location cannot be empty.")
        object.__setattr__(self, "metadata", freeze(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "uploaded_at": self.uploaded_at.isoformat(),
            "metadata": thaw(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Document":
        return cls(
            location=data["location"],
            uploaded_at=datetime.fromisoformat(data["uploaded_at"]),
            metadata=thaw(data.get("metadata", {})),
        )


@dataclass(frozen=True)
class ClassificationJob:
    """Snapshot of an asynchronous classification job.

    Attributes:
        job_id: Job identifier returned by the classification service.
        status: Current job status.
        document_type: Detected document type, None if unknown.
        confidence: Classifier confidence in [0.0, 1.0], None until known.
        error: Failure reason for failed jobs.
        error_kind: Error kind for failed jobs (e.g. "TimeoutError").
    """

    job_id: str
    status: JobStatus
    document_type: Optional[str] = None
    confidence: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def __post_init__(self) -> None:
        """Reject confidence values outside [0, 1].

        Raises:
            ClassificationError: If confidence is out of range.
        """
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ClassificationError(
                f"Confidence must be in [0.0, 1.0], got {self.confidence}",
                job_id=self.job_id,
            )

    @classmethod
    def from_status(cls, job_id: str, payload: Mapping[str, Any]) -> "ClassificationJob":
        """Build a job from a classification service status payload.

        Args:
            job_id: Job identifier.
            payload: Mapping with ``status`` and optional ``document_type``,
                ``confidence`` and ``error`` keys.

        Raises:
            ClassificationError: If status is unknown or confidence invalid.
        """
        try:
            status = JobStatus(str(payload["status"]).lower())
        except (KeyError, ValueError) as e:
            raise ClassificationError(
                f"Unusable job status payload: {dict(payload)}",
                job_id=job_id,
                original_error=e,
            ) from e

        confidence = payload.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else None
        except (TypeError, ValueError) as e:
            raise ClassificationError(
                f"Non-numeric confidence for job {job_id}: {confidence!r}",
                job_id=job_id,
                original_error=e,
            ) from e

        return cls(
            job_id=job_id,
            status=status,
            document_type=payload.get("document_type") or None,
            confidence=confidence,
            error=payload.get("error"),
            error_kind="ClassificationError" if status is JobStatus.FAILED else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "document_type": self.document_type,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class InconsistencyFlag:
    """Mismatch between a provider-reported and a recomputed derived field.

    Attributes:
        field: Field path (e.g. "line_items.1.amount" or "subtotal").
        reported: Value the provider returned.
        recomputed: Value recomputed from the inputs, None if the inputs
            were missing or not numeric.
        difference: Absolute difference between the two, None when it
            could not be computed.
    """

    field: str
    reported: Any
    recomputed: Optional[float]
    difference: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "reported": self.reported,
            "recomputed": self.recomputed,
            "difference": self.difference,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InconsistencyFlag":
        return cls(
            field=data["field"],
            reported=data.get("reported"),
            recomputed=data.get("recomputed"),
            difference=data.get("difference"),
        )


@dataclass(frozen=True)
class ExtractionResult:
    """Structured data extracted from a document.

    Attributes:
        document_type: Template the result was extracted with.
        fields: Ordered mapping of extracted (and recomputed) fields.
        provider: Name of the provider that produced the result.
        derived_fields: Names of fields recomputed rather than trusted.
        inconsistencies: Mismatches found while recomputing.
    """

    document_type: str
    fields: Mapping[str, Any]
    provider: str
    derived_fields: Tuple[str, ...] = ()
    inconsistencies: Tuple[InconsistencyFlag, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", freeze(self.fields))
        object.__setattr__(self, "derived_fields", tuple(self.derived_fields))
        object.__setattr__(self, "inconsistencies", tuple(self.inconsistencies))

    @property
    def is_consistent(self) -> bool:
        return not self.inconsistencies

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_type": self.document_type,
            "fields": thaw(self.fields),
            "provider": self.provider,
            "derived_fields": list(self.derived_fields),
            "inconsistencies": [flag.to_dict() for flag in self.inconsistencies],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExtractionResult":
        return cls(
            document_type=data["document_type"],
            fields=thaw(data["fields"]),
            provider=data["provider"],
            derived_fields=tuple(data.get("derived_fields", ())),
            inconsistencies=tuple(
                InconsistencyFlag.from_dict(flag)
                for flag in data.get("inconsistencies", ())
            ),
        )


class Severity(Enum):
    """Validation issue severity levels."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class IssueType(Enum):
    """Specific validation issue types."""

    MISSING_FIELD = "MISSING_FIELD"
    INCONSISTENT_DERIVED_FIELD = "INCONSISTENT_DERIVED_FIELD"
    AGGREGATE_MISMATCH = "AGGREGATE_MISMATCH"
    NON_NUMERIC_VALUE = "NON_NUMERIC_VALUE"
    UNKNOWN_DOCUMENT_TYPE = "UNKNOWN_DOCUMENT_TYPE"


@dataclass(frozen=True)
class ValidationIssue:
    """A single validation failure reason."""

    issue_type: IssueType
    severity: Severity
    message: str
    field: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_type": self.issue_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "field": self.field,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ValidationIssue":
        return cls(
            issue_type=IssueType(data["issue_type"]),
            severity=Severity(data["severity"]),
            message=data["message"],
            field=data.get("field"),
        )


@dataclass(frozen=True)
class ValidationOutcome:
    """Pass/fail flag plus the concrete reasons for a failure."""

    passed: bool
    reasons: Tuple[ValidationIssue, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "reasons", tuple(self.reasons))
        if not self.passed and not self.reasons:
            raise ValueError("A failing validation outcome must carry reasons.")

    @property
    def messages(self) -> List[str]:
        return [reason.message for reason in self.reasons]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "reasons": [reason.to_dict() for reason in self.reasons],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ValidationOutcome":
        return cls(
            passed=bool(data["passed"]),
            reasons=tuple(ValidationIssue.from_dict(r) for r in data.get("reasons", ())),
        )


@dataclass(frozen=True)
class TransitionRecord:
    """Append-only audit entry for one state transition.

    Attributes:
        state: Name of the state that was executed.
        entered_at: When the state was entered (UTC).
        input_snapshot: Context segments visible to the state.
        output_snapshot: Output the state produced, if any.
        error: Serialised error cause chain, if the state failed.
        segment: Context segment the output was written to, if any.
        next_state: State the execution moved to, None when terminal.
    """

    state: str
    entered_at: datetime
    input_snapshot: Mapping[str, Any]
    output_snapshot: Optional[Any] = None
    error: Optional[Tuple[Mapping[str, Any], ...]] = None
    segment: Optional[str] = None
    next_state: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "input_snapshot", freeze(self.input_snapshot))
        object.__setattr__(self, "output_snapshot", freeze(self.output_snapshot))
        if self.error is not None:
            object.__setattr__(self, "error", freeze(self.error))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "entered_at": self.entered_at.isoformat(),
            "input_snapshot": thaw(self.input_snapshot),
            "output_snapshot": thaw(self.output_snapshot),
            "error": thaw(self.error) if self.error is not None else None,
            "segment": self.segment,
            "next_state": self.next_state,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransitionRecord":
        return cls(
            state=data["state"],
            entered_at=datetime.fromisoformat(data["entered_at"]),
            input_snapshot=data.get("input_snapshot") or {},
            output_snapshot=data.get("output_snapshot"),
            error=data.get("error"),
            segment=data.get("segment"),
            next_state=data.get("next_state"),
        )


@dataclass(frozen=True)
class ExecutionRecord:
    """Persisted view of an execution: identity, status and audit trail.

    Attributes:
        execution_id: Execution identifier.
        document_ref: Location of the processed document.
        status: Last persisted status.
        history: Transition records in append order.
        document: Full serialised Document, used to resume an execution.
    """

    execution_id: str
    document_ref: str
    status: ExecutionStatus
    history: Tuple[TransitionRecord, ...] = ()
    document: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "history", tuple(self.history))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "document_ref": self.document_ref,
            "status": self.status.value,
            "history": [record.to_dict() for record in self.history],
        }

    def load_document(self) -> Document:
        """Rebuild the Document, falling back to its reference alone."""
        if self.document:
            return Document.from_dict(self.document)
        return Document(location=self.document_ref)


@dataclass(frozen=True)
class JobCompleted:
    """Event resuming an execution suspended on a classification job."""

    job: ClassificationJob
