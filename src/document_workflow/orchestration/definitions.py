"""The document processing workflow definition.

Builds the fixed state graph:

    Classify -> AwaitClassification -> CheckClassification
        CheckClassification: document type absent     -> ClassificationFailed
                             confidence < threshold   -> ManualReview
                             confidence absent        -> ManualReview
                             otherwise                -> TransformForExtraction
    TransformForExtraction -> Extract -> Validate -> RouteValidation
        RouteValidation: validation passed -> ProcessAction (end, Succeeded)
                         otherwise         -> ManualReview

Errors are only caught at Task and Wait states; Choice states only see data
written by successful states.
"""

from typing import Any, Dict, List, Mapping, Optional

from ..models.data_structures import ExecutionStatus
from ..utils.config_loader import WorkflowConfig
from .tasks import (
    ACTION_SEGMENT,
    CLASSIFICATION_JOB_SEGMENT,
    CLASSIFICATION_SEGMENT,
    EXTRACTION_REQUEST_SEGMENT,
    EXTRACTION_SEGMENT,
    VALIDATION_SEGMENT,
)

# Task resource names
SUBMIT_CLASSIFICATION = "classification.submit"
TRANSFORM_FOR_EXTRACTION = "extraction.transform"
EXTRACT = "extraction.extract"
VALIDATE = "validation.validate"
PROCESS_ACTION = "action.process"

MANUAL_REVIEW = "ManualReview"
CLASSIFICATION_FAILED = "ClassificationFailed"

DEFAULT_CONFIDENCE_THRESHOLD = 0.7


def _retry(retry_section: Mapping[str, Any], state_name: str) -> List[Dict[str, Any]]:
    policy = retry_section.get(state_name)
    if not policy:
        return []
    return [dict(policy)] if isinstance(policy, Mapping) else [dict(p) for p in policy]


def document_workflow_definition(
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    retry: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Return the document workflow definition.

    Args:
        confidence_threshold: Classifications below this confidence go to
            manual review.
        retry: Retry policy mappings keyed by task state name (the ``retry``
            configuration section). Each value is one policy mapping or a
            list of them.

    Returns:
        Definition mapping accepted by ``compile_state_graph``.
    """
    retry = retry or {}
    return {
        "start_at": "Classify",
        "states": {
            "Classify": {
                "type": "task",
                "resource": SUBMIT_CLASSIFICATION,
                "result_segment": CLASSIFICATION_JOB_SEGMENT,
                "retry": _retry(retry, "Classify"),
                "next": "AwaitClassification",
            },
            "AwaitClassification": {
                "type": "wait_for_job",
                "job_id_path": f"{CLASSIFICATION_JOB_SEGMENT}.job_id",
                "result_segment": CLASSIFICATION_SEGMENT,
                "next": "CheckClassification",
                "catch": [
                    {
                        "error_equals": [
                            "TimeoutError",
                            "ClassificationError",
                            "TaskFailure",
                        ],
                        "next": CLASSIFICATION_FAILED,
                        "result_segment": "classification_error",
                    }
                ],
            },
            "CheckClassification": {
                "type": "choice",
                "choices": [
                    {
                        "variable": f"{CLASSIFICATION_SEGMENT}.document_type",
                        "is_null": True,
                        "next": CLASSIFICATION_FAILED,
                    },
                    {
                        "variable": f"{CLASSIFICATION_SEGMENT}.confidence",
                        "numeric_less_than": confidence_threshold,
                        "next": MANUAL_REVIEW,
                    },
                    {
                        "variable": f"{CLASSIFICATION_SEGMENT}.confidence",
                        "is_null": True,
                        "next": MANUAL_REVIEW,
                    },
                ],
                "default": "TransformForExtraction",
            },
            "TransformForExtraction": {
                "type": "task",
                "resource": TRANSFORM_FOR_EXTRACTION,
                "result_segment": EXTRACTION_REQUEST_SEGMENT,
                "next": "Extract",
                "catch": [
                    {
                        "error_equals": ["UnsupportedDocumentType", "ClassificationError"],
                        "next": MANUAL_REVIEW,
                        "result_segment": "extraction_error",
                    }
                ],
            },
            "Extract": {
                "type": "task",
                "resource": EXTRACT,
                "result_segment": EXTRACTION_SEGMENT,
                "retry": _retry(retry, "Extract"),
                "next": "Validate",
                "catch": [
                    {
                        "error_equals": ["ExtractionFailed", "UnsupportedDocumentType"],
                        "next": MANUAL_REVIEW,
                        "result_segment": "extraction_error",
                    }
                ],
            },
            "Validate": {
                "type": "task",
                "resource": VALIDATE,
                "result_segment": VALIDATION_SEGMENT,
                "next": "RouteValidation",
            },
            "RouteValidation": {
                "type": "choice",
                "choices": [
                    {
                        "variable": f"{VALIDATION_SEGMENT}.passed",
                        "boolean_equals": True,
                        "next": "ProcessAction",
                    }
                ],
                "default": MANUAL_REVIEW,
            },
            "ProcessAction": {
                "type": "task",
                "resource": PROCESS_ACTION,
                "result_segment": ACTION_SEGMENT,
                "retry": _retry(retry, "ProcessAction"),
                "end": True,
                "catch": [
                    {
                        "error_equals": ["ValidationFailed"],
                        "next": MANUAL_REVIEW,
                        "result_segment": "action_error",
                    }
                ],
            },
            MANUAL_REVIEW: {
                "type": "terminal",
                "status": ExecutionStatus.MANUAL_REVIEW.value,
                "notify": True,
            },
            CLASSIFICATION_FAILED: {
                "type": "terminal",
                "status": ExecutionStatus.FAILED.value,
                "error": "ClassificationError",
                "cause": "Document could not be classified",
            },
        },
    }


def definition_from_config(config: WorkflowConfig) -> Dict[str, Any]:
    """Build the workflow definition from loaded configuration."""
    return document_workflow_definition(
        confidence_threshold=float(
            config.classification.get("confidence_threshold", DEFAULT_CONFIDENCE_THRESHOLD)
        ),
        retry=config.retry,
    )
