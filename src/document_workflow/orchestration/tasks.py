"""Task handlers bound to the task states of the document workflow.

Each handler is an async callable ``(context, execution_id) -> output``. It
reads the segments it needs from the immutable context and returns a plain,
JSON-serialisable output that the coordinator stores under the state's
result segment. Handlers raise workflow errors; retrying and catching is the
coordinator's job.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from ..extraction.extraction_orchestrator import ExtractionOrchestrator
from ..extraction.templates import TemplateRegistry
from ..models.context import ExecutionContext, thaw
from ..models.data_structures import Document, ExtractionResult, ValidationOutcome
from ..services.interfaces import ActionHandler, ClassificationService
from ..utils.error_handlers import (
    ClassificationError,
    UnsupportedDocumentType,
    ValidationFailed,
)
from ..validation.data_validator import DataValidator

logger = logging.getLogger(__name__)

# Segment names shared by the handlers and the workflow definition
DOCUMENT_SEGMENT = "document"
CLASSIFICATION_JOB_SEGMENT = "classification_job"
CLASSIFICATION_SEGMENT = "classification"
EXTRACTION_REQUEST_SEGMENT = "extraction_request"
EXTRACTION_SEGMENT = "extraction"
VALIDATION_SEGMENT = "validation"
ACTION_SEGMENT = "action"


def document_from_context(context: ExecutionContext) -> Document:
    """Rebuild the Document seeded under the ``document`` segment."""
    return Document.from_dict(thaw(context.segment(DOCUMENT_SEGMENT)))


class SubmitClassificationTask:
    """Submit the document to the classification service."""

    def __init__(self, service: ClassificationService) -> None:
        self.service = service

    async def __call__(
        self, context: ExecutionContext, execution_id: str
    ) -> Dict[str, Any]:
        document = document_from_context(context)
        job_id = await self.service.submit(document)
        if not job_id:
            raise ClassificationError(
                "Classification service returned an empty job id",
                execution_id=execution_id,
            )
        logger.info(f"Execution {execution_id}: submitted classification job {job_id}")
        return {"job_id": job_id}


class TransformForExtractionTask:
    """Map the classifier's label onto an extraction template name.

    Attributes:
        templates: Registered extraction templates.
        type_aliases: Classifier label to template name mapping.
    """

    def __init__(
        self,
        templates: TemplateRegistry,
        type_aliases: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.templates = templates
        self.type_aliases = dict(type_aliases or {})

    def resolve(self, label: str) -> str:
        """Return the template name for a classifier label.

        Labels are matched through the alias table first, then as-is, then
        lower-cased.

        Raises:
            UnsupportedDocumentType: If no template matches.
        """
        for candidate in (self.type_aliases.get(label), label, label.lower()):
            if candidate and candidate in self.templates:
                return candidate
        raise UnsupportedDocumentType(
            f"No extraction template for classified type '{label}'",
            document_type=label,
        )

    async def __call__(
        self, context: ExecutionContext, execution_id: str
    ) -> Dict[str, Any]:
        label = context.select(f"{CLASSIFICATION_SEGMENT}.document_type", None)
        if not label:
            raise ClassificationError(
                "No classified document type to extract", execution_id=execution_id
            )
        document_type = self.resolve(label)
        return {
            "document_type": document_type,
            "classified_as": label,
            "confidence": context.select(f"{CLASSIFICATION_SEGMENT}.confidence", None),
        }


class ExtractTask:
    """Run the extraction provider chain for the resolved document type."""

    def __init__(self, orchestrator: ExtractionOrchestrator) -> None:
        self.orchestrator = orchestrator

    async def __call__(
        self, context: ExecutionContext, execution_id: str
    ) -> Dict[str, Any]:
        document = document_from_context(context)
        document_type = context.select(f"{EXTRACTION_REQUEST_SEGMENT}.document_type")
        result = await self.orchestrator.extract(document, document_type)
        return result.to_dict()


class ValidateTask:
    """Validate the extraction result; a failing outcome is data, not an error."""

    def __init__(self, validator: DataValidator) -> None:
        self.validator = validator

    async def __call__(
        self, context: ExecutionContext, execution_id: str
    ) -> Dict[str, Any]:
        result = ExtractionResult.from_dict(thaw(context.segment(EXTRACTION_SEGMENT)))
        outcome = self.validator.validate(result)
        if not outcome.passed:
            logger.info(
                f"Execution {execution_id}: validation failed: {outcome.messages}"
            )
        return outcome.to_dict()


class ProcessActionTask:
    """Perform the business action for a validated document."""

    def __init__(self, action_handler: ActionHandler) -> None:
        self.action_handler = action_handler

    async def __call__(
        self, context: ExecutionContext, execution_id: str
    ) -> Dict[str, Any]:
        validation = context.segment(VALIDATION_SEGMENT, None)
        outcome = ValidationOutcome.from_dict(thaw(validation)) if validation else None
        if outcome is None or not outcome.passed:
            reasons = outcome.messages if outcome else ["extraction was never validated"]
            raise ValidationFailed(
                f"Refusing to act on an unvalidated document: {reasons}",
                reasons=reasons,
                execution_id=execution_id,
            )

        extraction = thaw(context.segment(EXTRACTION_SEGMENT))
        result = await self.action_handler.perform(
            extraction["document_type"], extraction["fields"], execution_id
        )
        logger.info(f"Execution {execution_id}: business action completed")
        return dict(result or {})


def manual_review_reasons(context: ExecutionContext) -> List[str]:
    """Collect the reasons an execution ended up in manual review.

    Looks at a failing validation outcome, any error segments written by
    catch rules, and a classification confidence below the routing
    threshold, in that order.
    """
    reasons: List[str] = []

    validation = context.segment(VALIDATION_SEGMENT, None)
    if validation is not None and not validation.get("passed", True):
        reasons.extend(reason["message"] for reason in validation.get("reasons", ()))

    for name in context.segment_names:
        if not name.endswith("_error"):
            continue
        chain = context.segment(name)
        if chain:
            reasons.append(f"[{chain[0]['kind']}] {chain[0]['message']}")

    if not reasons:
        confidence = context.select(f"{CLASSIFICATION_SEGMENT}.confidence", None)
        document_type = context.select(f"{CLASSIFICATION_SEGMENT}.document_type", None)
        if confidence is None:
            reasons.append(f"Classification of '{document_type}' has no confidence")
        else:
            reasons.append(
                f"Classification confidence {confidence} for '{document_type}' "
                f"is below the routing threshold"
            )
    return reasons
