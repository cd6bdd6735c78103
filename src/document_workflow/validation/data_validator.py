"""
Data validation module for the Document Workflow engine.

Checks extraction results against the rules of their document type before
any business action runs. Implements configurable tolerance for numeric
comparisons.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from ..extraction.extraction_orchestrator import as_number, is_empty
from ..extraction.templates import AggregateCheck, ExtractionTemplate, TemplateRegistry
from ..models.data_structures import (
    ExtractionResult,
    IssueType,
    Severity,
    ValidationIssue,
    ValidationOutcome,
)
from ..utils.error_handlers import UnsupportedDocumentType

logger = logging.getLogger(__name__)


@dataclass
class ValidationConfig:
    """Configuration for data validation checks.

    Attributes:
        tolerance: Largest accepted absolute difference for derived field
            inconsistencies and aggregate checks.
        check_inconsistencies: If True, inconsistency flags beyond tolerance
            fail validation.
        check_aggregates: If True, enforce the template's aggregate checks.
    """

    tolerance: float = 0.01
    check_inconsistencies: bool = True
    check_aggregates: bool = True

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.tolerance < 0:
            raise ValueError("tolerance must be non-negative")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ValidationConfig":
        """Build from the ``validation`` configuration section."""
        return cls(
            tolerance=float(data.get("tolerance", 0.01)),
            check_inconsistencies=bool(data.get("check_inconsistencies", True)),
            check_aggregates=bool(data.get("check_aggregates", True)),
        )


class DataValidator:
    """Validates extraction results for completeness and arithmetic consistency.

    The validator runs three checks:
        1. Schema fields of the document type are present and non-empty
        2. Derived field inconsistencies recorded at extraction are within
           tolerance
        3. Aggregate checks (e.g. subtotal + tax = total) hold within tolerance

    A failing outcome always lists every issue found, never just the first.

    Attributes:
        templates: Registry of extraction templates.
        config: Validation configuration.
    """

    def __init__(
        self, templates: TemplateRegistry, config: Optional[ValidationConfig] = None
    ) -> None:
        """Initialize the validator.

        Args:
            templates: Template registry holding schema fields and aggregate
                checks per document type.
            config: Validation configuration. If None, uses defaults.
        """
        self.templates = templates
        self.config = config or ValidationConfig()
        logger.info(f"DataValidator initialized with tolerance={self.config.tolerance}")

    def validate(self, result: ExtractionResult) -> ValidationOutcome:
        """Validate an extraction result.

        Args:
            result: Extraction result to check.

        Returns:
            ValidationOutcome; failing outcomes carry concrete reasons.
        """
        try:
            template = self.templates.get(result.document_type)
        except UnsupportedDocumentType as e:
            return ValidationOutcome(
                passed=False,
                reasons=(
                    ValidationIssue(
                        issue_type=IssueType.UNKNOWN_DOCUMENT_TYPE,
                        severity=Severity.CRITICAL,
                        message=str(e),
                    ),
                ),
            )

        issues: List[ValidationIssue] = []
        issues.extend(self._check_schema_fields(result, template))
        if self.config.check_inconsistencies:
            issues.extend(self._check_inconsistencies(result))
        if self.config.check_aggregates:
            for check in template.aggregate_checks:
                issues.extend(self._check_aggregate(result, check))

        if issues:
            logger.info(
                f"Validation failed for {result.document_type} with "
                f"{len(issues)} issues: {[issue.message for issue in issues]}"
            )
        else:
            logger.debug(f"Validation passed for {result.document_type}")

        return ValidationOutcome(passed=not issues, reasons=tuple(issues))

    def _check_schema_fields(
        self, result: ExtractionResult, template: ExtractionTemplate
    ) -> List[ValidationIssue]:
        issues = []
        for name in template.schema_fields:
            if is_empty(result.fields.get(name)):
                severity = (
                    Severity.CRITICAL if name in template.required_fields else Severity.HIGH
                )
                issues.append(
                    ValidationIssue(
                        issue_type=IssueType.MISSING_FIELD,
                        severity=severity,
                        message=f"Required field '{name}' is missing or empty",
                        field=name,
                    )
                )
        return issues

    def _check_inconsistencies(self, result: ExtractionResult) -> List[ValidationIssue]:
        issues = []
        for flag in result.inconsistencies:
            if flag.recomputed is None:
                issues.append(
                    ValidationIssue(
                        issue_type=IssueType.NON_NUMERIC_VALUE,
                        severity=Severity.HIGH,
                        message=(
                            f"Derived field '{flag.field}' could not be recomputed "
                            f"from its inputs (reported {flag.reported!r})"
                        ),
                        field=flag.field,
                    )
                )
            elif flag.difference is None or flag.difference > self.config.tolerance:
                issues.append(
                    ValidationIssue(
                        issue_type=IssueType.INCONSISTENT_DERIVED_FIELD,
                        severity=Severity.HIGH,
                        message=(
                            f"Derived field '{flag.field}' reported as "
                            f"{flag.reported!r} but recomputes to {flag.recomputed}"
                        ),
                        field=flag.field,
                    )
                )
        return issues

    def _check_aggregate(
        self, result: ExtractionResult, check: AggregateCheck
    ) -> List[ValidationIssue]:
        raw_target = result.fields.get(check.target)
        target = as_number(raw_target)
        if target is None:
            issue_type = (
                IssueType.MISSING_FIELD if is_empty(raw_target) else IssueType.NON_NUMERIC_VALUE
            )
            return [
                ValidationIssue(
                    issue_type=issue_type,
                    severity=Severity.HIGH,
                    message=(
                        f"Aggregate target '{check.target}' is not a number: "
                        f"{raw_target!r}"
                    ),
                    field=check.target,
                )
            ]

        issues = []
        total = 0.0
        for addend in check.addends:
            raw_value = result.fields.get(addend)
            # Missing addends (e.g. no tax line) count as zero
            if raw_value is None:
                continue
            value = as_number(raw_value)
            if value is None:
                issues.append(
                    ValidationIssue(
                        issue_type=IssueType.NON_NUMERIC_VALUE,
                        severity=Severity.HIGH,
                        message=f"Field '{addend}' is not a number: {raw_value!r}",
                        field=addend,
                    )
                )
                continue
            total += value

        if issues:
            return issues

        difference = abs(target - total)
        if difference > self.config.tolerance:
            issues.append(
                ValidationIssue(
                    issue_type=IssueType.AGGREGATE_MISMATCH,
                    severity=Severity.CRITICAL,
                    message=(
                        f"'{check.target}' is {target} but "
                        f"{' + '.join(check.addends)} = {round(total, 6)} "
                        f"(difference {round(difference, 6)})"
                    ),
                    field=check.target,
                )
            )
        return issues
