"""
Unit tests for data_validator module.

Tests schema field, derived field and aggregate checks.
"""

import pytest

from document_workflow.models.data_structures import (
    ExtractionResult,
    InconsistencyFlag,
    IssueType,
    Severity,
)
from document_workflow.validation.data_validator import DataValidator, ValidationConfig

from tests.utils.test_helpers import invoice_fields


@pytest.fixture
def validator(templates):
    """Create validator with default tolerance."""
    return DataValidator(templates, ValidationConfig(tolerance=0.01))


def _result(fields, document_type="invoice", inconsistencies=()):
    return ExtractionResult(
        document_type=document_type,
        fields=fields,
        provider="primary",
        derived_fields=("amount", "subtotal"),
        inconsistencies=inconsistencies,
    )


def _issue_types(outcome):
    return [reason.issue_type for reason in outcome.reasons]


class TestValidationConfig:
    """Tests for ValidationConfig."""

    def test_from_dict(self):
        config = ValidationConfig.from_dict({"tolerance": 0.05, "check_aggregates": False})

        assert config.tolerance == 0.05
        assert not config.check_aggregates
        assert config.check_inconsistencies

    def test_negative_tolerance_rejected(self):
        with pytest.raises(ValueError):
            ValidationConfig(tolerance=-1)


class TestDataValidator:
    """Tests for DataValidator.validate."""

    def test_consistent_invoice_passes(self, validator):
        outcome = validator.validate(_result(invoice_fields()))

        assert outcome.passed
        assert outcome.reasons == ()

    def test_missing_schema_field(self, validator):
        """Test that a missing optional schema field fails with HIGH severity."""
        fields = invoice_fields()
        del fields["invoice_date"]

        outcome = validator.validate(_result(fields))

        assert not outcome.passed
        assert _issue_types(outcome) == [IssueType.MISSING_FIELD]
        assert outcome.reasons[0].field == "invoice_date"
        assert outcome.reasons[0].severity is Severity.HIGH

    def test_missing_required_field_is_critical(self, validator):
        outcome = validator.validate(_result(invoice_fields(vendor_name="  ")))

        assert outcome.reasons[0].field == "vendor_name"
        assert outcome.reasons[0].severity is Severity.CRITICAL

    def test_zero_total_is_present(self, validator):
        fields = invoice_fields(line_items=[], subtotal=0.0, tax=0.0, total=0)

        outcome = validator.validate(_result(fields))

        # line_items is required and empty
        assert [r.field for r in outcome.reasons] == ["line_items"]

    def test_inconsistency_beyond_tolerance(self, validator):
        flag = InconsistencyFlag(
            field="line_items.0.amount", reported=25.0, recomputed=20.0, difference=5.0
        )

        outcome = validator.validate(_result(invoice_fields(), inconsistencies=(flag,)))

        assert not outcome.passed
        assert _issue_types(outcome) == [IssueType.INCONSISTENT_DERIVED_FIELD]
        assert "line_items.0.amount" in outcome.messages[0]

    def test_inconsistency_within_tolerance(self, validator):
        flag = InconsistencyFlag(
            field="subtotal", reported=25.508, recomputed=25.5, difference=0.008
        )

        outcome = validator.validate(_result(invoice_fields(), inconsistencies=(flag,)))

        assert outcome.passed

    def test_unrecomputable_field(self, validator):
        flag = InconsistencyFlag(
            field="line_items.1.amount", reported=5.5, recomputed=None, difference=None
        )

        outcome = validator.validate(_result(invoice_fields(), inconsistencies=(flag,)))

        assert _issue_types(outcome) == [IssueType.NON_NUMERIC_VALUE]

    def test_aggregate_mismatch(self, validator):
        outcome = validator.validate(_result(invoice_fields(total=40.0)))

        assert not outcome.passed
        assert _issue_types(outcome) == [IssueType.AGGREGATE_MISMATCH]
        assert outcome.reasons[0].severity is Severity.CRITICAL
        assert "total" in outcome.messages[0]

    def test_aggregate_within_tolerance(self, validator):
        outcome = validator.validate(_result(invoice_fields(total=28.055)))

        assert outcome.passed

    def test_missing_addend_counts_as_zero(self, validator):
        fields = invoice_fields(total=25.5)
        del fields["tax"]

        outcome = validator.validate(_result(fields))

        assert outcome.passed

    def test_non_numeric_addend(self, validator):
        outcome = validator.validate(_result(invoice_fields(tax="n/a")))

        assert _issue_types(outcome) == [IssueType.NON_NUMERIC_VALUE]
        assert outcome.reasons[0].field == "tax"

    def test_every_issue_reported(self, validator):
        """Test that all issues are listed, not just the first."""
        fields = invoice_fields(total=99.0)
        del fields["invoice_date"]
        flag = InconsistencyFlag("subtotal", 30.0, 25.5, 4.5)

        outcome = validator.validate(_result(fields, inconsistencies=(flag,)))

        assert _issue_types(outcome) == [
            IssueType.MISSING_FIELD,
            IssueType.INCONSISTENT_DERIVED_FIELD,
            IssueType.AGGREGATE_MISMATCH,
        ]

    def test_checks_can_be_disabled(self, templates):
        validator = DataValidator(
            templates, ValidationConfig(check_inconsistencies=False, check_aggregates=False)
        )
        flag = InconsistencyFlag("subtotal", 30.0, 25.5, 4.5)

        outcome = validator.validate(
            _result(invoice_fields(total=99.0), inconsistencies=(flag,))
        )

        assert outcome.passed

    def test_unknown_document_type(self, validator):
        outcome = validator.validate(_result({"total": 1}, document_type="contract"))

        assert not outcome.passed
        assert _issue_types(outcome) == [IssueType.UNKNOWN_DOCUMENT_TYPE]

    def test_outcome_round_trips_through_dict(self, validator):
        outcome = validator.validate(_result(invoice_fields(total=40.0)))

        restored = type(outcome).from_dict(outcome.to_dict())

        assert restored == outcome
