"""
Unit tests for extraction_orchestrator module.

Tests provider fallback, required field checks and derived field
recomputation.
"""

import pytest

from document_workflow.extraction.extraction_orchestrator import (
    ExtractionOrchestrator,
    as_number,
    is_empty,
    missing_required_fields,
    recompute_derived_fields,
)
from document_workflow.extraction.templates import (
    DerivedField,
    DerivedRule,
    ExtractionTemplate,
    TemplateRegistry,
)
from document_workflow.utils.error_handlers import (
    ConfigurationError,
    ExtractionFailed,
    UnsupportedDocumentType,
)

from tests.utils.test_helpers import FakeProvider, invoice_fields

LINE_AMOUNT = DerivedField(
    field="amount",
    rule=DerivedRule.PRODUCT,
    inputs=("quantity", "unit_price"),
    collection="line_items",
)
SUBTOTAL = DerivedField(
    field="subtotal", rule=DerivedRule.SUM, inputs=("amount",), collection="line_items"
)


class TestIsEmpty:
    """Tests for is_empty function."""

    @pytest.mark.parametrize("value", [None, "", "   ", [], {}])
    def test_empty_values(self, value):
        assert is_empty(value)

    @pytest.mark.parametrize("value", [0, 0.0, False, "x", [0]])
    def test_present_values(self, value):
        assert not is_empty(value)

    def test_missing_required_fields(self):
        fields = {"invoice_number": "", "total": 0, "vendor_name": "Acme"}

        missing = missing_required_fields(
            fields, ["invoice_number", "total", "vendor_name", "line_items"]
        )

        assert missing == ["invoice_number", "line_items"]


class TestAsNumber:
    """Tests for as_number function."""

    @pytest.mark.parametrize("value, expected", [(2, 2.0), ("5.5", 5.5), (0, 0.0)])
    def test_numeric_values(self, value, expected):
        assert as_number(value) == expected

    @pytest.mark.parametrize("value", [None, True, "n/a", [1]])
    def test_non_numeric_values(self, value):
        assert as_number(value) is None


class TestRecomputeDerivedFields:
    """Tests for recompute_derived_fields function."""

    def test_consistent_values_produce_no_flags(self, sample_invoice):
        fields, flags = recompute_derived_fields(sample_invoice, [LINE_AMOUNT, SUBTOTAL])

        assert flags == []
        assert fields["subtotal"] == 25.5

    def test_wrong_line_amount_is_replaced_and_flagged(self):
        """Test that a provider amount never survives recomputation."""
        raw = invoice_fields()
        raw["line_items"][0]["amount"] = 25.0
        raw["subtotal"] = 30.5

        fields, flags = recompute_derived_fields(raw, [LINE_AMOUNT, SUBTOTAL])

        assert fields["line_items"][0]["amount"] == 20.0
        assert fields["subtotal"] == 25.5
        assert [flag.field for flag in flags] == ["line_items.0.amount", "subtotal"]
        assert flags[0].reported == 25.0
        assert flags[0].recomputed == 20.0
        assert flags[0].difference == 5.0

    def test_input_is_not_mutated(self):
        raw = invoice_fields()
        raw["line_items"][0]["amount"] = 25.0

        recompute_derived_fields(raw, [LINE_AMOUNT, SUBTOTAL])

        assert raw["line_items"][0]["amount"] == 25.0

    def test_difference_within_epsilon_not_flagged(self):
        raw = invoice_fields()
        raw["line_items"][0]["amount"] = 20.004

        fields, flags = recompute_derived_fields(
            raw, [LINE_AMOUNT], epsilon=0.005
        )

        assert flags == []
        assert fields["line_items"][0]["amount"] == 20.0

    def test_missing_reported_value_is_filled(self):
        raw = invoice_fields()
        del raw["subtotal"]
        for item in raw["line_items"]:
            del item["amount"]

        fields, flags = recompute_derived_fields(raw, [LINE_AMOUNT, SUBTOTAL])

        assert flags == []
        assert fields["line_items"][1]["amount"] == 5.5
        assert fields["subtotal"] == 25.5

    def test_non_numeric_input_flagged(self):
        raw = invoice_fields()
        raw["line_items"][1]["quantity"] = "several"

        fields, flags = recompute_derived_fields(raw, [LINE_AMOUNT])

        assert flags[0].field == "line_items.1.amount"
        assert flags[0].recomputed is None
        assert fields["line_items"][1]["amount"] == 5.5

    def test_empty_collection_sums_to_zero(self):
        fields, flags = recompute_derived_fields(
            {"line_items": [], "subtotal": 0}, [SUBTOTAL]
        )

        assert fields["subtotal"] == 0.0
        assert flags == []

    def test_top_level_rule(self):
        rule = DerivedField("total", DerivedRule.SUM, ("subtotal", "tax"))

        fields, flags = recompute_derived_fields(
            {"subtotal": 10.0, "tax": 1.0, "total": 12.0}, [rule]
        )

        assert fields["total"] == 11.0
        assert flags[0].difference == 1.0


class TestExtractionOrchestrator:
    """Tests for ExtractionOrchestrator."""

    @pytest.mark.asyncio
    async def test_first_provider_result_accepted(self, templates, document):
        primary = FakeProvider("primary", invoice_fields())
        fallback = FakeProvider("fallback", invoice_fields(vendor_name="Other"))
        orchestrator = ExtractionOrchestrator([primary, fallback], templates)

        result = await orchestrator.extract(document, "invoice")

        assert result.provider == "primary"
        assert result.fields["vendor_name"] == "Acme Supplies"
        assert result.derived_fields == ("amount", "subtotal")
        assert result.is_consistent
        assert fallback.calls == 0

    @pytest.mark.asyncio
    async def test_falls_back_on_provider_error(self, templates, document):
        primary = FakeProvider("primary", error=TimeoutError("provider timeout"))
        fallback = FakeProvider("fallback", invoice_fields())
        orchestrator = ExtractionOrchestrator([primary, fallback], templates)

        result = await orchestrator.extract(document, "invoice")

        assert result.provider == "fallback"
        assert primary.calls == 1

    @pytest.mark.asyncio
    async def test_falls_back_on_missing_required_field(self, templates, document):
        primary = FakeProvider("primary", invoice_fields(vendor_name=""))
        fallback = FakeProvider("fallback", invoice_fields())
        orchestrator = ExtractionOrchestrator([primary, fallback], templates)

        result = await orchestrator.extract(document, "invoice")

        assert result.provider == "fallback"

    @pytest.mark.asyncio
    async def test_exhausted_chain_raises(self, templates, document):
        primary = FakeProvider("primary", error=ConnectionError("down"))
        fallback = FakeProvider("fallback", ["not", "a", "mapping"])
        orchestrator = ExtractionOrchestrator([primary, fallback], templates)

        with pytest.raises(ExtractionFailed) as exc_info:
            await orchestrator.extract(document, "invoice")

        error = exc_info.value
        assert set(error.provider_errors) == {"primary", "fallback"}
        assert "ConnectionError" in error.provider_errors["primary"]
        assert isinstance(error.original_error, ConnectionError)

    @pytest.mark.asyncio
    async def test_unknown_document_type(self, templates, document):
        orchestrator = ExtractionOrchestrator([FakeProvider("primary", {})], templates)

        with pytest.raises(UnsupportedDocumentType):
            await orchestrator.extract(document, "purchase_order")

    @pytest.mark.asyncio
    async def test_inconsistencies_travel_with_result(self, templates, document):
        raw = invoice_fields()
        raw["line_items"][0]["amount"] = 25.0
        orchestrator = ExtractionOrchestrator([FakeProvider("primary", raw)], templates)

        result = await orchestrator.extract(document, "invoice")

        assert not result.is_consistent
        assert result.fields["line_items"][0]["amount"] == 20.0
        assert result.inconsistencies[0].field == "line_items.0.amount"

    def test_provider_order(self, templates):
        a, b, c = FakeProvider("a", {}), FakeProvider("b", {}), FakeProvider("c", {})
        orchestrator = ExtractionOrchestrator(
            [a, b, c], templates, provider_order=["c", "unknown", "a"]
        )
        template = templates.get("invoice")

        assert [p.name for p in orchestrator.providers_for(template)] == ["c", "a", "b"]

    def test_template_provider_order_overrides(self):
        registry = TemplateRegistry(
            [
                ExtractionTemplate(
                    document_type="receipt",
                    required_fields=("total",),
                    provider_order=("b",),
                )
            ]
        )
        a, b = FakeProvider("a", {}), FakeProvider("b", {})
        orchestrator = ExtractionOrchestrator([a, b], registry, provider_order=["a"])

        names = [p.name for p in orchestrator.providers_for(registry.get("receipt"))]

        assert names == ["b", "a"]

    def test_duplicate_provider_names_rejected(self, templates):
        with pytest.raises(ConfigurationError):
            ExtractionOrchestrator(
                [FakeProvider("primary", {}), FakeProvider("primary", {})], templates
            )

    def test_no_providers_rejected(self, templates):
        with pytest.raises(ConfigurationError):
            ExtractionOrchestrator([], templates)


class TestTemplates:
    """Tests for template configuration parsing."""

    def test_registry_from_config(self, templates):
        invoice = templates.get("invoice")

        assert templates.document_types == ["invoice", "receipt"]
        assert invoice.derived_fields[0].rule is DerivedRule.PRODUCT
        assert invoice.aggregate_checks[0].addends == ("subtotal", "tax")
        assert "invoice_date" in invoice.schema_fields

    def test_schema_fields_default_to_required(self, templates):
        receipt = templates.get("receipt")

        assert receipt.schema_fields == ("merchant_name", "total")

    def test_invalid_rule(self):
        with pytest.raises(ConfigurationError):
            ExtractionTemplate.from_dict(
                "invoice",
                {"derived_fields": [{"field": "x", "rule": "median", "inputs": ["a"]}]},
            )

    def test_unknown_type_raises(self, templates):
        with pytest.raises(UnsupportedDocumentType) as exc_info:
            templates.get("purchase_order")

        assert exc_info.value.document_type == "purchase_order"
