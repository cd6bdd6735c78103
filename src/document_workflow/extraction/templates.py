"""Extraction templates: which fields a document type needs and which are derived.

Templates are declared in the ``extraction.templates`` configuration
section. A template lists the fields a provider result must contain to be
accepted, the fields the validator requires, the arithmetic (derived) fields
that are always recomputed, and the aggregate checks the validator enforces.

Example template (YAML):
    invoice:
      required_fields: [invoice_number, line_items, total]
      derived_fields:
        - {field: amount, rule: product, collection: line_items,
           inputs: [quantity, unit_price]}
        - {field: subtotal, rule: sum, collection: line_items, inputs: [amount]}
      aggregate_checks:
        - {target: total, addends: [subtotal, tax]}
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..utils.error_handlers import ConfigurationError, UnsupportedDocumentType

logger = logging.getLogger(__name__)


class DerivedRule(Enum):
    """Arithmetic used to recompute a derived field."""

    PRODUCT = "product"
    SUM = "sum"


@dataclass(frozen=True)
class DerivedField:
    """A field recomputed from other fields.

    Attributes:
        field: Name of the derived field.
        rule: Arithmetic rule.
        inputs: Input field names.
        collection: When set, the rule runs over this list of line items.
            PRODUCT then writes ``field`` into each item, SUM adds up the
            inputs of every item into the top-level ``field``.
    """

    field: str
    rule: DerivedRule
    inputs: Tuple[str, ...]
    collection: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DerivedField":
        try:
            rule = DerivedRule(data["rule"])
        except (KeyError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid derived field rule: {data.get('rule')}",
                config_key=str(data.get("field")),
            ) from e
        inputs = tuple(data.get("inputs", ()))
        if not data.get("field") or not inputs:
            raise ConfigurationError(
                "Derived fields need a field name and at least one input",
                config_key=str(data.get("field")),
            )
        return cls(
            field=data["field"],
            rule=rule,
            inputs=inputs,
            collection=data.get("collection"),
        )


@dataclass(frozen=True)
class AggregateCheck:
    """Check that ``target`` equals the sum of ``addends`` within tolerance.

    Missing addends count as zero; a missing target is reported by the
    validator.
    """

    target: str
    addends: Tuple[str, ...]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AggregateCheck":
        addends = tuple(data.get("addends", ()))
        if not data.get("target") or not addends:
            raise ConfigurationError(
                "Aggregate checks need a target and at least one addend",
                config_key=str(data.get("target")),
            )
        return cls(target=data["target"], addends=addends)


@dataclass(frozen=True)
class ExtractionTemplate:
    """Extraction and validation schema for one document type.

    Attributes:
        document_type: Template name.
        required_fields: Fields a provider result must contain (non-empty).
        schema_fields: Fields the validator requires; defaults to
            required_fields.
        derived_fields: Fields recomputed in declaration order.
        aggregate_checks: Sum checks enforced by the validator.
        provider_order: Optional provider priority override.
    """

    document_type: str
    required_fields: Tuple[str, ...]
    schema_fields: Tuple[str, ...] = ()
    derived_fields: Tuple[DerivedField, ...] = ()
    aggregate_checks: Tuple[AggregateCheck, ...] = ()
    provider_order: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        if not self.document_type:
            raise ConfigurationError("Template document_type cannot be empty")
        if not self.schema_fields:
            object.__setattr__(self, "schema_fields", tuple(self.required_fields))

    @classmethod
    def from_dict(cls, document_type: str, data: Mapping[str, Any]) -> "ExtractionTemplate":
        """Build a template from its configuration mapping.

        Raises:
            ConfigurationError: If a derived field or aggregate check is invalid.
        """
        provider_order = data.get("provider_order")
        return cls(
            document_type=document_type,
            required_fields=tuple(data.get("required_fields", ())),
            schema_fields=tuple(data.get("schema_fields", ())),
            derived_fields=tuple(
                DerivedField.from_dict(entry) for entry in data.get("derived_fields") or ()
            ),
            aggregate_checks=tuple(
                AggregateCheck.from_dict(entry)
                for entry in data.get("aggregate_checks") or ()
            ),
            provider_order=tuple(provider_order) if provider_order else None,
        )


class TemplateRegistry:
    """Registry of extraction templates keyed by document type."""

    def __init__(self, templates: Optional[Iterable[ExtractionTemplate]] = None) -> None:
        self._templates: Dict[str, ExtractionTemplate] = {}
        for template in templates or ():
            self.register(template)

    def register(self, template: ExtractionTemplate) -> None:
        """Register a template, replacing any previous one for its type."""
        if template.document_type in self._templates:
            logger.warning(f"Replacing extraction template: {template.document_type}")
        self._templates[template.document_type] = template

    def __contains__(self, document_type: object) -> bool:
        return document_type in self._templates

    @property
    def document_types(self) -> List[str]:
        return sorted(self._templates)

    def get(self, document_type: Optional[str]) -> ExtractionTemplate:
        """Return the template for ``document_type``.

        Raises:
            UnsupportedDocumentType: If no template is registered.
        """
        template = self._templates.get(document_type) if document_type else None
        if template is None:
            raise UnsupportedDocumentType(
                f"No extraction template registered for document type "
                f"'{document_type}' (known: {self.document_types})",
                document_type=document_type,
            )
        return template

    @classmethod
    def from_config(cls, extraction_section: Mapping[str, Any]) -> "TemplateRegistry":
        """Build the registry from the ``extraction`` configuration section."""
        templates = extraction_section.get("templates") or {}
        return cls(
            ExtractionTemplate.from_dict(name, data) for name, data in templates.items()
        )
