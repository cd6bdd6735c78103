"""
Extraction layer: templates, provider fallback and derived field recomputation.
"""

from .extraction_orchestrator import (
    ExtractionOrchestrator,
    missing_required_fields,
    recompute_derived_fields,
)
from .providers import ExtractionProvider
from .templates import (
    AggregateCheck,
    DerivedField,
    DerivedRule,
    ExtractionTemplate,
    TemplateRegistry,
)

__all__ = [
    "ExtractionOrchestrator",
    "ExtractionProvider",
    "recompute_derived_fields",
    "missing_required_fields",
    "AggregateCheck",
    "DerivedField",
    "DerivedRule",
    "ExtractionTemplate",
    "TemplateRegistry",
]
