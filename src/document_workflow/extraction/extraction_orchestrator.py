"""
Extraction Orchestrator - template selection and provider fallback.

This module selects the extraction template for a document type, runs the
configured extraction providers in priority order and accepts the first
result that passes structural validation:
- Every required field of the template is present and non-empty
- Derived (arithmetic) fields are recomputed, never trusted
- Provider values that disagree with the recomputation beyond ``epsilon``
  are recorded as inconsistency flags for the validator

Typical usage example:

    orchestrator = ExtractionOrchestrator(
        providers=[primary_provider, fallback_provider],
        templates=TemplateRegistry.from_config(config.extraction),
        epsilon=0.005,
    )
    result = await orchestrator.extract(document, "invoice")
    print(result.provider, result.inconsistencies)
"""

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..models.data_structures import Document, ExtractionResult, InconsistencyFlag
from ..utils.error_handlers import ConfigurationError, ExtractionFailed, error_kind
from .providers.base_provider import ExtractionProvider
from .templates import DerivedField, DerivedRule, ExtractionTemplate, TemplateRegistry

logger = logging.getLogger(__name__)

DEFAULT_EPSILON = 0.005
ROUNDING_DIGITS = 6


def is_empty(value: Any) -> bool:
    """Return True for None, blank strings and empty collections.

    Zero and False are legitimate values and are not empty.
    """
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def as_number(value: Any) -> Optional[float]:
    """Return value as a float, or None when it is missing, boolean or non-numeric."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(
    path: str, reported: Any, recomputed: Optional[float], epsilon: float
) -> Optional[InconsistencyFlag]:
    """Build an inconsistency flag when reported and recomputed disagree."""
    if recomputed is None:
        return InconsistencyFlag(
            field=path, reported=reported, recomputed=None, difference=None
        )
    if reported is None:
        return None
    reported_number = as_number(reported)
    if reported_number is None:
        return InconsistencyFlag(
            field=path, reported=reported, recomputed=recomputed, difference=None
        )
    difference = abs(reported_number - recomputed)
    if difference > epsilon:
        return InconsistencyFlag(
            field=path,
            reported=reported,
            recomputed=recomputed,
            difference=round(difference, ROUNDING_DIGITS),
        )
    return None


def _apply_rule(values: List[Optional[float]], rule: DerivedRule) -> Optional[float]:
    if not values or any(v is None for v in values):
        return None
    array = np.asarray(values, dtype=float)
    result = array.prod() if rule is DerivedRule.PRODUCT else array.sum()
    return round(float(result), ROUNDING_DIGITS)


def recompute_derived_fields(
    fields: Mapping[str, Any],
    derived_fields: Sequence[DerivedField],
    epsilon: float = DEFAULT_EPSILON,
) -> Tuple[Dict[str, Any], List[InconsistencyFlag]]:
    """Recompute derived fields and flag disagreeing provider values.

    Rules run in declaration order, so a SUM over line-item amounts sees the
    amounts recomputed by an earlier PRODUCT rule. Recomputed values always
    replace provider values; a value that cannot be recomputed (missing or
    non-numeric inputs) is left as reported and flagged.

    Args:
        fields: Provider output.
        derived_fields: Template derived field rules.
        epsilon: Largest difference not reported as an inconsistency.

    Returns:
        Tuple of (recomputed fields copy, inconsistency flags).
    """
    result: Dict[str, Any] = copy.deepcopy(dict(fields))
    flags: List[InconsistencyFlag] = []

    for derived in derived_fields:
        if derived.collection is None:
            values = [as_number(result.get(name)) for name in derived.inputs]
            recomputed = _apply_rule(values, derived.rule)
            flag = _compare(derived.field, result.get(derived.field), recomputed, epsilon)
            if flag:
                flags.append(flag)
            if recomputed is not None:
                result[derived.field] = recomputed
            continue

        items = result.get(derived.collection)
        if not isinstance(items, list):
            flags.append(
                InconsistencyFlag(
                    field=derived.field,
                    reported=result.get(derived.field),
                    recomputed=None,
                    difference=None,
                )
            )
            continue

        if derived.rule is DerivedRule.PRODUCT:
            for index, item in enumerate(items):
                if not isinstance(item, dict):
                    continue
                values = [as_number(item.get(name)) for name in derived.inputs]
                recomputed = _apply_rule(values, derived.rule)
                path = f"{derived.collection}.{index}.{derived.field}"
                flag = _compare(path, item.get(derived.field), recomputed, epsilon)
                if flag:
                    flags.append(flag)
                if recomputed is not None:
                    item[derived.field] = recomputed
        else:
            values = [
                as_number(item.get(name)) if isinstance(item, dict) else None
                for item in items
                for name in derived.inputs
            ]
            # An empty collection sums to zero
            recomputed = _apply_rule(values, derived.rule) if values else 0.0
            flag = _compare(derived.field, result.get(derived.field), recomputed, epsilon)
            if flag:
                flags.append(flag)
            if recomputed is not None:
                result[derived.field] = recomputed

    return result, flags


def missing_required_fields(
    fields: Mapping[str, Any], required_fields: Sequence[str]
) -> List[str]:
    """Return the required fields that are absent or empty."""
    return [name for name in required_fields if is_empty(fields.get(name))]


class ExtractionOrchestrator:
    """Runs extraction providers in priority order with fallback.

    Attributes:
        templates: Registry of extraction templates.
        epsilon: Tolerance for derived field comparisons.
    """

    def __init__(
        self,
        providers: Sequence[ExtractionProvider],
        templates: TemplateRegistry,
        epsilon: float = DEFAULT_EPSILON,
        provider_order: Optional[Sequence[str]] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            providers: Available providers.
            templates: Extraction templates.
            epsilon: Largest tolerated derived field difference.
            provider_order: Optional global priority by provider name.
                Providers not listed keep their registration order after
                the listed ones; unregistered names are ignored.

        Raises:
            ConfigurationError: If no provider is given, provider names
                collide or epsilon is negative.
        """
        if not providers:
            raise ConfigurationError("At least one extraction provider is required")
        if epsilon < 0:
            raise ConfigurationError(f"epsilon must be non-negative, got {epsilon}")

        self._providers: Dict[str, ExtractionProvider] = {}
        for provider in providers:
            if provider.name in self._providers:
                raise ConfigurationError(
                    f"Duplicate extraction provider name: {provider.name}",
                    config_key="extraction.providers",
                )
            self._providers[provider.name] = provider

        self.templates = templates
        self.epsilon = epsilon
        self._default_order = self._resolve_order(provider_order or ())

    def _resolve_order(self, order: Sequence[str]) -> Tuple[str, ...]:
        unknown = [name for name in order if name not in self._providers]
        if unknown:
            logger.warning(
                f"Ignoring unregistered extraction providers in priority order: {unknown}"
            )
        listed = [name for name in dict.fromkeys(order) if name in self._providers]
        return tuple(listed + [name for name in self._providers if name not in listed])

    def providers_for(self, template: ExtractionTemplate) -> List[ExtractionProvider]:
        """Return providers in the priority order used for ``template``."""
        order = (
            self._resolve_order(template.provider_order)
            if template.provider_order
            else self._default_order
        )
        return [self._providers[name] for name in order]

    async def extract(self, document: Document, document_type: str) -> ExtractionResult:
        """Extract structured data using the first provider that succeeds.

        Args:
            document: Document to extract.
            document_type: Template name.

        Returns:
            ExtractionResult with recomputed derived fields and any
            inconsistency flags.

        Raises:
            UnsupportedDocumentType: If no template exists for the type.
            ExtractionFailed: If every provider failed or returned a result
                missing required fields.
        """
        template = self.templates.get(document_type)
        provider_errors: Dict[str, str] = {}
        last_error: Optional[BaseException] = None

        for provider in self.providers_for(template):
            try:
                raw_fields = await provider.extract(document, document_type)
            except Exception as e:
                last_error = e
                provider_errors[provider.name] = f"[{error_kind(e)}] {e}"
                logger.warning(
                    f"Extraction provider {provider.name} failed for "
                    f"{document.location}: {e}"
                )
                continue

            if not isinstance(raw_fields, Mapping):
                provider_errors[provider.name] = (
                    f"returned {type(raw_fields).__name__} instead of a mapping"
                )
                logger.warning(
                    f"Extraction provider {provider.name} returned a non-mapping result"
                )
                continue

            fields, flags = recompute_derived_fields(
                raw_fields, template.derived_fields, self.epsilon
            )
            missing = missing_required_fields(fields, template.required_fields)
            if missing:
                provider_errors[provider.name] = f"missing required fields: {missing}"
                logger.warning(
                    f"Extraction provider {provider.name} result rejected, "
                    f"missing required fields {missing}"
                )
                continue

            if flags:
                logger.info(
                    f"Extraction by {provider.name} has {len(flags)} derived "
                    f"field inconsistencies: {[flag.field for flag in flags]}"
                )
            logger.info(
                f"Extracted {document_type} from {document.location} "
                f"using provider {provider.name}"
            )
            return ExtractionResult(
                document_type=document_type,
                fields=fields,
                provider=provider.name,
                derived_fields=tuple(d.field for d in template.derived_fields),
                inconsistencies=tuple(flags),
            )

        raise ExtractionFailed(
            f"All extraction providers failed for {document_type}: {provider_errors}",
            document_type=document_type,
            provider_errors=provider_errors,
            original_error=last_error,
        )
