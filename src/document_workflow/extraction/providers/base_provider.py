"""
Base provider interface for extraction integrations.
"""

from abc import ABC, abstractmethod
from typing import Any, Mapping

from ...models.data_structures import Document


class ExtractionProvider(ABC):
    """
    Abstract base class for extraction providers.

    All provider implementations must inherit from this class. Providers are
    tried in priority order by the ExtractionOrchestrator; each one may fail
    independently.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique provider name used in provider ordering and results.

        Returns:
            Provider name (e.g., "primary")
        """
        pass

    @abstractmethod
    async def extract(self, document: Document, document_type: str) -> Mapping[str, Any]:
        """
        Extract structured fields from a document.

        Args:
            document: Document to extract from
            document_type: Extraction template name

        Returns:
            Mapping of field name to extracted value

        Raises:
            Exception: If extraction fails
        """
        pass
