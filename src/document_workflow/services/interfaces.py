"""
Collaborator interfaces consumed by the workflow engine.

Concrete implementations (HTTP clients for the classification service, a
message bus publisher, the downstream business system) live outside the
engine and are injected into the coordinator at construction time together
with their endpoints and credentials.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping

from ..models.data_structures import Document


class ClassificationService(ABC):
    """
    Asynchronous document classification service.

    ``get_status`` returns a mapping with a ``status`` key (one of
    "submitted", "running", "succeeded", "failed") and, once succeeded,
    ``document_type`` (possibly None) and ``confidence`` in [0, 1].
    """

    @abstractmethod
    async def submit(self, document: Document) -> str:
        """
        Submit a document for classification.

        Args:
            document: Document to classify

        Returns:
            Job identifier

        Raises:
            Exception: If the submission fails
        """
        pass

    @abstractmethod
    async def get_status(self, job_id: str) -> Mapping[str, Any]:
        """
        Query the status of a classification job.

        Args:
            job_id: Job identifier returned by submit()

        Returns:
            Status payload mapping
        """
        pass


class NotificationService(ABC):
    """Publishes manual review notifications."""

    @abstractmethod
    async def publish(self, topic: str, message: Mapping[str, Any]) -> None:
        """
        Publish a message to a topic.

        Args:
            topic: Destination topic name
            message: JSON-serialisable message body
        """
        pass


class ActionHandler(ABC):
    """Terminal business action for validated documents."""

    @abstractmethod
    async def perform(
        self, document_type: str, fields: Mapping[str, Any], execution_id: str
    ) -> Dict[str, Any]:
        """
        Perform the business action for an extracted document.

        Args:
            document_type: Extraction template name
            fields: Validated extracted fields
            execution_id: Execution identifier, usable as an idempotency key

        Returns:
            Action result mapping stored in the execution context
        """
        pass
