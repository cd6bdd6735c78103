"""
Pytest configuration and fixtures.
"""

import pytest

from document_workflow.database.transition_store import InMemoryTransitionStore
from document_workflow.extraction.templates import TemplateRegistry
from document_workflow.models.data_structures import Document
from document_workflow.utils.config_loader import Config

from tests.utils.test_helpers import (
    FakeActionHandler,
    FakeClassificationService,
    RecordingNotifier,
    VirtualScheduler,
    create_test_config_dict,
    invoice_fields,
)


@pytest.fixture
def config_dict():
    """Create a complete test configuration dictionary."""
    return create_test_config_dict()


@pytest.fixture
def workflow_config(config_dict):
    """Create test configuration."""
    return Config.from_dict(config_dict)


@pytest.fixture
def templates(config_dict):
    """Create the extraction template registry from test configuration."""
    return TemplateRegistry.from_config(config_dict["extraction"])


@pytest.fixture
def document():
    """Create a sample uploaded document."""
    return Document(
        location="s3://uploads/2026/10/invoice-1001.pdf",
        metadata={"source": "email", "uploader": "ap-inbox"},
    )


@pytest.fixture
def sample_invoice():
    """Create consistent invoice fields."""
    return invoice_fields()


@pytest.fixture
def scheduler():
    """Create a virtual-clock scheduler."""
    return VirtualScheduler()


@pytest.fixture
def classification_service():
    """Create a classification service that classifies an invoice at once."""
    return FakeClassificationService()


@pytest.fixture
def notifier():
    """Create a recording notification service."""
    return RecordingNotifier()


@pytest.fixture
def action_handler():
    """Create a succeeding business action handler."""
    return FakeActionHandler()


@pytest.fixture
def memory_store():
    """Create an in-memory transition store."""
    return InMemoryTransitionStore()
