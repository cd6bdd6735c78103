"""
Document Workflow Engine

Classifies, extracts, validates and routes uploaded documents through a
declarative, recoverable state machine.
"""

__version__ = "1.0.0"
__author__ = "Document Workflow Team"

# Core exports
from .orchestration import WorkflowCoordinator
from .database import SQLiteTransitionStore
from .models import Document, ExecutionStatus
from .utils.config_loader import Config

__all__ = [
    "WorkflowCoordinator",
    "SQLiteTransitionStore",
    "Document",
    "ExecutionStatus",
    "Config",
    "__version__",
]
