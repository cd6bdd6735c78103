"""Utility functions for the document workflow engine."""

from .config_loader import Config, WorkflowConfig
from .file_utils import ensure_directory, generate_unique_id
from .log_utils import setup_logging

__all__ = [
    "Config",
    "WorkflowConfig",
    "ensure_directory",
    "generate_unique_id",
    "setup_logging",
]
