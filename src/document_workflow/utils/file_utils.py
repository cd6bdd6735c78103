"""
File and identifier utilities for the Document Workflow engine.

Provides identifier generation and filesystem helpers for the SQLite
transition store.
"""

import uuid
from datetime import datetime, timezone
from pathlib import Path


def ensure_directory(path: str) -> None:
    """
    Create directory if it doesn't exist, including parent directories.

    Args:
        path: Directory path to create

    Raises:
        OSError: If directory creation fails
    """
    try:
        Path(path).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"Failed to create directory {path}: {e}") from e


def generate_unique_id(prefix: str = "") -> str:
    """
    Generate unique ID with optional prefix.

    Format: PREFIX-YYYYMMDD-HHMMSS-UUID
    Example: EXE-20261018-143022-a1b2c3d4

    Args:
        prefix: Optional prefix (e.g., 'EXE', 'JOB')

    Returns:
        Unique ID string
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    unique_suffix = uuid.uuid4().hex[:8]

    if prefix:
        return f"{prefix}-{timestamp}-{unique_suffix}"
    else:
        return f"{timestamp}-{unique_suffix}"
