"""Logging setup for applications embedding the workflow engine."""

import logging
import sys
from typing import Any, Dict, Optional

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    log_level: str = "INFO", log_format: Optional[str] = None
) -> None:
    """Configure root logging for the workflow engine.

    Sets up console logging with timestamp, logger name, level, and message
    format. Logs go to stderr.

    Args:
        log_level: Logging level as string (DEBUG, INFO, WARNING, ERROR).
            Defaults to "INFO".
        log_format: Optional format string. Defaults to DEFAULT_LOG_FORMAT.

    Raises:
        ValueError: If log_level is not a known logging level name.
    """
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    logging.basicConfig(
        level=level,
        format=log_format or DEFAULT_LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def setup_logging_from_config(logging_section: Dict[str, Any]) -> None:
    """Configure logging from the ``logging`` section of the workflow config.

    Args:
        logging_section: Mapping with optional ``level`` and ``format`` keys.
    """
    setup_logging(
        log_level=str(logging_section.get("level", "INFO")),
        log_format=logging_section.get("format"),
    )
