"""Validation of extraction results."""

from .data_validator import DataValidator, ValidationConfig

__all__ = ["DataValidator", "ValidationConfig"]
