"""
Extraction provider interface.
"""

from .base_provider import ExtractionProvider

__all__ = ["ExtractionProvider"]
