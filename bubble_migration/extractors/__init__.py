"""Extractors for pulling records from the legacy API."""

from .base import BaseExtractor, Page
from .bubble_extractor import BubbleExtractor

__all__ = [
    "BaseExtractor",
    "Page",
    "BubbleExtractor",
]
