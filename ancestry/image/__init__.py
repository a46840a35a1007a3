"""Memory image capability and its in-memory implementation."""

from ancestry.image.base import MemoryImage, intersect_ranges
from ancestry.image.memory import BinaryImage

__all__ = ["BinaryImage", "MemoryImage", "intersect_ranges"]
