"""
Imagery Module

Fetched image records and the geometry used to request them.
"""

from src.modules.imagery.models import Image, BoundingBox, TimeRange

__all__ = ["Image", "BoundingBox", "TimeRange"]
