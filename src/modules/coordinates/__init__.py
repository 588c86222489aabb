"""
Coordinates Module

Coordinate records, their status state machine and the ingestion service.
"""

from src.modules.coordinates.models import Coordinate, CoordinateStatus

__all__ = ["Coordinate", "CoordinateStatus"]
