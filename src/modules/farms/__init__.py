"""
Farms Module

Farm records used for coordinate ownership checks.
"""

from src.modules.farms.models import Farm

__all__ = ["Farm"]
