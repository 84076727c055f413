"""
Services package for business logic.
"""

from .onu_service import OnuService

__all__ = ["OnuService"]
