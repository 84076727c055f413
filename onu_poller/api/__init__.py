"""
API package for the ONU polling service.
"""

from .onu import router as onu_router

__all__ = ["onu_router"]
