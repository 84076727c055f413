"""
ONU polling service for ZTE C320 OLTs.
"""

__version__ = "1.0.0"
