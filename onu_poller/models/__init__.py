"""
Domain models for the ONU polling service.
"""

from .onu import (
    CacheEntry,
    DeviceCoordinate,
    OnuReading,
    OnuRecord,
    OnuStatus,
    PollOutcome,
    PollResult,
)

__all__ = [
    "CacheEntry",
    "DeviceCoordinate",
    "OnuReading",
    "OnuRecord",
    "OnuStatus",
    "PollOutcome",
    "PollResult",
]
