"""
Repositories for device (SNMP) and cache (Redis) access.
"""

from .redis_repository import OnuRedisRepository
from .snmp_repository import OnuSnmpRepository

__all__ = [
    "OnuRedisRepository",
    "OnuSnmpRepository",
]
