"""
Error taxonomy for the ONU polling service.
"""

from typing import Optional


class OltError(Exception):
    """Base class for every error raised by the service."""


# Protocol client errors

class SnmpError(OltError):
    """Base SNMP protocol error."""

    def __init__(self, message: str, oid: Optional[str] = None):
        super().__init__(message)
        self.oid = oid


class SnmpTimeoutError(SnmpError):
    """No response after all retries were exhausted."""


class SnmpTransportError(SnmpError):
    """Transport level failure that is not a timeout."""


class NoSuchObjectError(SnmpError):
    """The agent answered noSuchObject, noSuchInstance or noSuchName."""


class MalformedResponseError(SnmpError):
    """The response could not be matched to the request."""


class PermissionDeniedError(SnmpError):
    """The agent refused a SET for access reasons."""


class SnmpStatusError(SnmpError):
    """Any other SNMP error status (genErr, badValue, ...)."""

    def __init__(self, message: str, oid: Optional[str] = None, status: str = ""):
        super().__init__(message, oid)
        self.status = status


# Device repository errors

class DeviceUnreachableError(OltError):
    """The OLT did not answer within the retry budget."""


class DecodeError(OltError):
    """An essential field of an SNMP payload could not be decoded."""


class NotProvisionedError(OltError):
    """The ONU slot is not provisioned on the OLT."""


# Cache repository errors

class CacheUnavailableError(OltError):
    """The cache backend failed to serve a request."""


# Use case errors

class NotFoundError(OltError):
    """No ONU exists at the requested coordinate."""
