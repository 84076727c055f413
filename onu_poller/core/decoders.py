"""
Decoding rules from raw ZTE C320 SNMP values to ONU fields.

All vendor-specific scaling and status constants live here. Values are taken
from the ZXA10 C320 GPON MIB (zxGponOnuMgmt / zxGponOpticalMgmt tables).
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from pyasn1.type import univ

from ..models.onu import DeviceCoordinate, OnuRecord, OnuStatus
from .exceptions import DecodeError

logger = logging.getLogger(__name__)

# Optical power is reported in hundredths of a dBm as a signed integer
POWER_DIVISOR = Decimal(100)
POWER_QUANTUM = Decimal("0.01")
# Raw values the OLT returns when the ONU has no optical reading (offline, LOS)
POWER_NO_READING = frozenset({65535, -65535, 2147483647, -2147483648})

# zxGponOnuPhaseState
STATUS_CODES = {
    1: OnuStatus.OFFLINE,   # logging
    2: OnuStatus.OFFLINE,   # LOS
    3: OnuStatus.OFFLINE,   # syncMib
    4: OnuStatus.ONLINE,    # working
    5: OnuStatus.OFFLINE,   # dyingGasp
    6: OnuStatus.OFFLINE,   # authFailed
    7: OnuStatus.OFFLINE,   # offline
}

SERIAL_LENGTH = 8


def decode_status(value: Any) -> OnuStatus:
    """Map a phase-state code to OnuStatus; anything unrecognized is UNKNOWN."""
    if not isinstance(value, univ.Integer):
        logger.warning(f"Unexpected status value type {type(value).__name__}")
        return OnuStatus.UNKNOWN
    return STATUS_CODES.get(int(value), OnuStatus.UNKNOWN)


def decode_power(value: Any) -> Optional[Decimal]:
    """Scale a raw power integer to dBm."""
    if value is None:
        return None
    if not isinstance(value, univ.Integer):
        logger.warning(f"Unexpected power value type {type(value).__name__}")
        return None

    raw = int(value)
    if raw in POWER_NO_READING:
        return None
    return (Decimal(raw) / POWER_DIVISOR).quantize(POWER_QUANTUM)


def decode_serial(value: Any) -> bytes:
    if value is None:
        raise DecodeError("Serial number missing")
    if not isinstance(value, univ.OctetString):
        raise DecodeError(f"Serial number has type {type(value).__name__}")

    serial = value.asOctets()
    if len(serial) != SERIAL_LENGTH:
        raise DecodeError(f"Serial number must be {SERIAL_LENGTH} octets, got {len(serial)}")
    return serial


def decode_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, univ.OctetString):
        logger.warning(f"Unexpected text value type {type(value).__name__}")
        return None
    return value.asOctets().decode("utf-8", errors="replace").strip()


def decode_onu_record(
    coordinate: DeviceCoordinate,
    raw: Mapping[str, Any],
    observed_at: datetime,
) -> OnuRecord:
    """Build an OnuRecord from raw values keyed by attribute name.

    Missing optional attributes are absent from ``raw``; ``serial`` is required.
    """
    try:
        serial = decode_serial(raw.get("serial"))
    except DecodeError as e:
        raise DecodeError(f"ONU {coordinate}: {e}") from e

    return OnuRecord(
        coordinate=coordinate,
        status=decode_status(raw.get("status")),
        rx_power=decode_power(raw.get("rx_power")),
        tx_power=decode_power(raw.get("tx_power")),
        serial_number=serial,
        name=decode_text(raw.get("name")),
        description=decode_text(raw.get("description")),
        observed_at=observed_at,
    )
