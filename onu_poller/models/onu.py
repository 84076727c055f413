"""
ONU domain records.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

# ZTE C320 chassis limits
MAX_BOARD = 2
MAX_PORT = 16
MAX_ONU_ID = 128

CACHE_KEY_PREFIX = "onu"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OnuStatus(str, Enum):
    """Operational status of an ONU."""
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class PollOutcome(str, Enum):
    """Tagged outcome of polling one coordinate."""
    SUCCESS = "success"
    STALE_FALLBACK = "stale_fallback"
    NOT_FOUND = "not_found"
    UNREACHABLE = "unreachable"
    FAILED = "failed"


@dataclass(frozen=True, order=True)
class DeviceCoordinate:
    """One ONU slot on the OLT."""
    board: int
    port: int
    onu_id: int

    def __post_init__(self):
        if not 1 <= self.board <= MAX_BOARD:
            raise ValueError(f"Board must be between 1 and {MAX_BOARD}, got {self.board}")
        if not 1 <= self.port <= MAX_PORT:
            raise ValueError(f"Port must be between 1 and {MAX_PORT}, got {self.port}")
        if not 1 <= self.onu_id <= MAX_ONU_ID:
            raise ValueError(f"ONU ID must be between 1 and {MAX_ONU_ID}, got {self.onu_id}")

    @property
    def cache_key(self) -> str:
        return f"{port_key_prefix(self.board, self.port)}{self.onu_id}"

    def __str__(self) -> str:
        return f"{self.board}/{self.port}/{self.onu_id}"


def port_key_prefix(board: int, port: int) -> str:
    """Key prefix shared by every ONU on one PON port."""
    return f"{CACHE_KEY_PREFIX}:{board}:{port}:"


def _power_to_json(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _power_from_json(value: Optional[str]) -> Optional[Decimal]:
    return None if value is None else Decimal(value)


@dataclass(frozen=True)
class OnuRecord:
    """Decoded ONU state as observed on the device."""
    coordinate: DeviceCoordinate
    status: OnuStatus
    rx_power: Optional[Decimal]  # dBm, None when the OLT reports no reading
    tx_power: Optional[Decimal]
    serial_number: bytes
    name: Optional[str]
    description: Optional[str]
    observed_at: datetime

    @property
    def serial_display(self) -> str:
        """Vendor id followed by the hex vendor-specific part, e.g. ZTEGC0FFEE01."""
        vendor, specific = self.serial_number[:4], self.serial_number[4:]
        if len(self.serial_number) == 8 and vendor.isalpha() and vendor.isascii():
            return vendor.decode("ascii") + specific.hex().upper()
        return self.serial_number.hex().upper()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "board": self.coordinate.board,
            "port": self.coordinate.port,
            "onu_id": self.coordinate.onu_id,
            "status": self.status.value,
            "rx_power": _power_to_json(self.rx_power),
            "tx_power": _power_to_json(self.tx_power),
            "serial_number": self.serial_number.hex(),
            "name": self.name,
            "description": self.description,
            "observed_at": self.observed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OnuRecord":
        return cls(
            coordinate=DeviceCoordinate(data["board"], data["port"], data["onu_id"]),
            status=OnuStatus(data["status"]),
            rx_power=_power_from_json(data["rx_power"]),
            tx_power=_power_from_json(data["tx_power"]),
            serial_number=bytes.fromhex(data["serial_number"]),
            name=data["name"],
            description=data["description"],
            observed_at=datetime.fromisoformat(data["observed_at"]),
        )


@dataclass(frozen=True)
class CacheEntry:
    """A record as stored in the cache with the time it was read from the device."""
    record: OnuRecord
    fetched_at: datetime


@dataclass(frozen=True)
class OnuReading:
    """A record handed back to callers of the use case."""
    record: OnuRecord
    fetched_at: datetime
    stale: bool = False
    from_cache: bool = False


@dataclass
class PollResult:
    """Outcome of polling a single coordinate inside a batch."""
    coordinate: DeviceCoordinate
    outcome: PollOutcome
    reading: Optional[OnuReading] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.reading is not None
