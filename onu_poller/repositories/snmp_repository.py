"""
Device repository: reads ONU state from a ZTE C320 OLT over SNMP.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.decoders import decode_onu_record
from ..core.exceptions import (
    DecodeError,
    DeviceUnreachableError,
    MalformedResponseError,
    NoSuchObjectError,
    NotProvisionedError,
    SnmpStatusError,
    SnmpTimeoutError,
    SnmpTransportError,
)
from ..core.snmp_client import SnmpClient
from ..models.onu import (
    DeviceCoordinate,
    OnuReading,
    OnuRecord,
    PollOutcome,
    PollResult,
    utcnow,
)

logger = logging.getLogger(__name__)

# GPON port ifIndex on the C320: type nibble 1, board in bits 16-23, port in bits 8-15
GPON_IFINDEX_BASE = 0x10000000

# ONU table columns; the instance suffix is <ifIndex>.<onu_id>
OID_ONU_NAME = "1.3.6.1.4.1.3902.1012.3.28.1.1.2"
OID_ONU_DESCRIPTION = "1.3.6.1.4.1.3902.1012.3.28.1.1.3"
OID_ONU_SERIAL = "1.3.6.1.4.1.3902.1012.3.28.1.1.5"
OID_ONU_STATUS = "1.3.6.1.4.1.3902.1012.3.28.2.1.4"
OID_ONU_RX_POWER = "1.3.6.1.4.1.3902.1012.3.50.12.1.1.10"
OID_ONU_TX_POWER = "1.3.6.1.4.1.3902.1012.3.50.12.1.1.14"

# Attributes read after the status probe, in request order
ONU_ATTRIBUTE_OIDS = {
    "serial": OID_ONU_SERIAL,
    "name": OID_ONU_NAME,
    "description": OID_ONU_DESCRIPTION,
    "rx_power": OID_ONU_RX_POWER,
    "tx_power": OID_ONU_TX_POWER,
}
ESSENTIAL_ATTRIBUTES = frozenset({"serial"})


def pon_if_index(board: int, port: int) -> int:
    return GPON_IFINDEX_BASE | (board << 16) | (port << 8)


def onu_oid(column: str, coordinate: DeviceCoordinate) -> str:
    return f"{column}.{pon_if_index(coordinate.board, coordinate.port)}.{coordinate.onu_id}"


class OnuSnmpRepository:
    """Reads and writes ONU attributes through a shared SNMP session.

    A session that does not multiplex concurrent requests is serialized
    through a gate of size one.
    """

    def __init__(
        self,
        client: SnmpClient,
        max_concurrency: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.clock = clock

        if client.supports_concurrent_requests:
            gate_size = max(1, max_concurrency)
            logger.info(f"SNMP transport multiplexes requests, allowing {gate_size} in flight")
        else:
            gate_size = 1
            logger.info("SNMP transport does not multiplex requests, serializing device access")
        self.gate_size = gate_size
        self._gate = asyncio.Semaphore(gate_size)

    async def _read(self, oid: str, attribute: str, essential: bool) -> Optional[Any]:
        """Read one attribute; absent or undecodable optional attributes yield None."""
        try:
            return await self.client.get(oid)
        except NoSuchObjectError:
            if essential:
                raise DecodeError(f"Essential attribute {attribute} missing at {oid}")
            return None
        except (SnmpTimeoutError, SnmpTransportError) as e:
            raise DeviceUnreachableError(str(e)) from e
        except (MalformedResponseError, SnmpStatusError) as e:
            if essential:
                raise DecodeError(f"Attribute {attribute}: {e}") from e
            logger.warning(f"Ignoring unreadable attribute {attribute} at {oid}: {e}")
            return None

    async def fetch_onu(self, coordinate: DeviceCoordinate) -> OnuRecord:
        """Read and decode one ONU.

        Raises NotProvisionedError when the slot is empty, DeviceUnreachableError
        on timeout or transport failure, DecodeError on a malformed essential field.
        """
        async with self._gate:
            raw: Dict[str, Any] = {}
            try:
                raw["status"] = await self.client.get(onu_oid(OID_ONU_STATUS, coordinate))
            except NoSuchObjectError as e:
                raise NotProvisionedError(f"ONU {coordinate} is not provisioned") from e
            except (SnmpTimeoutError, SnmpTransportError) as e:
                raise DeviceUnreachableError(str(e)) from e
            except (MalformedResponseError, SnmpStatusError) as e:
                logger.warning(f"Unreadable status for ONU {coordinate}: {e}")
                raw["status"] = None

            for attribute, column in ONU_ATTRIBUTE_OIDS.items():
                value = await self._read(
                    onu_oid(column, coordinate), attribute, attribute in ESSENTIAL_ATTRIBUTES
                )
                if value is not None:
                    raw[attribute] = value

            observed_at = self.clock()

        try:
            return decode_onu_record(coordinate, raw, observed_at)
        except DecodeError as e:
            logger.error(f"Failed to decode ONU {coordinate}: {e}")
            raise

    async def list_onu_ids(self, board: int, port: int) -> List[int]:
        """Walk the status column of one PON port and return provisioned ONU ids."""
        base = f"{OID_ONU_STATUS}.{pon_if_index(board, port)}"
        onu_ids = []

        async with self._gate:
            try:
                async for oid, _ in self.client.walk(base):
                    suffix = oid[len(base) + 1:]
                    try:
                        onu_ids.append(int(suffix))
                    except ValueError:
                        logger.warning(f"Skipping unexpected OID {oid} under {base}")
            except (SnmpTimeoutError, SnmpTransportError) as e:
                raise DeviceUnreachableError(str(e)) from e
            except (MalformedResponseError, SnmpStatusError) as e:
                raise DecodeError(f"Walk of port {board}/{port} failed: {e}") from e

        logger.info(f"Found {len(onu_ids)} ONUs on port {board}/{port}")
        return sorted(onu_ids)

    async def _poll(self, coordinate: DeviceCoordinate) -> PollResult:
        try:
            record = await self.fetch_onu(coordinate)
        except NotProvisionedError as e:
            return PollResult(coordinate, PollOutcome.NOT_FOUND, error=e)
        except DeviceUnreachableError as e:
            return PollResult(coordinate, PollOutcome.UNREACHABLE, error=e)
        except DecodeError as e:
            return PollResult(coordinate, PollOutcome.FAILED, error=e)

        reading = OnuReading(record=record, fetched_at=record.observed_at)
        return PollResult(coordinate, PollOutcome.SUCCESS, reading=reading)

    async def fetch_onus_for_port(self, board: int, port: int) -> List[PollResult]:
        """Poll every provisioned ONU of one port; failures are tagged per coordinate."""
        onu_ids = await self.list_onu_ids(board, port)
        coordinates = [DeviceCoordinate(board, port, onu_id) for onu_id in onu_ids]
        return list(await asyncio.gather(*(self._poll(c) for c in coordinates)))

    async def set_description(self, coordinate: DeviceCoordinate, description: str) -> None:
        oid = onu_oid(OID_ONU_DESCRIPTION, coordinate)
        async with self._gate:
            try:
                await self.client.set(oid, description, "OctetString")
            except NoSuchObjectError as e:
                raise NotProvisionedError(f"ONU {coordinate} is not provisioned") from e
            except (SnmpTimeoutError, SnmpTransportError) as e:
                raise DeviceUnreachableError(str(e)) from e
        logger.info(f"Updated description of ONU {coordinate}")
