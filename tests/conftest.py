import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import fakeredis
from fakeredis import aioredis as fake_aioredis
from pysnmp.proto.rfc1902 import Integer32, OctetString

from onu_poller.core.exceptions import NoSuchObjectError, SnmpTimeoutError
from onu_poller.models.onu import DeviceCoordinate
from onu_poller.repositories.redis_repository import OnuRedisRepository
from onu_poller.repositories.snmp_repository import (
    OID_ONU_DESCRIPTION,
    OID_ONU_NAME,
    OID_ONU_RX_POWER,
    OID_ONU_SERIAL,
    OID_ONU_STATUS,
    OID_ONU_TX_POWER,
    OnuSnmpRepository,
    onu_oid,
    pon_if_index,
)
from onu_poller.services.onu_service import OnuService

SERIAL = b"ZTEG\xc0\xff\xee\x01"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _oid_key(oid: str):
    return tuple(int(part) for part in oid.split("."))


class FakeSnmpClient:
    """In-memory OLT agent with the SnmpClient interface."""

    def __init__(self, concurrent_requests: bool = False):
        self.values = {}
        self.supports_concurrent_requests = concurrent_requests
        self.requests = 0
        self.unreachable = False
        self.failing_suffixes = set()
        self.hanging_suffixes = set()
        self.in_flight = 0
        self.max_in_flight = 0

    def fail(self, coordinate: DeviceCoordinate) -> None:
        self.failing_suffixes.add(f".{pon_if_index(coordinate.board, coordinate.port)}.{coordinate.onu_id}")

    def hang(self, coordinate: DeviceCoordinate) -> None:
        """Requests for this ONU never get an answer."""
        self.hanging_suffixes.add(f".{pon_if_index(coordinate.board, coordinate.port)}.{coordinate.onu_id}")

    def _check(self, oid: str) -> None:
        self.requests += 1
        if self.unreachable or any(oid.endswith(s) for s in self.failing_suffixes):
            raise SnmpTimeoutError(f"SNMP request {oid} timed out", oid)

    async def get(self, oid: str):
        self._check(oid)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if any(oid.endswith(s) for s in self.hanging_suffixes):
                await asyncio.Event().wait()
            if oid not in self.values:
                raise NoSuchObjectError(f"noSuchInstance for {oid}", oid)
            return self.values[oid]
        finally:
            self.in_flight -= 1

    async def walk(self, oid: str):
        self._check(oid)
        for key in sorted(self.values, key=_oid_key):
            if key.startswith(oid + "."):
                yield key, self.values[key]

    async def set(self, oid: str, value, value_type: str = "OctetString") -> bool:
        self._check(oid)
        if oid not in self.values:
            raise NoSuchObjectError(f"noSuchInstance for {oid}", oid)
        self.values[oid] = OctetString(value)
        return True

    def provision(
        self,
        coordinate: DeviceCoordinate,
        status: int = 4,
        rx_power: int = -1500,
        tx_power: int = 250,
        serial: bytes = SERIAL,
        name: str = "onu-1",
        description: str = "customer",
    ) -> None:
        self.values[onu_oid(OID_ONU_STATUS, coordinate)] = Integer32(status)
        self.values[onu_oid(OID_ONU_SERIAL, coordinate)] = OctetString(serial)
        self.values[onu_oid(OID_ONU_NAME, coordinate)] = OctetString(name)
        self.values[onu_oid(OID_ONU_DESCRIPTION, coordinate)] = OctetString(description)
        self.values[onu_oid(OID_ONU_RX_POWER, coordinate)] = Integer32(rx_power)
        self.values[onu_oid(OID_ONU_TX_POWER, coordinate)] = Integer32(tx_power)

    def remove(self, coordinate: DeviceCoordinate) -> None:
        suffix = f".{pon_if_index(coordinate.board, coordinate.port)}.{coordinate.onu_id}"
        for oid in [o for o in self.values if o.endswith(suffix)]:
            del self.values[oid]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def snmp_client():
    return FakeSnmpClient()


@pytest.fixture
def device(snmp_client, clock):
    return OnuSnmpRepository(snmp_client, clock=clock)


@pytest.fixture
def redis_client():
    return fake_aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache(redis_client):
    return OnuRedisRepository(redis_client)


@pytest.fixture
def service(device, cache, clock):
    return OnuService(device, cache, fanout_limit=4, request_timeout=5.0, clock=clock)
