import asyncio
from decimal import Decimal

import pytest
from pysnmp.proto.rfc1902 import OctetString

from onu_poller.core.exceptions import DecodeError, DeviceUnreachableError, NotProvisionedError
from onu_poller.models.onu import DeviceCoordinate, OnuStatus, PollOutcome
from onu_poller.repositories.snmp_repository import (
    OID_ONU_DESCRIPTION,
    OID_ONU_RX_POWER,
    OID_ONU_SERIAL,
    OID_ONU_STATUS,
    OnuSnmpRepository,
    onu_oid,
    pon_if_index,
)

from .conftest import SERIAL, FakeSnmpClient

ONU = DeviceCoordinate(1, 2, 5)


def test_if_index_encoding():
    assert pon_if_index(1, 1) == 268501248
    assert pon_if_index(1, 2) == 268501504
    assert pon_if_index(2, 1) == 268566784


def test_onu_oid_template():
    assert onu_oid(OID_ONU_STATUS, ONU) == f"{OID_ONU_STATUS}.268501504.5"


async def test_fetch_onu_decodes_every_field(snmp_client, device, clock):
    snmp_client.provision(ONU, status=4, rx_power=-1500, tx_power=231, name="onu-5", description="shop")

    record = await device.fetch_onu(ONU)

    assert record.coordinate == ONU
    assert record.status is OnuStatus.ONLINE
    assert record.rx_power == Decimal("-15.00")
    assert record.tx_power == Decimal("2.31")
    assert record.serial_number == SERIAL
    assert record.name == "onu-5"
    assert record.description == "shop"
    assert record.observed_at == clock.now


async def test_unprovisioned_slot(snmp_client, device):
    with pytest.raises(NotProvisionedError):
        await device.fetch_onu(ONU)
    assert snmp_client.requests == 1


async def test_timeout_is_device_unreachable(snmp_client, device):
    snmp_client.provision(ONU)
    snmp_client.unreachable = True

    with pytest.raises(DeviceUnreachableError):
        await device.fetch_onu(ONU)


async def test_missing_serial_fails_the_record(snmp_client, device):
    snmp_client.provision(ONU)
    del snmp_client.values[onu_oid(OID_ONU_SERIAL, ONU)]

    with pytest.raises(DecodeError):
        await device.fetch_onu(ONU)


async def test_missing_optional_fields_are_absent(snmp_client, device):
    snmp_client.provision(ONU, status=2)
    del snmp_client.values[onu_oid(OID_ONU_RX_POWER, ONU)]
    del snmp_client.values[onu_oid(OID_ONU_DESCRIPTION, ONU)]

    record = await device.fetch_onu(ONU)

    assert record.status is OnuStatus.OFFLINE
    assert record.rx_power is None
    assert record.description is None


async def test_list_onu_ids_walks_one_port(snmp_client, device):
    for onu_id in (7, 1, 3):
        snmp_client.provision(DeviceCoordinate(1, 2, onu_id))
    snmp_client.provision(DeviceCoordinate(1, 3, 2))

    assert await device.list_onu_ids(1, 2) == [1, 3, 7]


async def test_list_onu_ids_unreachable(snmp_client, device):
    snmp_client.unreachable = True

    with pytest.raises(DeviceUnreachableError):
        await device.list_onu_ids(1, 2)


async def test_fetch_port_isolates_failures(snmp_client, device):
    for onu_id in (1, 2, 3):
        snmp_client.provision(DeviceCoordinate(1, 2, onu_id))
    snmp_client.fail(DeviceCoordinate(1, 2, 2))

    results = await device.fetch_onus_for_port(1, 2)

    outcomes = {r.coordinate.onu_id: r.outcome for r in results}
    assert outcomes == {1: PollOutcome.SUCCESS, 2: PollOutcome.UNREACHABLE, 3: PollOutcome.SUCCESS}
    assert isinstance(results[1].error, DeviceUnreachableError)


async def test_non_multiplexing_session_is_serialized(snmp_client, device):
    for onu_id in range(1, 9):
        snmp_client.provision(DeviceCoordinate(1, 2, onu_id))

    await asyncio.gather(*(device.fetch_onu(DeviceCoordinate(1, 2, i)) for i in range(1, 9)))

    assert device.gate_size == 1
    assert snmp_client.max_in_flight == 1


async def test_multiplexing_session_is_bounded(clock):
    client = FakeSnmpClient(concurrent_requests=True)
    device = OnuSnmpRepository(client, max_concurrency=3, clock=clock)
    for onu_id in range(1, 9):
        client.provision(DeviceCoordinate(1, 2, onu_id))

    await asyncio.gather(*(device.fetch_onu(DeviceCoordinate(1, 2, i)) for i in range(1, 9)))

    assert device.gate_size == 3
    assert 1 < client.max_in_flight <= 3


async def test_set_description(snmp_client, device):
    snmp_client.provision(ONU)

    await device.set_description(ONU, "moved")

    assert snmp_client.values[onu_oid(OID_ONU_DESCRIPTION, ONU)] == OctetString("moved")


async def test_set_description_on_empty_slot(device):
    with pytest.raises(NotProvisionedError):
        await device.set_description(ONU, "moved")
