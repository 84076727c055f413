from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    get_cmd,
    set_cmd,
    walk_cmd,
)
from pysnmp.proto import errind
from pysnmp.proto.rfc1902 import Gauge32, Integer32, IpAddress, OctetString
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Tuple
import asyncio
from loguru import logger

from .exceptions import (
    MalformedResponseError,
    NoSuchObjectError,
    PermissionDeniedError,
    SnmpError,
    SnmpStatusError,
    SnmpTimeoutError,
    SnmpTransportError,
)

# SNMP error-status names that mean the SET was refused for access reasons
ACCESS_DENIED_STATUSES = frozenset({
    "noAccess", "notWritable", "authorizationError", "readOnly", "noCreation",
})
NO_SUCH_STATUSES = frozenset({"noSuchName"})


def _normalize(oid: str) -> str:
    return oid.strip().strip(".")


class SnmpClient:
    """SNMP v2c session against a single OLT.

    The pysnmp transport is created without its own retries; timeouts are
    retried here with exponential backoff so that cancellation can interrupt
    the wait between attempts.
    """

    OID_SYS_NAME = "1.3.6.1.2.1.1.5.0"

    def __init__(
        self,
        host: str,
        community: str = "public",
        port: int = 161,
        timeout: float = 2.0,
        retries: int = 3,
        backoff: float = 0.5,
        concurrent_requests: bool = False,
    ):
        self.host = host
        self.community = community
        self.port = port
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.supports_concurrent_requests = concurrent_requests
        self._engine: Optional[SnmpEngine] = None
        self._auth: Optional[CommunityData] = None
        self._target: Optional[UdpTransportTarget] = None
        self._context: Optional[ContextData] = None

    @classmethod
    def from_settings(cls, settings) -> "SnmpClient":
        return cls(
            host=settings.SNMP_HOST,
            community=settings.SNMP_COMMUNITY,
            port=settings.SNMP_PORT,
            timeout=settings.SNMP_TIMEOUT,
            retries=settings.SNMP_RETRIES,
            backoff=settings.SNMP_BACKOFF,
            concurrent_requests=settings.SNMP_CONCURRENT_REQUESTS,
        )

    async def open(self) -> None:
        """Create the SNMP engine and UDP transport."""
        self._engine = SnmpEngine()
        self._auth = CommunityData(self.community, mpModel=1)
        self._target = await UdpTransportTarget.create(
            (self.host, self.port), timeout=self.timeout, retries=0
        )
        self._context = ContextData()
        logger.info(f"SNMP session opened to {self.host}:{self.port}")

    async def close(self) -> None:
        if self._engine is not None:
            self._engine.close_dispatcher()
            self._engine = None
            logger.info(f"SNMP session to {self.host}:{self.port} closed")

    async def __aenter__(self) -> "SnmpClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _session(self) -> Tuple[SnmpEngine, CommunityData, UdpTransportTarget, ContextData]:
        if self._engine is None:
            raise SnmpTransportError(f"SNMP session to {self.host} is not open")
        return self._engine, self._auth, self._target, self._context

    def _backoff_delay(self, attempt: int) -> float:
        return self.backoff * (2 ** attempt)

    @staticmethod
    def _is_timeout(error_indication: Any) -> bool:
        return isinstance(error_indication, errind.RequestTimedOut)

    @staticmethod
    def _status_error(error_status: Any, oid: str) -> SnmpError:
        name = error_status.prettyPrint()
        if name in NO_SUCH_STATUSES:
            return NoSuchObjectError(f"{name} for {oid}", oid)
        if name in ACCESS_DENIED_STATUSES:
            return PermissionDeniedError(f"{name} for {oid}", oid)
        return SnmpStatusError(f"SNMP error status {name} for {oid}", oid, status=name)

    async def _request(self, label: str, oid: str, send: Callable[[], Awaitable[tuple]]) -> Any:
        """Send a request, retrying on timeout, and return its var-binds."""
        for attempt in range(self.retries + 1):
            error_indication, error_status, error_index, var_binds = await send()

            if error_indication:
                if not self._is_timeout(error_indication):
                    raise SnmpTransportError(f"SNMP {label} {oid}: {error_indication}", oid)
                if attempt < self.retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        f"SNMP {label} {oid} timed out on {self.host}, "
                        f"retry {attempt + 1}/{self.retries} in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                continue

            if error_status:
                raise self._status_error(error_status, oid)

            return var_binds

        logger.error(f"SNMP {label} {oid} on {self.host} timed out after {self.retries + 1} attempts")
        raise SnmpTimeoutError(f"SNMP {label} {oid} timed out", oid)

    async def get(self, oid: str) -> Any:
        """Get a single OID value."""
        oid = _normalize(oid)
        engine, auth, target, context = self._session()

        var_binds = await self._request(
            "GET", oid,
            lambda: get_cmd(
                engine, auth, target, context,
                ObjectType(ObjectIdentity(oid)),
                lookupMib=False,
            ),
        )

        if len(var_binds) != 1:
            raise MalformedResponseError(f"Expected one var-bind for {oid}, got {len(var_binds)}", oid)
        response_oid, value = _normalize(str(var_binds[0][0])), var_binds[0][1]
        if response_oid != oid:
            raise MalformedResponseError(f"Response OID {response_oid} does not match {oid}", oid)
        if isinstance(value, (NoSuchObject, NoSuchInstance, EndOfMibView)):
            raise NoSuchObjectError(f"{value.__class__.__name__} for {oid}", oid)
        return value

    async def walk(self, oid: str) -> AsyncIterator[Tuple[str, Any]]:
        """Walk the subtree under ``oid`` yielding (oid, value) pairs.

        A timeout before the first row restarts the walk; a timeout after rows
        were yielded raises SnmpTimeoutError.
        """
        base = _normalize(oid)
        engine, auth, target, context = self._session()
        attempt = 0
        yielded = False

        while True:
            restart = False
            iterator = walk_cmd(
                engine, auth, target, context,
                ObjectType(ObjectIdentity(base)),
                lexicographicMode=False,
                lookupMib=False,
            )
            try:
                async for error_indication, error_status, error_index, var_binds in iterator:
                    if error_indication:
                        if not self._is_timeout(error_indication):
                            raise SnmpTransportError(f"SNMP WALK {base}: {error_indication}", base)
                        if yielded:
                            raise SnmpTimeoutError(f"SNMP WALK {base} interrupted by timeout", base)
                        if attempt >= self.retries:
                            raise SnmpTimeoutError(f"SNMP WALK {base} timed out", base)
                        restart = True
                        break

                    if error_status:
                        raise self._status_error(error_status, base)

                    for var_bind in var_binds:
                        row_oid, value = _normalize(str(var_bind[0])), var_bind[1]
                        if isinstance(value, EndOfMibView) or not row_oid.startswith(base + "."):
                            return
                        yielded = True
                        yield row_oid, value
            finally:
                await iterator.aclose()

            if not restart:
                return
            delay = self._backoff_delay(attempt)
            logger.warning(f"SNMP WALK {base} timed out on {self.host}, restarting in {delay:.2f}s")
            await asyncio.sleep(delay)
            attempt += 1

    async def set(self, oid: str, value: Any, value_type: str = "OctetString") -> bool:
        """Set OID value."""
        type_map = {
            "Integer": Integer32,
            "OctetString": OctetString,
            "IpAddress": IpAddress,
            "Gauge32": Gauge32,
        }
        if value_type not in type_map:
            raise ValueError(f"Unsupported value type: {value_type}")

        oid = _normalize(oid)
        engine, auth, target, context = self._session()
        await self._request(
            "SET", oid,
            lambda: set_cmd(
                engine, auth, target, context,
                ObjectType(ObjectIdentity(oid), type_map[value_type](value)),
                lookupMib=False,
            ),
        )
        logger.info(f"SNMP SET successful for {oid} = {value}")
        return True

    async def test_connection(self) -> bool:
        """Test SNMP connection to OLT."""
        try:
            result = await self.get(self.OID_SYS_NAME)
            return result is not None
        except SnmpError as e:
            logger.error(f"Connection test failed: {str(e)}")
            return False
