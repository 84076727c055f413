"""
ONU reconciliation service.

Decides per coordinate whether the cached record is fresh enough, refreshes
from the OLT otherwise, and falls back to the last known record when the OLT
cannot be reached.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple, Union

from ..core.exceptions import (
    CacheUnavailableError,
    DecodeError,
    DeviceUnreachableError,
    NotFoundError,
    NotProvisionedError,
)
from ..models.onu import (
    MAX_ONU_ID,
    CacheEntry,
    DeviceCoordinate,
    OnuReading,
    OnuRecord,
    PollOutcome,
    PollResult,
    utcnow,
)
from ..repositories.redis_repository import OnuRedisRepository
from ..repositories.snmp_repository import OnuSnmpRepository

logger = logging.getLogger(__name__)

Staleness = Union[timedelta, float, int]

# Largest accepted staleness window, one year
MAX_STALENESS_SECONDS = 365 * 24 * 3600.0


def as_staleness(value: Staleness) -> timedelta:
    """Accept seconds or a timedelta; negative or unrepresentable windows are rejected."""
    if not isinstance(value, timedelta):
        try:
            value = timedelta(seconds=value)
        except OverflowError as e:
            raise ValueError(f"max_staleness {value} is out of range") from e
    if value < timedelta(0):
        raise ValueError("max_staleness must not be negative")
    return value


class DeviceHealth:
    """What one batch has learned about the OLT.

    Until the OLT answers a request of the batch, the first unreachable error
    marks it down and the remaining coordinates skip the device. Once it has
    answered, timeouts stay local to their coordinate.
    """

    def __init__(self, reachable: bool = True, reason: str = "OLT unreachable"):
        self.reachable = reachable
        self.reason = reason
        self.has_answered = False

    def record_answer(self) -> None:
        self.has_answered = True

    def record_failure(self, error: Exception) -> None:
        if self.reachable and not self.has_answered:
            self.reachable = False
            self.reason = f"OLT unreachable: {error}"


class OnuService:
    """Cache-first access to ONU state."""

    def __init__(
        self,
        device: OnuSnmpRepository,
        cache: OnuRedisRepository,
        fanout_limit: int = 8,
        request_timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.device = device
        self.cache = cache
        self.fanout_limit = max(1, fanout_limit)
        self.request_timeout = request_timeout
        self.clock = clock

    # Cache access. A failing cache degrades to a miss; it never hides a device result.

    async def _cached(self, coordinate: DeviceCoordinate) -> Optional[CacheEntry]:
        try:
            return await self.cache.get(coordinate)
        except CacheUnavailableError as e:
            logger.warning(f"Treating ONU {coordinate} as a cache miss: {e}")
            return None

    async def _cached_many(self, coordinates: List[DeviceCoordinate]) -> Dict[DeviceCoordinate, CacheEntry]:
        try:
            return await self.cache.get_many(coordinates)
        except CacheUnavailableError as e:
            logger.warning(f"Treating {len(coordinates)} ONUs as cache misses: {e}")
            return {}

    async def _store(self, record: OnuRecord) -> None:
        try:
            await self.cache.put(record.coordinate, record)
        except CacheUnavailableError as e:
            logger.error(f"Failed to cache ONU {record.coordinate}: {e}")

    async def _forget(self, coordinate: DeviceCoordinate) -> None:
        try:
            await self.cache.invalidate(coordinate)
        except CacheUnavailableError as e:
            logger.error(f"Failed to invalidate ONU {coordinate}: {e}")

    def _is_fresh(self, fetched_at: datetime, max_staleness: Optional[timedelta]) -> bool:
        if max_staleness is None:
            return False
        return self.clock() - fetched_at <= max_staleness

    # Deadlines

    def _deadline(self) -> float:
        return asyncio.get_running_loop().time() + self.request_timeout

    @staticmethod
    def _remaining(deadline: float) -> float:
        return max(0.0, deadline - asyncio.get_running_loop().time())

    async def _with_deadline(self, awaitable, what: str, timeout: Optional[float] = None):
        """Run a device call under the request deadline; expiry cancels it."""
        if timeout is None:
            timeout = self.request_timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DeviceUnreachableError(f"{what} exceeded the {self.request_timeout}s request deadline") from e

    # Per-coordinate state machine

    async def _fetch(self, coordinate: DeviceCoordinate, health: Optional[DeviceHealth]) -> OnuRecord:
        if health is None:
            return await self.device.fetch_onu(coordinate)
        if not health.reachable:
            raise DeviceUnreachableError(health.reason)

        try:
            record = await self.device.fetch_onu(coordinate)
        except DeviceUnreachableError as e:
            health.record_failure(e)
            raise
        except (NotProvisionedError, DecodeError):
            health.record_answer()
            raise
        health.record_answer()
        return record

    async def _reconcile(
        self,
        coordinate: DeviceCoordinate,
        max_staleness: Optional[timedelta],
        entry: Optional[CacheEntry],
        health: Optional[DeviceHealth] = None,
    ) -> OnuReading:
        """Serve ``entry`` when fresh, else refresh from the OLT.

        ``max_staleness=None`` forces the device read.
        """
        if entry is not None and self._is_fresh(entry.fetched_at, max_staleness):
            return OnuReading(entry.record, entry.fetched_at, stale=False, from_cache=True)

        try:
            record = await self._with_deadline(self._fetch(coordinate, health), f"Refresh of ONU {coordinate}")
        except DeviceUnreachableError:
            if entry is None:
                raise
            logger.warning(f"OLT unreachable, serving stale ONU {coordinate} fetched at {entry.fetched_at.isoformat()}")
            return OnuReading(entry.record, entry.fetched_at, stale=True, from_cache=True)
        except NotProvisionedError as e:
            await self._forget(coordinate)
            raise NotFoundError(f"ONU {coordinate} not found") from e

        await self._store(record)
        return OnuReading(record, record.observed_at)

    async def get_onu(self, coordinate: DeviceCoordinate, max_staleness: Staleness) -> OnuReading:
        """Return one ONU, from cache when fresh enough.

        Raises NotFoundError, DeviceUnreachableError (no cached fallback) or DecodeError.
        """
        max_staleness = as_staleness(max_staleness)
        entry = await self._cached(coordinate)
        return await self._reconcile(coordinate, max_staleness, entry)

    # Port level operations

    async def _port_onu_ids(
        self,
        board: int,
        port: int,
        max_staleness: timedelta,
        allow_fallback: bool = True,
        timeout: Optional[float] = None,
    ) -> Tuple[List[int], bool]:
        """Provisioned ONU ids of a port and whether the OLT answered."""
        try:
            index = await self.cache.get_port_index(board, port)
        except CacheUnavailableError as e:
            logger.warning(f"Port index of {board}/{port} unavailable: {e}")
            index = None

        if index is not None and self._is_fresh(index[1], max_staleness):
            return index[0], True

        try:
            onu_ids = await self._with_deadline(
                self.device.list_onu_ids(board, port), f"Walk of port {board}/{port}", timeout
            )
        except DeviceUnreachableError:
            if not allow_fallback:
                raise
            if index is not None:
                logger.warning(f"OLT unreachable, using stale ONU list of port {board}/{port}")
                return index[0], False
            try:
                cached = await self.cache.get_port(board, port)
            except CacheUnavailableError as e:
                logger.warning(f"Cached ONUs of port {board}/{port} unavailable: {e}")
                cached = {}
            if not cached:
                raise
            logger.warning(f"OLT unreachable, using {len(cached)} cached ONUs of port {board}/{port}")
            return sorted(c.onu_id for c in cached), False

        await self._update_port_index(board, port, onu_ids, previous=index[0] if index else None)
        return onu_ids, True

    async def _update_port_index(
        self, board: int, port: int, onu_ids: List[int], previous: Optional[List[int]] = None
    ) -> None:
        """Store a fresh ONU list and drop entries of ONUs that left the port."""
        try:
            await self.cache.put_port_index(board, port, onu_ids, self.clock())
        except CacheUnavailableError as e:
            logger.error(f"Failed to cache ONU list of port {board}/{port}: {e}")

        for onu_id in sorted(set(previous or []) - set(onu_ids)):
            await self._forget(DeviceCoordinate(board, port, onu_id))

    async def _drop_from_port_index(self, board: int, port: int, onu_ids: List[int]) -> None:
        """Remove unprovisioned ONUs from the cached list, keeping its age."""
        gone = set(onu_ids)
        try:
            index = await self.cache.get_port_index(board, port)
            if index is None:
                return
            remaining, fetched_at = index
            await self.cache.put_port_index(board, port, [i for i in remaining if i not in gone], fetched_at)
        except CacheUnavailableError as e:
            logger.error(f"Failed to update ONU list of port {board}/{port}: {e}")

    async def _poll_one(
        self,
        coordinate: DeviceCoordinate,
        max_staleness: Optional[timedelta],
        entry: Optional[CacheEntry],
        health: DeviceHealth,
    ) -> PollResult:
        try:
            reading = await self._reconcile(coordinate, max_staleness, entry, health)
        except NotFoundError as e:
            return PollResult(coordinate, PollOutcome.NOT_FOUND, error=e)
        except DeviceUnreachableError as e:
            return PollResult(coordinate, PollOutcome.UNREACHABLE, error=e)
        except DecodeError as e:
            return PollResult(coordinate, PollOutcome.FAILED, error=e)

        outcome = PollOutcome.STALE_FALLBACK if reading.stale else PollOutcome.SUCCESS
        return PollResult(coordinate, outcome, reading=reading)

    @staticmethod
    def _expired(coordinate: DeviceCoordinate, entry: Optional[CacheEntry]) -> PollResult:
        if entry is None:
            error = DeviceUnreachableError(f"Request deadline passed before ONU {coordinate} was read")
            return PollResult(coordinate, PollOutcome.UNREACHABLE, error=error)
        reading = OnuReading(entry.record, entry.fetched_at, stale=True, from_cache=True)
        return PollResult(coordinate, PollOutcome.STALE_FALLBACK, reading=reading)

    async def _poll_batch(
        self,
        coordinates: List[DeviceCoordinate],
        max_staleness: Optional[timedelta],
        entries: Dict[DeviceCoordinate, CacheEntry],
        health: DeviceHealth,
        deadline: float,
    ) -> List[PollResult]:
        """Run the per-coordinate flow with bounded fan-out under one deadline.

        Coordinates still in flight when the deadline passes are cancelled and
        fall back to their cached entry, or are reported unreachable.
        """
        results: Dict[DeviceCoordinate, PollResult] = {}
        semaphore = asyncio.Semaphore(self.fanout_limit)

        async def poll(coordinate: DeviceCoordinate) -> PollResult:
            async with semaphore:
                return await self._poll_one(coordinate, max_staleness, entries.get(coordinate), health)

        tasks: Dict[asyncio.Task, DeviceCoordinate] = {}
        for coordinate in coordinates:
            entry = entries.get(coordinate)
            if entry is not None and self._is_fresh(entry.fetched_at, max_staleness):
                reading = OnuReading(entry.record, entry.fetched_at, stale=False, from_cache=True)
                results[coordinate] = PollResult(coordinate, PollOutcome.SUCCESS, reading=reading)
            else:
                tasks[asyncio.create_task(poll(coordinate))] = coordinate

        if tasks:
            try:
                done, pending = await asyncio.wait(tasks, timeout=self._remaining(deadline))
            finally:
                for task in tasks:
                    task.cancel()

            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(f"Request deadline passed with {len(pending)}/{len(coordinates)} ONUs unread")

            for task, coordinate in tasks.items():
                if task in done:
                    results[coordinate] = task.result()
                else:
                    results[coordinate] = self._expired(coordinate, entries.get(coordinate))

        return [results[c] for c in coordinates]

    async def poll_port(self, board: int, port: int, max_staleness: Staleness) -> List[PollResult]:
        """Poll every ONU of a port with bounded fan-out; one result per coordinate.

        The whole call, port walk included, runs under one request deadline.
        """
        max_staleness = as_staleness(max_staleness)
        deadline = self._deadline()

        onu_ids, device_reachable = await self._port_onu_ids(
            board, port, max_staleness, timeout=self._remaining(deadline)
        )
        coordinates = [DeviceCoordinate(board, port, onu_id) for onu_id in onu_ids]
        entries = await self._cached_many(coordinates)
        health = DeviceHealth(device_reachable, reason=f"OLT unreachable while polling port {board}/{port}")

        results = await self._poll_batch(coordinates, max_staleness, entries, health, deadline)

        not_found = [r.coordinate.onu_id for r in results if r.outcome is PollOutcome.NOT_FOUND]
        if not_found:
            await self._drop_from_port_index(board, port, not_found)

        failed = [r for r in results if not r.ok]
        if failed:
            logger.warning(
                f"Port {board}/{port}: {len(results) - len(failed)}/{len(results)} ONUs polled, "
                f"{len(failed)} failed"
            )
        return results

    async def list_onus_for_port(self, board: int, port: int, max_staleness: Staleness) -> List[OnuReading]:
        """Readings for every ONU of a port that could be served, fresh or stale."""
        results = await self.poll_port(board, port, max_staleness)
        return [r.reading for r in results if r.reading is not None]

    async def refresh_port(self, board: int, port: int) -> List[PollResult]:
        """Force a device read of a whole port and reconcile the cache with it.

        Each ONU is written to or evicted from the cache as soon as it is read;
        ONUs unread at the deadline are reported unreachable.
        """
        deadline = self._deadline()
        onu_ids = await self._with_deadline(
            self.device.list_onu_ids(board, port), f"Walk of port {board}/{port}", self._remaining(deadline)
        )

        try:
            cached = await self.cache.get_port(board, port)
        except CacheUnavailableError as e:
            logger.warning(f"Cached ONUs of port {board}/{port} unavailable: {e}")
            cached = {}

        coordinates = [DeviceCoordinate(board, port, onu_id) for onu_id in onu_ids]
        results = await self._poll_batch(coordinates, None, {}, DeviceHealth(), deadline)

        provisioned = [r.coordinate.onu_id for r in results if r.outcome is not PollOutcome.NOT_FOUND]
        await self._update_port_index(board, port, provisioned, previous=[c.onu_id for c in cached])

        logger.info(f"Refreshed port {board}/{port}: {sum(r.ok for r in results)}/{len(results)} ONUs")
        return results

    async def get_empty_onu_ids(self, board: int, port: int, max_staleness: Staleness) -> List[int]:
        """ONU ids with no provisioned ONU; requires an answer from the OLT or a fresh list."""
        onu_ids, _ = await self._port_onu_ids(board, port, as_staleness(max_staleness), allow_fallback=False)
        used = set(onu_ids)
        return [onu_id for onu_id in range(1, MAX_ONU_ID + 1) if onu_id not in used]

    async def update_description(self, coordinate: DeviceCoordinate, description: str) -> OnuReading:
        """Write the description to the OLT and return the re-read record."""
        try:
            await self._with_deadline(
                self.device.set_description(coordinate, description), f"Update of ONU {coordinate}"
            )
        except NotProvisionedError as e:
            await self._forget(coordinate)
            raise NotFoundError(f"ONU {coordinate} not found") from e

        await self._forget(coordinate)
        return await self._reconcile(coordinate, None, None)
