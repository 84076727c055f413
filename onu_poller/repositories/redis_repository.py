"""
Cache repository: decoded ONU records in Redis.

Key format:    onu:{board}:{port}:{onu_id}
Value:         JSON {"record": {...}, "fetched_at": iso8601}
Port index:    onu_index:{board}:{port} -> JSON {"onu_ids": [...], "fetched_at": iso8601}

Staleness is not enforced here; callers compare ``fetched_at`` themselves.
"""

import json
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..core.exceptions import CacheUnavailableError
from ..models.onu import CacheEntry, DeviceCoordinate, OnuRecord, port_key_prefix

logger = logging.getLogger(__name__)

PORT_INDEX_PREFIX = "onu_index"


def _port_index_key(board: int, port: int) -> str:
    return f"{PORT_INDEX_PREFIX}:{board}:{port}"


class OnuRedisRepository:
    """Stores CacheEntry values keyed by device coordinate."""

    def __init__(self, client: aioredis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 5.0) -> "OnuRedisRepository":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        return cls(client)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._redis.aclose()

    @staticmethod
    def _encode(record: OnuRecord) -> str:
        return json.dumps({
            "record": record.to_dict(),
            "fetched_at": record.observed_at.isoformat(),
        })

    async def _decode(self, key: str, payload: Optional[str]) -> Optional[CacheEntry]:
        if payload is None:
            return None
        try:
            data = json.loads(payload)
            return CacheEntry(
                record=OnuRecord.from_dict(data["record"]),
                fetched_at=datetime.fromisoformat(data["fetched_at"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping undecodable cache entry {key}: {e}")
            await self._redis.delete(key)
            return None

    async def get(self, coordinate: DeviceCoordinate) -> Optional[CacheEntry]:
        key = coordinate.cache_key
        try:
            payload = await self._redis.get(key)
            return await self._decode(key, payload)
        except RedisError as e:
            raise CacheUnavailableError(f"Cache read of {key} failed: {e}") from e

    async def exists(self, coordinate: DeviceCoordinate) -> bool:
        try:
            return bool(await self._redis.exists(coordinate.cache_key))
        except RedisError as e:
            raise CacheUnavailableError(f"Cache lookup of {coordinate.cache_key} failed: {e}") from e

    async def get_many(self, coordinates: Iterable[DeviceCoordinate]) -> Dict[DeviceCoordinate, CacheEntry]:
        """Bulk read; coordinates without an entry are absent from the result."""
        coordinates = list(coordinates)
        if not coordinates:
            return {}

        keys = [c.cache_key for c in coordinates]
        try:
            payloads = await self._redis.mget(keys)
            entries = {}
            for coordinate, key, payload in zip(coordinates, keys, payloads):
                entry = await self._decode(key, payload)
                if entry is not None:
                    entries[coordinate] = entry
            return entries
        except RedisError as e:
            raise CacheUnavailableError(f"Cache bulk read failed: {e}") from e

    async def get_port(self, board: int, port: int) -> Dict[DeviceCoordinate, CacheEntry]:
        """All cached entries of one PON port, found by key prefix."""
        prefix = port_key_prefix(board, port)
        try:
            keys = [key async for key in self._redis.scan_iter(match=f"{prefix}*")]
        except RedisError as e:
            raise CacheUnavailableError(f"Cache scan of {prefix}* failed: {e}") from e

        coordinates = []
        for key in keys:
            try:
                coordinates.append(DeviceCoordinate(board, port, int(key[len(prefix):])))
            except ValueError:
                logger.warning(f"Ignoring unexpected cache key {key}")
        return await self.get_many(coordinates)

    async def put(self, coordinate: DeviceCoordinate, record: OnuRecord) -> None:
        """Overwrite the entry; the last completed write wins."""
        if record.coordinate != coordinate:
            raise ValueError(f"Record for {record.coordinate} cannot be stored under {coordinate}")
        try:
            await self._redis.set(coordinate.cache_key, self._encode(record))
        except RedisError as e:
            raise CacheUnavailableError(f"Cache write of {coordinate.cache_key} failed: {e}") from e

    async def invalidate(self, coordinate: DeviceCoordinate) -> None:
        try:
            await self._redis.delete(coordinate.cache_key)
        except RedisError as e:
            raise CacheUnavailableError(f"Cache invalidation of {coordinate.cache_key} failed: {e}") from e

    async def put_port_index(self, board: int, port: int, onu_ids: List[int], fetched_at: datetime) -> None:
        key = _port_index_key(board, port)
        payload = json.dumps({"onu_ids": sorted(onu_ids), "fetched_at": fetched_at.isoformat()})
        try:
            await self._redis.set(key, payload)
        except RedisError as e:
            raise CacheUnavailableError(f"Cache write of {key} failed: {e}") from e

    async def get_port_index(self, board: int, port: int) -> Optional[Tuple[List[int], datetime]]:
        key = _port_index_key(board, port)
        try:
            payload = await self._redis.get(key)
        except RedisError as e:
            raise CacheUnavailableError(f"Cache read of {key} failed: {e}") from e
        if payload is None:
            return None

        try:
            data = json.loads(payload)
            return [int(i) for i in data["onu_ids"]], datetime.fromisoformat(data["fetched_at"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping undecodable port index {key}: {e}")

        try:
            await self._redis.delete(key)
        except RedisError as e:
            raise CacheUnavailableError(f"Cache delete of {key} failed: {e}") from e
        return None
