from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from sharegate.logging import get_logger
from sharegate.storage.common import build_record
from sharegate.storage.models import ConnectionRecord, ShareableContext, utcnow

logger = get_logger(__name__)


class RedisConnectionStore:
    """Connection store shared by every broker instance.

    Each record lives under ``ws:conn:{id}`` with a Redis expiry equal to the
    retention window. Channel and resource lookups go through index sets that
    are updated on save/delete and pruned lazily when a member's record has
    already expired.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        retention: timedelta = timedelta(hours=24),
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.redis_url = redis_url
        self.retention = retention
        self._clock = clock
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _record_key(connection_id: str) -> str:
        return f"ws:conn:{connection_id}"

    @staticmethod
    def _channel_key(channel: str) -> str:
        return f"ws:channel:{channel}"

    @staticmethod
    def _resource_key(resource_type: str, resource_id: str) -> str:
        return f"ws:resource:{resource_type}:{resource_id}"

    def _index_keys(self, record: Optional[ConnectionRecord]) -> set[str]:
        if record is None or record.shareable_context is None:
            return set()
        ctx = record.shareable_context
        keys = {self._resource_key(ctx.type, ctx.id)}
        for channel in ctx.channels or []:
            keys.add(self._channel_key(channel))
        return keys

    @property
    def _ttl_seconds(self) -> int:
        return max(1, int(self.retention.total_seconds()))

    def _decode(self, raw: Optional[str]) -> Optional[ConnectionRecord]:
        if not raw:
            return None
        try:
            return ConnectionRecord.model_validate_json(raw)
        except (ValidationError, ValueError) as exc:
            logger.warning("connection_record_decode_failed", error=str(exc))
            return None

    async def save(
        self,
        connection_id: str,
        shareable_context: Optional[ShareableContext] = None,
        session_id: Optional[str] = None,
    ) -> ConnectionRecord:
        key = self._record_key(connection_id)
        previous = self._decode(await self.client.get(key))
        record = build_record(
            connection_id,
            shareable_context,
            session_id,
            previous=previous,
            retention=self.retention,
            now=self._clock(),
        )
        ttl = self._ttl_seconds
        new_indexes = self._index_keys(record)
        pipe = self.client.pipeline()
        pipe.set(key, record.model_dump_json(), ex=ttl)
        for index_key in self._index_keys(previous) - new_indexes:
            pipe.srem(index_key, connection_id)
        for index_key in new_indexes:
            pipe.sadd(index_key, connection_id)
            pipe.expire(index_key, ttl)
        await pipe.execute()
        return record

    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        record = self._decode(await self.client.get(self._record_key(connection_id)))
        if record is None:
            return None
        if record.is_expired(self._clock()):
            await self.delete(connection_id)
            return None
        return record

    async def delete(self, connection_id: str) -> None:
        key = self._record_key(connection_id)
        previous = self._decode(await self.client.get(key))
        pipe = self.client.pipeline()
        pipe.delete(key)
        for index_key in self._index_keys(previous):
            pipe.srem(index_key, connection_id)
        await pipe.execute()

    async def _load_members(
        self, index_key: str, members: Iterable[str]
    ) -> List[ConnectionRecord]:
        members = sorted(members)
        if not members:
            return []
        raws = await self.client.mget([self._record_key(m) for m in members])
        now = self._clock()
        records: List[ConnectionRecord] = []
        stale: List[str] = []
        for member, raw in zip(members, raws):
            record = self._decode(raw)
            if record is None or record.is_expired(now):
                stale.append(member)
                continue
            records.append(record)
        if stale:
            await self.client.srem(index_key, *stale)
        return records

    async def list_by_channel(self, channel: str) -> List[ConnectionRecord]:
        index_key = self._channel_key(channel)
        records = await self._load_members(
            index_key, await self.client.smembers(index_key)
        )
        return [
            r
            for r in records
            if r.shareable_context is not None
            and r.shareable_context.allows_channel(channel)
        ]

    async def list_by_resource(
        self, resource_type: str, resource_id: str
    ) -> List[ConnectionRecord]:
        index_key = self._resource_key(resource_type, resource_id)
        records = await self._load_members(
            index_key, await self.client.smembers(index_key)
        )
        return [r for r in records if r.matches_resource(resource_type, resource_id)]

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            logger.warning("connection_store_ping_failed", error=str(exc))
            return False

    async def start(self) -> None:
        # Expiry is enforced by Redis itself; nothing to schedule
        return None

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
