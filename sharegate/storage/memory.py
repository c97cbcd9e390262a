from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sharegate.logging import get_logger
from sharegate.storage.common import build_record
from sharegate.storage.models import ConnectionRecord, ShareableContext, utcnow

logger = get_logger(__name__)


class MemoryConnectionStore:
    """Process-local connection store for single-instance deployments.

    Records expire lazily on read and are also purged by a background sweep
    started with :meth:`start`.
    """

    def __init__(
        self,
        *,
        retention: timedelta = timedelta(hours=24),
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.retention = retention
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._records: Dict[str, ConnectionRecord] = {}
        self._data_lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    async def save(
        self,
        connection_id: str,
        shareable_context: Optional[ShareableContext] = None,
        session_id: Optional[str] = None,
    ) -> ConnectionRecord:
        now = self._clock()
        with self._data_lock:
            record = build_record(
                connection_id,
                shareable_context,
                session_id,
                previous=self._records.get(connection_id),
                retention=self.retention,
                now=now,
            )
            self._records[connection_id] = record
        return record

    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        now = self._clock()
        with self._data_lock:
            record = self._records.get(connection_id)
            if record is None:
                return None
            if record.is_expired(now):
                self._records.pop(connection_id, None)
                return None
            return record

    async def delete(self, connection_id: str) -> None:
        with self._data_lock:
            self._records.pop(connection_id, None)

    async def list_by_channel(self, channel: str) -> List[ConnectionRecord]:
        return [
            record
            for record in self._live_records()
            if record.shareable_context is not None
            and record.shareable_context.allows_channel(channel)
        ]

    async def list_by_resource(
        self, resource_type: str, resource_id: str
    ) -> List[ConnectionRecord]:
        return [
            record
            for record in self._live_records()
            if record.matches_resource(resource_type, resource_id)
        ]

    async def ping(self) -> bool:
        return True

    def _live_records(self) -> List[ConnectionRecord]:
        now = self._clock()
        with self._data_lock:
            return [r for r in self._records.values() if not r.is_expired(now)]

    def purge_expired(self) -> int:
        """Drop every expired record and return how many were removed."""
        now = self._clock()
        with self._data_lock:
            expired = [cid for cid, r in self._records.items() if r.is_expired(now)]
            for cid in expired:
                del self._records[cid]
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            removed = self.purge_expired()
            if removed:
                logger.info("connection_sweep_purged", removed=removed)

    async def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def __len__(self) -> int:
        with self._data_lock:
            return len(self._records)
