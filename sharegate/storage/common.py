"""Connection store contract shared by the memory and Redis backings."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from sharegate.storage.models import ConnectionRecord, ShareableContext


class ConnectionStore(Protocol):
    """Per-connection WebSocket state keyed by connection id.

    Every operation is atomic for a single connection id. Expired records
    behave exactly like missing ones.
    """

    retention: timedelta

    async def save(
        self,
        connection_id: str,
        shareable_context: Optional[ShareableContext] = None,
        session_id: Optional[str] = None,
    ) -> ConnectionRecord: ...

    async def get(self, connection_id: str) -> Optional[ConnectionRecord]: ...

    async def delete(self, connection_id: str) -> None: ...

    async def list_by_channel(self, channel: str) -> List[ConnectionRecord]: ...

    async def list_by_resource(
        self, resource_type: str, resource_id: str
    ) -> List[ConnectionRecord]: ...

    async def ping(self) -> bool: ...

    async def start(self) -> None: ...

    async def close(self) -> None: ...


def build_record(
    connection_id: str,
    shareable_context: Optional[ShareableContext],
    session_id: Optional[str],
    *,
    previous: Optional[ConnectionRecord],
    retention: timedelta,
    now: datetime,
) -> ConnectionRecord:
    """Build the record written by ``save``.

    ``connected_at`` survives upserts of a live record; the expiry is always
    pushed out to ``now + retention``.
    """
    connected_at = None
    if previous is not None and not previous.is_expired(now):
        connected_at = previous.connected_at
    return ConnectionRecord.new(
        connection_id,
        shareable_context,
        session_id,
        retention=retention,
        now=now,
        connected_at=connected_at,
    )


def retention_from_hours(hours: int) -> timedelta:
    return timedelta(hours=max(1, int(hours)))
