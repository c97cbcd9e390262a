from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShareableContext(BaseModel):
    """Authorization payload the core API returns for a shareable token.

    Opaque to the broker apart from ``token`` (forwarded on every backend
    call), ``type``/``id`` (resource lookups) and ``channels`` (channel
    subscriptions). Unknown fields are kept and round-trip through tokens and
    connection records.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    token: str
    type: str
    id: str
    channels: Optional[List[str]] = None

    def allows_channel(self, channel: str) -> bool:
        return bool(self.channels) and channel in self.channels


class ConnectionRecord(BaseModel):
    """Persisted state of one live WebSocket connection."""

    connection_id: str
    authenticated: bool = False
    shareable_context: Optional[ShareableContext] = None
    session_id: Optional[str] = None
    connected_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    @model_validator(mode="after")
    def _authenticated_has_context(self) -> "ConnectionRecord":
        if self.authenticated and self.shareable_context is None:
            raise ValueError("authenticated connection requires a shareable context")
        return self

    @classmethod
    def new(
        cls,
        connection_id: str,
        shareable_context: Optional[ShareableContext] = None,
        session_id: Optional[str] = None,
        *,
        retention: timedelta,
        now: Optional[datetime] = None,
        connected_at: Optional[datetime] = None,
    ) -> "ConnectionRecord":
        now = now or utcnow()
        return cls(
            connection_id=connection_id,
            authenticated=shareable_context is not None,
            shareable_context=shareable_context,
            session_id=session_id,
            connected_at=connected_at or now,
            expires_at=now + retention,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now

    def matches_resource(self, resource_type: str, resource_id: str) -> bool:
        ctx = self.shareable_context
        return ctx is not None and ctx.type == resource_type and ctx.id == resource_id
