from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Mapping, Optional, Union

from sharegate.storage.models import ShareableContext


@dataclass(frozen=True)
class TargetResource:
    """Routing key resolved from an inbound request."""

    method: str
    resource: str
    action: Optional[str] = None

    @property
    def command(self) -> str:
        if self.action is None:
            return self.resource
        return f"{self.resource}:{self.action}"


@dataclass(frozen=True)
class HttpContext:
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None
    kind: Literal["http"] = "http"

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass(frozen=True)
class WebSocketContext:
    connection_id: str
    raw_frame: str
    kind: Literal["websocket"] = "websocket"


TransportContext = Union[HttpContext, WebSocketContext]


@dataclass(frozen=True)
class RequestEvent:
    """Transport-agnostic view of one HTTP request or WebSocket frame."""

    transport: TransportContext
    target: TargetResource
    parsed_body: Dict[str, Any] = field(default_factory=dict)
    shareable_context: Optional[ShareableContext] = None

    @property
    def is_websocket(self) -> bool:
        return self.transport.kind == "websocket"

    @property
    def connection_id(self) -> Optional[str]:
        if isinstance(self.transport, WebSocketContext):
            return self.transport.connection_id
        return None


@dataclass
class HandlerResponse:
    result: Any = None
    status_code: Optional[int] = None
