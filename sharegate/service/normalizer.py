"""Turn HTTP requests and WebSocket frames into ``RequestEvent`` objects.

Both functions are total: bad input degrades to an empty body and, for
WebSocket, an empty command, which the router reports as unknown.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from sharegate.service.events import (
    HttpContext,
    RequestEvent,
    TargetResource,
    WebSocketContext,
)
from sharegate.storage.models import ConnectionRecord

WS_METHOD = "WS"


def parse_json_object(raw: Union[str, bytes, None]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (ValueError, TypeError, RecursionError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def split_command(command: Any) -> Tuple[str, Optional[str]]:
    """Split ``resource:action`` on the first colon."""
    if not isinstance(command, str) or not command:
        return "", None
    resource, sep, action = command.partition(":")
    return resource, (action if sep else None)


def resolve_http_path(path: str, base_path: str = "") -> Tuple[str, Optional[str]]:
    if base_path:
        if path != base_path and not path.startswith(base_path + "/"):
            return "", None
        path = path[len(base_path):]
    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        return "", None
    return segments[0], (segments[1] if len(segments) > 1 else None)


def normalize_http(
    method: str,
    path: str,
    headers: Mapping[str, str],
    body: Union[str, bytes, None],
    *,
    base_path: str = "",
    client_host: Optional[str] = None,
) -> RequestEvent:
    resource, action = resolve_http_path(path, base_path)
    verb = (method or "").upper()
    return RequestEvent(
        transport=HttpContext(
            method=verb,
            path=path,
            headers=dict(headers),
            client_host=client_host,
        ),
        target=TargetResource(method=verb, resource=resource, action=action),
        parsed_body=parse_json_object(body),
    )


def normalize_ws_frame(
    raw: Union[str, bytes, None],
    record: Optional[ConnectionRecord],
    connection_id: str,
) -> RequestEvent:
    frame = parse_json_object(raw)
    resource, action = split_command(frame.pop("command", None))
    context = None
    if record is not None and record.authenticated:
        context = record.shareable_context
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return RequestEvent(
        transport=WebSocketContext(connection_id=connection_id, raw_frame=raw or ""),
        target=TargetResource(method=WS_METHOD, resource=resource, action=action),
        parsed_body=frame,
        shareable_context=context,
    )
