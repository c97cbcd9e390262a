from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from sharegate.logging import get_logger
from sharegate.service import emitter
from sharegate.service.errors import CodedError, ServerError
from sharegate.service.normalizer import normalize_http
from sharegate.service.notifier import ClientInfo
from sharegate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

HTTP_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


class WebSocketHandle:
    """Adapts a FastAPI ``WebSocket`` to the lifecycle manager's handle protocol."""

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws

    async def send_json(self, frame: Dict[str, Any]) -> None:
        await self.ws.send_json(frame)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        await self.ws.close(code=code, reason=reason)


@router.api_route("/{path:path}", methods=HTTP_METHODS, include_in_schema=False)
async def dispatch_http(path: str, request: Request) -> JSONResponse:
    """Single entry point for every HTTP command; routing happens in the router."""
    runtime = get_runtime()
    body = await request.body()
    event = normalize_http(
        request.method,
        request.url.path,
        request.headers,
        body,
        base_path=runtime.settings.http_base_path,
        client_host=request.client.host if request.client else None,
    )
    request.state.parsed_body = event.parsed_body
    try:
        response = await runtime.router.dispatch(event)
    except CodedError:
        raise
    except Exception as exc:
        logger.exception(
            "http_command_failed",
            path=request.url.path,
            command=event.target.command,
        )
        raise ServerError("Internal server error") from exc
    return emitter.http_success(response)


async def websocket_endpoint(ws: WebSocket) -> None:
    runtime = get_runtime()
    await ws.accept()
    client = ClientInfo(
        ip=ws.client.host if ws.client else None,
        origin=ws.headers.get("origin"),
        user_agent=ws.headers.get("user-agent"),
    )
    connection_id = await runtime.connections.connect(WebSocketHandle(ws), client)
    try:
        while connection_id in runtime.registry:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            await runtime.connections.handle_frame(connection_id, raw)
    except WebSocketDisconnect:
        logger.info("ws_client_disconnected", connection_id=connection_id)
    finally:
        await runtime.connections.disconnect(connection_id)
