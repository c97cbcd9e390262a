"""Shape handler results and errors for each transport and deliver them."""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from fastapi.responses import JSONResponse

from sharegate.api.schemas import (
    ErrorBody,
    ErrorEnvelope,
    SuccessEnvelope,
    WsErrorFrame,
    WsSuccessFrame,
    dump_wire,
)
from sharegate.logging import get_logger
from sharegate.service.events import HandlerResponse

logger = get_logger(__name__)


class ConnectionHandle(Protocol):
    """Outbound side of one live WebSocket connection."""

    async def send_json(self, frame: Dict[str, Any]) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


def http_success(response: HandlerResponse) -> JSONResponse:
    status = response.status_code or 200
    return JSONResponse(
        dump_wire(SuccessEnvelope(result=response.result)), status_code=status
    )


def http_error(status_code: int, message: str, code: Optional[str] = None) -> JSONResponse:
    body = ErrorEnvelope(message=message, error=ErrorBody(message=message, code=code))
    return JSONResponse(dump_wire(body), status_code=status_code)


def ws_success(command: str, response: HandlerResponse) -> Dict[str, Any]:
    frame = WsSuccessFrame(
        command=command,
        result=response.result,
        status_code=response.status_code or 200,
    )
    return dump_wire(frame)


def ws_error(
    command: str, status_code: int, message: str, code: Optional[str] = None
) -> Dict[str, Any]:
    frame = WsErrorFrame(
        command=command,
        message=message,
        error=ErrorBody(message=message, code=code),
        status_code=status_code,
    )
    return dump_wire(frame)


async def deliver(
    handle: ConnectionHandle, frame: Dict[str, Any], *, connection_id: str
) -> bool:
    """Push ``frame`` to a connection; a dead connection is logged, not raised."""
    try:
        await handle.send_json(frame)
    except Exception as exc:
        logger.warning(
            "ws_delivery_failed",
            connection_id=connection_id,
            command=frame.get("command"),
            error=str(exc),
        )
        return False
    return True


async def close(
    handle: ConnectionHandle,
    *,
    connection_id: str,
    code: int = 1000,
    reason: Optional[str] = None,
) -> None:
    try:
        await handle.close(code=code, reason=reason)
    except Exception as exc:
        logger.info("ws_close_failed", connection_id=connection_id, error=str(exc))
