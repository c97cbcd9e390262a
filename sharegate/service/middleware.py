from __future__ import annotations

import dataclasses
import re
from typing import Awaitable, Callable, Optional, Sequence

from sharegate.logging import get_logger
from sharegate.service.errors import (
    AuthenticationError,
    CodedError,
    ForbiddenError,
    UnprocessableError,
)
from sharegate.service.events import HandlerResponse, HttpContext, RequestEvent
from sharegate.service.tokens import TransientTokenService
from sharegate.storage.models import ConnectionRecord, ShareableContext

logger = get_logger(__name__)

Handler = Callable[[RequestEvent], Awaitable[HandlerResponse]]
NextFn = Handler
Middleware = Callable[[RequestEvent, NextFn], Awaitable[HandlerResponse]]

AUTHENTICATE_COMMAND = "authenticate"
NOT_AUTHENTICATED_MESSAGE = (
    "Connection not authenticated. Please send authenticate command first."
)

_BEARER_RE = re.compile(r"^bearer\s+(\S+)$", re.IGNORECASE)


def apply_middleware(handler: Handler, middleware: Sequence[Middleware]) -> Handler:
    """Compose ``middleware`` around ``handler``; the first entry runs first."""

    wrapped = handler
    for mw in reversed(list(middleware)):
        wrapped = _bind(mw, wrapped)
    return wrapped


def _bind(mw: Middleware, next_fn: Handler) -> Handler:
    async def _call(event: RequestEvent) -> HandlerResponse:
        return await mw(event, next_fn)

    return _call


def _authorize_bearer(
    event: RequestEvent, token_service: TransientTokenService
) -> ShareableContext:
    transport = event.transport
    header = transport.header("authorization") if isinstance(transport, HttpContext) else None
    if not header:
        raise AuthenticationError("Missing authorization token")
    match = _BEARER_RE.match(header.strip())
    if not match:
        raise AuthenticationError("Invalid authorization header format")
    context = token_service.verify(match.group(1))
    if context is None:
        raise AuthenticationError("Invalid or expired token")
    if context.channels and event.target.resource not in context.channels:
        raise ForbiddenError(f"Access denied to resource '{event.target.resource}'")
    return context


def bearer_auth(token_service: TransientTokenService) -> Middleware:
    """HTTP middleware that swaps a bearer ``authToken`` for its shareable context."""

    async def _middleware(event: RequestEvent, next_fn: NextFn) -> HandlerResponse:
        try:
            context = _authorize_bearer(event, token_service)
        except CodedError:
            raise
        except Exception as exc:
            logger.warning("bearer_auth_evaluation_failed", error=str(exc))
            raise UnprocessableError("Cannot evaluate authorization") from exc
        return await next_fn(dataclasses.replace(event, shareable_context=context))

    return _middleware


def require_authenticated_connection(
    record: Optional[ConnectionRecord], command: str
) -> None:
    """WebSocket gate: every command but ``authenticate`` needs an authenticated record."""

    if command == AUTHENTICATE_COMMAND:
        return
    if record is None or not record.authenticated or record.shareable_context is None:
        raise AuthenticationError(NOT_AUTHENTICATED_MESSAGE, should_close=True)
