from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Optional, Sequence, Tuple

from sharegate.service.errors import (
    MethodNotAllowedError,
    NotFoundError,
    UnknownCommandError,
)
from sharegate.service.events import HandlerResponse, RequestEvent
from sharegate.service.middleware import (
    Handler,
    Middleware,
    apply_middleware,
    bearer_auth,
)
from sharegate.service.tokens import TransientTokenService

if TYPE_CHECKING:
    from sharegate.service.handlers import BusinessHandlers


class CommandRouter:
    """Exact-match routing table for both transports.

    HTTP routes are keyed by ``(resource, action)`` and then by verb.
    WebSocket routes are keyed by the command string (``resource`` or
    ``resource:action``).
    """

    def __init__(self) -> None:
        self._http: Dict[str, Dict[Optional[str], Dict[str, Handler]]] = {}
        self._ws: Dict[str, Handler] = {}

    def add_http(
        self,
        method: str,
        resource: str,
        action: Optional[str],
        handler: Handler,
        middleware: Sequence[Middleware] = (),
    ) -> None:
        actions = self._http.setdefault(resource, {})
        verbs = actions.setdefault(action, {})
        verbs[method.upper()] = apply_middleware(handler, middleware)

    def add_ws(
        self, command: str, handler: Handler, middleware: Sequence[Middleware] = ()
    ) -> None:
        self._ws[command] = apply_middleware(handler, middleware)

    @property
    def ws_commands(self) -> Tuple[str, ...]:
        return tuple(self._ws)

    def resolve(self, event: RequestEvent) -> Handler:
        target = event.target
        if event.is_websocket:
            handler = self._ws.get(target.command)
            if handler is None:
                raise UnknownCommandError(f"Unknown command: {target.command}")
            return handler

        actions = self._http.get(target.resource) if target.resource else None
        if actions is None:
            raise NotFoundError(f"Resource '{target.resource}' not found")
        verbs = actions.get(target.action)
        if verbs is None:
            raise MethodNotAllowedError(
                f"Action '{target.action}' not found for resource '{target.resource}'"
            )
        handler = verbs.get(target.method)
        if handler is None:
            raise MethodNotAllowedError(
                f"Method '{target.method}' not allowed for '{target.command}'"
            )
        return handler

    async def dispatch(self, event: RequestEvent) -> HandlerResponse:
        handler = self.resolve(event)
        return await handler(event)


def build_router(
    handlers: "BusinessHandlers", token_service: TransientTokenService
) -> CommandRouter:
    router = CommandRouter()
    auth = [bearer_auth(token_service)]

    router.add_http("POST", "resource", "get", handlers.get_resource)
    router.add_http("POST", "webchat", "send", handlers.send_message, auth)
    router.add_http("POST", "webchat", "get-history", handlers.get_history, auth)
    router.add_http("POST", "upload", "get-link", handlers.get_upload_link, auth)
    router.add_http("POST", "upload", "confirm", handlers.confirm_upload, auth)

    router.add_ws("authenticate", handlers.authenticate)
    router.add_ws("resource:get", handlers.get_resource)
    router.add_ws("webchat:send", handlers.send_message)
    router.add_ws("webchat:get-history", handlers.get_history)
    router.add_ws("upload:get-link", handlers.get_upload_link)
    router.add_ws("upload:confirm", handlers.confirm_upload)
    return router
