from __future__ import annotations

from typing import Any, Dict

from sharegate.logging import get_logger
from sharegate.service.backend import BackendApiClient
from sharegate.service.errors import AuthenticationError, BadRequestError, ServerError
from sharegate.service.events import HandlerResponse, RequestEvent
from sharegate.service.tokens import TransientTokenService
from sharegate.storage.common import ConnectionStore
from sharegate.storage.models import ShareableContext

logger = get_logger(__name__)


def _context(event: RequestEvent) -> ShareableContext:
    if event.shareable_context is None:
        raise AuthenticationError("Invalid or expired token")
    return event.shareable_context


def _require_session_id(session_id: Any) -> None:
    if not session_id:
        raise BadRequestError("session id is required")
    if not isinstance(session_id, str):
        raise BadRequestError("session id must be a string")


class BusinessHandlers:
    """The fixed handler set shared by the HTTP and WebSocket routes.

    Handlers only return :class:`HandlerResponse` or raise coded errors;
    shaping the wire response is left to the emitter.
    """

    def __init__(
        self,
        backend: BackendApiClient,
        token_service: TransientTokenService,
        store: ConnectionStore,
    ) -> None:
        self.backend = backend
        self.token_service = token_service
        self.store = store

    async def get_resource(self, event: RequestEvent) -> HandlerResponse:
        token = event.parsed_body.get("token")
        if not token:
            raise BadRequestError("Token is required")
        shareable = await self.backend.exchange_shareable_token(token)
        if shareable is None:
            raise BadRequestError("Invalid or expired resource")
        auth_token = self.token_service.generate(shareable)
        return HandlerResponse(
            result={
                "config": shareable.model_dump(mode="json"),
                "authToken": auth_token,
            }
        )

    async def send_message(self, event: RequestEvent) -> HandlerResponse:
        context = _context(event)
        payload: Dict[str, Any] = dict(event.parsed_body)
        session_id = payload.pop("sessionId", None)
        if not payload.get("message"):
            raise BadRequestError("message is required")
        _require_session_id(session_id)
        result = await self.backend.send_webchat_message(
            session_id, payload, context.token
        )
        return HandlerResponse(result=result)

    async def get_history(self, event: RequestEvent) -> HandlerResponse:
        context = _context(event)
        session_id = event.parsed_body.get("sessionId")
        _require_session_id(session_id)
        result = await self.backend.get_webchat_history(session_id, context.token)
        return HandlerResponse(result=result)

    async def get_upload_link(self, event: RequestEvent) -> HandlerResponse:
        context = _context(event)
        result = await self.backend.get_upload_link(
            dict(event.parsed_body), context.token
        )
        return HandlerResponse(result=result)

    async def confirm_upload(self, event: RequestEvent) -> HandlerResponse:
        context = _context(event)
        result = await self.backend.confirm_upload(dict(event.parsed_body), context.token)
        return HandlerResponse(result=result)

    async def authenticate(self, event: RequestEvent) -> HandlerResponse:
        """Attach a shareable context to the WebSocket connection that sent it."""

        connection_id = event.connection_id
        if not connection_id:
            raise ServerError("No connection ID found")
        token = event.parsed_body.get("token")
        if not token:
            logger.warning("ws_authenticate_missing_token", connection_id=connection_id)
            raise BadRequestError("Token is required")

        shareable = await self.backend.exchange_shareable_token(token)
        if shareable is None:
            logger.warning("ws_authenticate_rejected", connection_id=connection_id)
            raise BadRequestError("Invalid or expired resource")

        session_id = event.parsed_body.get("sessionId")
        try:
            await self.store.save(connection_id, shareable, session_id)
        except Exception as exc:
            logger.error(
                "ws_authenticate_store_failed",
                connection_id=connection_id,
                error=str(exc),
            )
            raise ServerError("Failed to authenticate connection") from exc

        logger.info("ws_connection_authenticated", connection_id=connection_id)
        return HandlerResponse(
            result={"authenticated": True, "config": shareable.model_dump(mode="json")},
            status_code=200,
        )
