from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from sharegate.logging import get_logger
from sharegate.service.errors import (
    BadRequestError,
    CodedError,
    RateLimitedError,
    ServerError,
    ServiceUnavailableError,
)
from sharegate.storage.models import ShareableContext

logger = get_logger(__name__)

RETRYABLE_STATUSES = frozenset({401, 429, 500, 502, 503, 504})
# Upstream statuses that mean "this shareable token is no good"
REJECTED_TOKEN_STATUSES = frozenset({401, 403, 404})


def map_backend_error(status_code: int, backend_message: Optional[str]) -> CodedError:
    """Translate an upstream HTTP failure into the error a client sees.

    The upstream message is kept in ``detail`` only; it never reaches the
    wire message.
    """
    detail = {"backend_status": status_code, "backend_message": backend_message}
    if status_code in (401, 403):
        return BadRequestError("Invalid or expired token", detail=detail)
    if status_code == 404:
        return BadRequestError("Resource not found", detail=detail)
    if status_code == 429:
        return RateLimitedError("Too many requests", detail=detail)
    if status_code >= 500:
        return ServiceUnavailableError("Service temporarily unavailable", detail=detail)
    return ServerError("Service error", detail=detail)


def _path_segment(value: str) -> str:
    return quote(str(value), safe="")


def _backend_status(exc: CodedError) -> Optional[int]:
    if isinstance(exc.detail, dict):
        return exc.detail.get("backend_status")
    return None


class BackendApiClient:
    """Async client for the core API that owns shareable resources.

    Every call carries the service bearer token plus the caller's shareable
    token in ``x-shareable-token``. Network errors, 401, 429 and 5xx answers
    are retried with capped exponential backoff.
    """

    def __init__(
        self,
        base_url: str,
        *,
        service_token: Optional[str] = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        retry_base_delay_ms: int = 250,
        retry_max_delay_ms: int = 4000,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_token = service_token
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, max_retries)
        self.retry_base_delay_ms = retry_base_delay_ms
        self.retry_max_delay_ms = retry_max_delay_ms
        self.verify = verify
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "BackendApiClient":
        return cls(
            settings.backend_base_url,
            service_token=settings.backend_token,
            timeout_seconds=settings.backend_request_timeout_seconds,
            max_retries=settings.backend_max_retries,
            retry_base_delay_ms=settings.backend_retry_base_delay_ms,
            retry_max_delay_ms=settings.backend_retry_max_delay_ms,
            verify=settings.tls_verify,
            **kwargs,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the pooled HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.service_token:
                headers["Authorization"] = f"Bearer {self.service_token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers=headers,
                verify=self.verify,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _backoff_ms(self, attempt: int) -> float:
        return min(self.retry_base_delay_ms * (2 ** attempt), self.retry_max_delay_ms)

    @staticmethod
    def _backend_message(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return response.text or None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error")
            return str(message) if message else None
        return None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        shareable_token: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        client = await self._get_client()
        headers = {"x-shareable-token": shareable_token}
        attempt = 0
        while True:
            try:
                response = await client.request(method, path, json=json, headers=headers)
            except httpx.TimeoutException as exc:
                logger.warning(
                    "backend_request_timeout", method=method, path=path, attempt=attempt
                )
                error: CodedError = ServiceUnavailableError(
                    "Service temporarily unavailable", detail={"reason": "timeout"}
                )
                error.__cause__ = exc
            except httpx.TransportError as exc:
                logger.warning(
                    "backend_connect_error",
                    method=method,
                    path=path,
                    attempt=attempt,
                    error=str(exc),
                )
                error = ServiceUnavailableError(
                    "Service temporarily unavailable", detail={"reason": "network"}
                )
                error.__cause__ = exc
            else:
                if response.status_code < 400:
                    try:
                        return response.json()
                    except ValueError:
                        return None
                backend_message = self._backend_message(response)
                logger.warning(
                    "backend_api_error",
                    method=method,
                    path=path,
                    status_code=response.status_code,
                    backend_message=backend_message,
                    attempt=attempt,
                )
                error = map_backend_error(response.status_code, backend_message)
                if response.status_code not in RETRYABLE_STATUSES:
                    raise error

            if attempt >= self.max_retries:
                raise error
            delay_ms = self._backoff_ms(attempt)
            logger.info(
                "backend_request_retry", method=method, path=path, backoff_ms=delay_ms
            )
            await self._sleep(delay_ms / 1000.0)
            attempt += 1

    @staticmethod
    def _unwrap(data: Any, operation: str) -> Any:
        if not isinstance(data, dict) or not data.get("success"):
            result = data.get("result") if isinstance(data, dict) else None
            logger.warning("backend_unsuccessful_response", operation=operation)
            raise ServerError("Service error", detail={"backend_result": result})
        return data.get("result")

    async def exchange_shareable_token(self, token: str) -> Optional[ShareableContext]:
        """Resolve a shareable token to its context, or ``None`` if it is rejected."""
        try:
            data = await self._request("GET", "/shareable", shareable_token=token)
        except CodedError as exc:
            if _backend_status(exc) in REJECTED_TOKEN_STATUSES:
                return None
            raise
        if not isinstance(data, dict) or not data.get("success"):
            return None
        result = data.get("result")
        if not isinstance(result, dict) or not result:
            return None
        try:
            return ShareableContext.model_validate({**result, "token": token})
        except ValidationError as exc:
            logger.warning("shareable_context_invalid", error=str(exc))
            return None

    async def send_webchat_message(
        self, session_id: str, payload: Dict[str, Any], token: str
    ) -> Any:
        logger.info("webchat_message_forwarded", session_id=session_id)
        data = await self._request(
            "POST", f"/webchat/{_path_segment(session_id)}", shareable_token=token, json=payload
        )
        return self._unwrap(data, "send_webchat_message")

    async def get_webchat_history(self, session_id: str, token: str) -> Any:
        data = await self._request(
            "GET", f"/webchat/history/{_path_segment(session_id)}", shareable_token=token
        )
        return self._unwrap(data, "get_webchat_history") or []

    async def get_upload_link(self, payload: Dict[str, Any], token: str) -> Any:
        data = await self._request(
            "POST", "/upload/get-link", shareable_token=token, json=payload
        )
        return self._unwrap(data, "get_upload_link")

    async def confirm_upload(self, payload: Dict[str, Any], token: str) -> Any:
        data = await self._request(
            "POST", "/upload/confirm", shareable_token=token, json=payload
        )
        return self._unwrap(data, "confirm_upload")
