from __future__ import annotations

import asyncio
import json
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import httpx

from sharegate.logging import get_logger, mask_token

logger = get_logger(__name__)

STACKTRACE_LIMIT = 2000
PAYLOAD_LIMIT = 1000


@dataclass
class ClientInfo:
    ip: Optional[str] = None
    origin: Optional[str] = None
    user_agent: Optional[str] = None
    token: Optional[str] = None


@dataclass
class ErrorReport:
    environment: str
    error_type: str
    error_message: str
    stacktrace: str
    endpoint: str
    method: str
    payload: Dict[str, Any] = field(default_factory=dict)
    client: ClientInfo = field(default_factory=ClientInfo)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


def _field(label: str, value: Optional[str]) -> Dict[str, str]:
    return {"type": "mrkdwn", "text": f"*{label}:*\n{value or 'N/A'}"}


def _code_section(label: str, body: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": f"*{label}:*\n```{body}```"}}


def format_slack_message(report: ErrorReport) -> Dict[str, Any]:
    """Render an error report as Slack Block Kit JSON."""
    blocks = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": f"Error in {report.environment.upper()}",
            },
        },
        {
            "type": "section",
            "fields": [
                _field("Environment", report.environment),
                _field("Timestamp", report.timestamp),
                _field("Error Type", report.error_type),
                _field("Endpoint", f"{report.method} {report.endpoint}"),
            ],
        },
        _code_section("Error Message", report.error_message or "Unknown error"),
        _code_section("Stacktrace", report.stacktrace[:STACKTRACE_LIMIT]),
        {
            "type": "section",
            "fields": [
                _field("Client IP", report.client.ip),
                _field("Origin", report.client.origin),
                _field("User-Agent", report.client.user_agent),
                _field("Token", mask_token(report.client.token)),
            ],
        },
    ]
    if report.payload:
        rendered = json.dumps(report.payload, indent=2, default=str)[:PAYLOAD_LIMIT]
        blocks.append(_code_section("Request Payload", rendered))
    return {"blocks": blocks}


class ErrorNotifier:
    """Fire-and-forget error reports to a Slack incoming webhook.

    ``notify`` schedules the post on the running loop and returns at once.
    Delivery failures are logged and never reach the caller.
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        *,
        environment: str = "dev",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.environment = environment
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "ErrorNotifier":
        return cls(settings.slack_webhook_url, environment=settings.stage, **kwargs)

    def build_report(
        self,
        exc: BaseException,
        *,
        endpoint: str,
        method: str,
        payload: Optional[Dict[str, Any]] = None,
        client: Optional[ClientInfo] = None,
    ) -> ErrorReport:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return ErrorReport(
            environment=self.environment,
            error_type=type(exc).__name__,
            error_message=str(exc),
            stacktrace=stack,
            endpoint=endpoint,
            method=method,
            payload=dict(payload or {}),
            client=client or ClientInfo(),
        )

    def notify(
        self,
        exc: BaseException,
        *,
        endpoint: str,
        method: str,
        payload: Optional[Dict[str, Any]] = None,
        client: Optional[ClientInfo] = None,
    ) -> Optional[asyncio.Task]:
        if not self.is_configured:
            logger.warning("slack_webhook_not_configured", error_type=type(exc).__name__)
            return None
        report = self.build_report(
            exc, endpoint=endpoint, method=method, payload=payload, client=client
        )
        try:
            task = asyncio.get_running_loop().create_task(self._send(report))
        except RuntimeError:
            logger.warning("error_notification_no_loop", error_type=report.error_type)
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def _send(self, report: ErrorReport) -> None:
        try:
            client = await self._get_client()
            response = await client.post(self.webhook_url, json=format_slack_message(report))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "error_notification_failed",
                error=str(exc),
                error_type=report.error_type,
            )

    async def close(self) -> None:
        pending = list(self._pending)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None
