from __future__ import annotations

import json

import httpx

from sharegate.service import emitter
from sharegate.service.events import HandlerResponse
from sharegate.service.notifier import (
    ClientInfo,
    ErrorNotifier,
    ErrorReport,
    format_slack_message,
)


class BrokenHandle:
    def __init__(self):
        self.attempts = 0

    async def send_json(self, frame):
        self.attempts += 1
        raise RuntimeError("socket already closed")

    async def close(self, code=1000, reason=None):
        raise RuntimeError("socket already closed")


class TestHttpShapes:
    def test_success_envelope(self):
        response = emitter.http_success(HandlerResponse(result={"a": 1}))

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"
        assert json.loads(response.body) == {"success": True, "result": {"a": 1}}

    def test_custom_success_status(self):
        response = emitter.http_success(HandlerResponse(result=None, status_code=201))
        assert response.status_code == 201

    def test_error_envelope(self):
        response = emitter.http_error(401, "Invalid or expired token", "UNAUTHORIZED")

        assert response.status_code == 401
        assert json.loads(response.body) == {
            "success": False,
            "message": "Invalid or expired token",
            "error": {"message": "Invalid or expired token", "code": "UNAUTHORIZED"},
        }

    def test_error_without_code(self):
        body = json.loads(emitter.http_error(400, "bad").body)
        assert body["error"] == {"message": "bad"}


class TestWebSocketShapes:
    def test_success_frame(self):
        frame = emitter.ws_success("webchat:send", HandlerResponse(result={"ok": True}))

        assert frame == {
            "success": True,
            "command": "webchat:send",
            "result": {"ok": True},
            "statusCode": 200,
        }

    def test_error_frame_carries_command(self):
        frame = emitter.ws_error("upload:confirm", 404, "Connection not found", "NOT_FOUND")

        assert frame == {
            "success": False,
            "command": "upload:confirm",
            "message": "Connection not found",
            "error": {"message": "Connection not found", "code": "NOT_FOUND"},
            "statusCode": 404,
        }


class TestDelivery:
    async def test_send_failure_is_swallowed(self):
        handle = BrokenHandle()

        delivered = await emitter.deliver(handle, {"command": "x"}, connection_id="gone")

        assert delivered is False
        assert handle.attempts == 1

    async def test_close_failure_is_swallowed(self):
        await emitter.close(BrokenHandle(), connection_id="gone", code=1008)


class TestSlackFormatting:
    def _report(self, **overrides):
        values = dict(
            environment="prod",
            error_type="RuntimeError",
            error_message="boom",
            stacktrace="x" * 5000,
            endpoint="/webchat/send",
            method="POST",
            payload={"message": "y" * 3000},
            client=ClientInfo(ip="10.0.0.1", token="Bearer abcdefghijklmnopqrstuvwxyz"),
        )
        values.update(overrides)
        return ErrorReport(**values)

    def test_blocks_truncate_and_mask(self):
        message = format_slack_message(self._report())
        rendered = json.dumps(message)

        assert message["blocks"][0]["text"]["text"] == "Error in PROD"
        assert "x" * 2000 in rendered
        assert "x" * 2001 not in rendered
        assert "y" * 1001 not in rendered
        assert "Bearer abcdefghij..." in rendered
        assert "klmnop" not in rendered
        assert "*Endpoint:*\\nPOST /webchat/send" in rendered

    def test_payload_block_omitted_when_empty(self):
        message = format_slack_message(self._report(payload={}))
        assert not any("Request Payload" in json.dumps(block) for block in message["blocks"])


class TestErrorNotifier:
    async def test_noop_without_webhook(self):
        notifier = ErrorNotifier(None)

        assert notifier.notify(RuntimeError("x"), endpoint="/a", method="POST") is None
        await notifier.close()

    async def test_posts_to_webhook_in_background(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200, text="ok")

        notifier = ErrorNotifier(
            "https://hooks.slack.test/T000/B000",
            environment="staging",
            transport=httpx.MockTransport(handler),
        )
        task = notifier.notify(
            ValueError("bad thing"),
            endpoint="/upload/confirm",
            method="POST",
            payload={"id": "f1"},
        )
        await task
        await notifier.close()

        assert len(received) == 1
        assert received[0]["blocks"][0]["text"]["text"] == "Error in STAGING"
        assert "bad thing" in json.dumps(received[0])

    async def test_webhook_failure_does_not_raise(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        notifier = ErrorNotifier("https://hooks.slack.test/x", transport=httpx.MockTransport(handler))
        task = notifier.notify(RuntimeError("x"), endpoint="/a", method="POST")
        await task

        assert task.exception() is None
        await notifier.close()
