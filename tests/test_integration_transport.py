"""End-to-end flows through the FastAPI app over HTTP and WebSocket."""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from sharegate.app import create_app
from sharegate.config import Settings
from sharegate.service.errors import RateLimitedError
from sharegate.service.middleware import NOT_AUTHENTICATED_MESSAGE
from sharegate.service.notifier import ErrorNotifier
from sharegate.service.runtime import Runtime, set_runtime
from sharegate.storage.memory import MemoryConnectionStore


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime.settings))


def _only_connection_id(runtime) -> str:
    (connection_id,) = runtime.registry.connection_ids()
    return connection_id


class TestWebSocketScenarios:
    def test_authenticate_then_send(self, client, runtime, fake_backend, shareable_context):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "authenticate", "token": "SHARE1"})
            auth = ws.receive_json()

            assert auth == {
                "success": True,
                "command": "authenticate",
                "result": {
                    "authenticated": True,
                    "config": shareable_context.model_dump(mode="json"),
                },
                "statusCode": 200,
            }
            record = asyncio.run(runtime.store.get(_only_connection_id(runtime)))
            assert record.authenticated is True
            assert record.shareable_context == shareable_context

            ws.send_json({"command": "webchat:send", "sessionId": "s1", "message": "hello"})
            sent = ws.receive_json()

        fake_backend.exchange_shareable_token.assert_awaited_once_with("SHARE1")
        fake_backend.send_webchat_message.assert_awaited_once_with(
            "s1", {"message": "hello"}, "SHARE1"
        )
        assert sent == {
            "success": True,
            "command": "webchat:send",
            "result": {"sessionId": "s1", "reply": "hi there"},
            "statusCode": 200,
        }

    def test_unauthenticated_command_closes_connection(self, client, runtime, fake_backend):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "webchat:send", "sessionId": "s1", "message": "hello"})
            frame = ws.receive_json()

            assert frame["success"] is False
            assert frame["command"] == "webchat:send"
            assert frame["message"] == NOT_AUTHENTICATED_MESSAGE
            assert frame["statusCode"] == 401
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws.receive_json()
            assert excinfo.value.code == 1008

        fake_backend.send_webchat_message.assert_not_awaited()

    def test_disconnect_removes_record(self, client, runtime):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "authenticate", "token": "SHARE1"})
            ws.receive_json()
            connection_id = _only_connection_id(runtime)

        assert connection_id not in runtime.registry
        assert asyncio.run(runtime.store.get(connection_id)) is None

    def test_unknown_command_keeps_connection_open(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "authenticate", "token": "SHARE1"})
            ws.receive_json()
            ws.send_json({"command": "webchat:delete"})
            unknown = ws.receive_json()
            ws.send_json({"command": "webchat:get-history", "sessionId": "s1"})
            history = ws.receive_json()

        assert unknown["statusCode"] == 400
        assert unknown["message"] == "Unknown command: webchat:delete"
        assert history["success"] is True


class TestHttpScenarios:
    def test_rejected_shareable_token(self, client, fake_backend):
        fake_backend.exchange_shareable_token.return_value = None

        response = client.post("/resource/get", json={"token": "SHARE1"})

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "message": "Invalid or expired resource",
            "error": {"message": "Invalid or expired resource", "code": "BAD_REQUEST"},
        }

    def test_resource_get_then_authenticated_call(self, client, fake_backend, shareable_context):
        issued = client.post("/resource/get", json={"token": "SHARE1"})
        assert issued.status_code == 200
        body = issued.json()
        assert body["success"] is True
        assert body["result"]["config"] == shareable_context.model_dump(mode="json")

        auth_token = body["result"]["authToken"]
        response = client.post(
            "/webchat/send",
            json={"sessionId": "s1", "message": "hello"},
            headers={"Authorization": f"Bearer {auth_token}"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "result": {"sessionId": "s1", "reply": "hi there"},
        }
        fake_backend.send_webchat_message.assert_awaited_once_with(
            "s1", {"message": "hello"}, "SHARE1"
        )

    def test_missing_bearer_is_401(self, client):
        response = client.post("/upload/get-link", json={"name": "a.png"})

        assert response.status_code == 401
        assert response.json()["message"] == "Missing authorization token"

    def test_bad_bearer_is_401(self, client):
        response = client.post(
            "/upload/get-link", json={}, headers={"Authorization": "Bearer forged"}
        )

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid or expired token"

    def test_non_ascii_bearer_is_401(self, client, fake_backend):
        response = client.post(
            "/webchat/send",
            json={"sessionId": "s1", "message": "hello"},
            headers={"Authorization": "Bearer h.p.é".encode("utf-8")},
        )

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid or expired token"
        fake_backend.send_webchat_message.assert_not_awaited()

    def test_unknown_resource_is_404_and_unknown_action_400(self, client):
        missing = client.post("/nope/get", json={})
        wrong_action = client.post("/webchat/delete", json={})
        wrong_verb = client.get("/resource/get")

        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "NOT_FOUND"
        assert wrong_action.status_code == 400
        assert wrong_action.json()["error"]["code"] == "METHOD_NOT_ALLOWED"
        assert wrong_verb.status_code == 400

    def test_unhandled_failure_is_generic_500(self, client, token_service, shareable_context, fake_backend):
        fake_backend.confirm_upload.side_effect = RuntimeError("db password leaked")
        token = token_service.generate(shareable_context)

        response = client.post(
            "/upload/confirm", json={"id": "f1"}, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 500
        assert response.json()["message"] == "Internal server error"
        assert "db password" not in response.text

    def test_upstream_rate_limit_propagates(self, client, token_service, shareable_context, fake_backend):
        fake_backend.get_webchat_history.side_effect = RateLimitedError("Too many requests")
        token = token_service.generate(shareable_context)

        response = client.post(
            "/webchat/get-history",
            json={"sessionId": "s1"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"

    def test_correlation_and_security_headers(self, client):
        response = client.post(
            "/resource/get", json={"token": "SHARE1"}, headers={"X-Request-ID": "req-123"}
        )

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["connection_store"]["type"] == "memory"


class TestBasePath:
    def test_routes_live_under_base_path(self, fake_backend, token_service):
        settings = Settings(client_auth_secret="s", http_base_path="/api/", ws_path="/socket")
        runtime = Runtime(
            settings,
            store=MemoryConnectionStore(),
            backend=fake_backend,
            notifier=ErrorNotifier(None),
            token_service=token_service,
        )
        set_runtime(runtime)
        client = TestClient(create_app(settings))

        assert client.post("/api/resource/get", json={"token": "SHARE1"}).status_code == 200
        assert client.post("/resource/get", json={"token": "SHARE1"}).status_code == 404

        with client.websocket_connect("/socket") as ws:
            ws.send_json({"command": "authenticate", "token": "SHARE1"})
            assert ws.receive_json()["success"] is True
