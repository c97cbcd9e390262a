import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("CONNECTION_STORE", "memory")
os.environ.setdefault("CLIENT_AUTH_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("BACKEND_BASE_URL", "http://core.test")
os.environ.pop("SLACK_WEBHOOK_URL", None)

import pytest  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sharegate.config import Settings, reset_settings_cache  # noqa: E402
from sharegate.service.backend import BackendApiClient  # noqa: E402
from sharegate.service.notifier import ErrorNotifier  # noqa: E402
from sharegate.service.runtime import (  # noqa: E402
    Runtime,
    reset_runtime_for_tests,
    set_runtime,
)
from sharegate.service.tokens import TransientTokenService  # noqa: E402
from sharegate.storage.memory import MemoryConnectionStore  # noqa: E402
from sharegate.storage.models import ShareableContext  # noqa: E402

TEST_SECRET = "unit-test-secret"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_settings_cache()
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()
    reset_settings_cache()


@pytest.fixture
def shareable_context() -> ShareableContext:
    return ShareableContext(
        token="SHARE1",
        type="webchat",
        id="bot-42",
        channels=None,
        theme="dark",
    )


@pytest.fixture
def token_service() -> TransientTokenService:
    return TransientTokenService(TEST_SECRET, issuer="sharegate-test")


@pytest.fixture
def fake_backend(shareable_context) -> MagicMock:
    backend = MagicMock(spec=BackendApiClient)
    backend.exchange_shareable_token.return_value = shareable_context
    backend.send_webchat_message.return_value = {"sessionId": "s1", "reply": "hi there"}
    backend.get_webchat_history.return_value = [{"role": "user", "content": "hello"}]
    backend.get_upload_link.return_value = {"url": "https://upload.test/put", "file": {"id": "f1"}}
    backend.confirm_upload.return_value = {"id": "f1", "status": "confirmed"}
    return backend


@pytest.fixture
def settings() -> Settings:
    return Settings(client_auth_secret=TEST_SECRET, token_issuer="sharegate-test")


@pytest.fixture
def runtime(settings, fake_backend, token_service) -> Runtime:
    rt = Runtime(
        settings,
        store=MemoryConnectionStore(),
        backend=fake_backend,
        notifier=ErrorNotifier(None),
        token_service=token_service,
    )
    set_runtime(rt)
    return rt


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
