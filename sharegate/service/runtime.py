from __future__ import annotations

import threading
from typing import Optional

from sharegate.config import ConnectionStoreBackend, Settings, get_settings
from sharegate.logging import get_logger
from sharegate.service.backend import BackendApiClient
from sharegate.service.connections import ConnectionLifecycleManager, ConnectionRegistry
from sharegate.service.handlers import BusinessHandlers
from sharegate.service.notifier import ErrorNotifier
from sharegate.service.router import CommandRouter, build_router
from sharegate.service.tokens import TransientTokenService
from sharegate.storage.common import ConnectionStore, retention_from_hours
from sharegate.storage.memory import MemoryConnectionStore
from sharegate.storage.redis_cache import RedisConnectionStore

logger = get_logger(__name__)


def _build_store(settings: Settings) -> ConnectionStore:
    retention = retention_from_hours(settings.ws_connections_ttl_hours)
    if settings.connection_store == ConnectionStoreBackend.REDIS:
        return RedisConnectionStore(settings.redis_url, retention=retention)
    return MemoryConnectionStore(
        retention=retention,
        sweep_interval_seconds=settings.connection_sweep_interval_seconds,
    )


class Runtime:
    """Process-wide wiring of the broker's services.

    Collaborators can be injected for tests; anything not given is built
    from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[ConnectionStore] = None,
        backend: Optional[BackendApiClient] = None,
        notifier: Optional[ErrorNotifier] = None,
        token_service: Optional[TransientTokenService] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.token_service = token_service or TransientTokenService.from_settings(
            self.settings
        )
        self.store = store or _build_store(self.settings)
        self.backend = backend or BackendApiClient.from_settings(self.settings)
        self.notifier = notifier or ErrorNotifier.from_settings(self.settings)
        self.handlers = BusinessHandlers(self.backend, self.token_service, self.store)
        self.router: CommandRouter = build_router(self.handlers, self.token_service)
        self.registry = ConnectionRegistry()
        self.connections = ConnectionLifecycleManager(
            self.store,
            self.router,
            self.registry,
            self.notifier,
            ws_path=self.settings.ws_path,
        )
        logger.info(
            "runtime_initialized",
            connection_store=self.settings.connection_store.value,
            backend_base_url=self.settings.backend_base_url,
            notifications_enabled=self.notifier.is_configured,
        )

    async def start(self) -> None:
        await self.store.start()

    async def close(self) -> None:
        await self.connections.close_all()
        await self.store.close()
        await self.backend.close()
        await self.notifier.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(new_runtime: Optional[Runtime]) -> Optional[Runtime]:
    """Install a prebuilt runtime, e.g. one wired with test doubles."""
    global runtime
    with _runtime_lock:
        runtime = new_runtime
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the singleton so the next ``get_runtime`` rebuilds from settings."""
    global runtime
    with _runtime_lock:
        runtime = None
