from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from admincore.config import Settings, get_settings, reset_settings_cache
from admincore.logging import get_logger
from admincore.service.auth import AuthService
from admincore.service.gate import AuthorizationGate
from admincore.service.lifecycle import AccountLifecycle, EventSink
from admincore.service.menus import MenuService
from admincore.service.passwords import PasswordService
from admincore.service.permissions import PermissionResolver
from admincore.service.rbac import RbacService
from admincore.service.seed import seed_defaults
from admincore.service.tokens import TokenService
from admincore.service.users import UserAdminService
from admincore.storage.memory import MemoryStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_store(settings: Settings):
    if settings.use_memory_store:
        return MemoryStore()
    from admincore.storage.postgres import PostgresStore

    return PostgresStore(settings.database_url)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        clock: Optional[Callable[[], datetime]] = None,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if store is None:
            try:
                store = _build_store(self.settings)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if self.settings.use_memory_store else "postgres",
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.store = store

        self.passwords = PasswordService(fast=self.settings.test_mode)
        self.tokens = TokenService(self.settings, clock=clock)
        self.lifecycle = AccountLifecycle(
            self.store, self.settings, clock=clock, event_sink=event_sink
        )
        self.resolver = PermissionResolver(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            passwords=self.passwords,
            tokens=self.tokens,
            lifecycle=self.lifecycle,
            resolver=self.resolver,
        )
        self.gate = AuthorizationGate(self.tokens, self.resolver, self.settings)
        self.rbac = RbacService(self.store, self.settings)
        self.menus = MenuService(self.store, self.settings, self.resolver)
        self.users = UserAdminService(
            self.store,
            self.settings,
            passwords=self.passwords,
            lifecycle=self.lifecycle,
            resolver=self.resolver,
            rbac=self.rbac,
        )

        if self.settings.seed_defaults:
            seed_defaults(
                self.store,
                self.settings,
                self.passwords,
                dev_users=self.settings.seed_dev_users,
            )

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            seeded=self.settings.seed_defaults,
        )

    def close(self) -> None:
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *,
    clock: Optional[Callable[[], datetime]] = None,
    event_sink: Optional[EventSink] = None,
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    Settings are re-read from the environment; only allowed in TEST_MODE.
    """
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, clock=clock, event_sink=event_sink)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
