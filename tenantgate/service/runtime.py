from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tenantgate.config import Environment, Settings, get_settings, reset_settings_cache
from tenantgate.logging import configure_logging, get_logger
from tenantgate.service.auth import AuthService
from tenantgate.service.notifications import EmailNotifier, LoggingNotifier, Notifier
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.postgres import PostgresStore
from tenantgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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


class Runtime:
    """Composition root: one store, one optional cache, one AuthService."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        configure_logging(
            self.settings.log_level,
            json_output=self.settings.log_json,
            development_mode=self.settings.environment == Environment.DEVELOPMENT,
        )
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(mfa_encryption_key=self.settings.mfa_encryption_key)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        if self.settings.redis_url:
            try:
                # sync client under test so each test's event loop stays independent
                if self.settings.environment == Environment.TEST:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                # the store stays authoritative; the cache only speeds up revocation checks
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                )

        notifier: Notifier
        if self.settings.smtp_host:
            notifier = EmailNotifier.from_settings(self.settings)
        else:
            notifier = LoggingNotifier()

        self.auth = AuthService(self.store, self.cache, self.settings, notifier=notifier)
        self.auth.issuer.check_configuration()
        self.tenants = self.auth.tenants

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=isinstance(notifier, EmailNotifier),
        )


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


def _close_cache(cache: Union[RedisCache, SyncRedisCache]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache(runtime.cache)
        reset_settings_cache()
        settings = get_settings()
        if settings.environment != Environment.TEST:
            raise RuntimeError("runtime reset is only allowed when APP_ENV=test")
        runtime = Runtime(settings)
        return runtime
