from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from taskdock.config import get_settings, reset_settings_cache
from taskdock.logging import get_logger
from taskdock.service.auth import AuthService, CredentialVerifier
from taskdock.service.gate import AuthGate
from taskdock.service.ip_tracker import IpTracker, RedisIpTracker
from taskdock.service.lists import ListService
from taskdock.service.sessions import SessionStore
from taskdock.service.tokens import TokenIssuer
from taskdock.storage.memory import MemoryStore
from taskdock.storage.postgres import PostgresStore
from taskdock.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=None if self.settings.test_mode else self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except RedisError as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="ip tracking falls back to the document store",
                )

        self.tokens = TokenIssuer.from_settings(self.settings)
        self.sessions = SessionStore(
            self.store,
            self.tokens,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_days * 24 * 60 * 60,
        )
        self.verifier = CredentialVerifier(self.store)
        self.auth = AuthService(
            self.store,
            self.verifier,
            self.sessions,
            self.tokens,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            purge_expired_on_login=self.settings.purge_expired_sessions,
        )
        self.gate = AuthGate(self.tokens, self.sessions)
        self.lists = ListService(self.store)
        self.ip_tracker: Union[IpTracker, RedisIpTracker]
        if self.cache is not None:
            self.ip_tracker = RedisIpTracker(
                self.cache,
                window_seconds=self.settings.ip_window_seconds,
                threshold=self.settings.ip_threshold,
            )
        else:
            self.ip_tracker = IpTracker(
                self.store,
                window_seconds=self.settings.ip_window_seconds,
                threshold=self.settings.ip_threshold,
            )
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            ip_tracker=type(self.ip_tracker).__name__,
        )

    def close(self) -> None:
        self.store.close()


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
    if isinstance(cache, SyncRedisCache):
        cache.close_sync()
        return
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
        if runtime is not None:
            if runtime.cache is not None:
                try:
                    _close_cache(runtime.cache)
                except RedisError as exc:
                    logger.warning("runtime_cache_close_failed", error=str(exc))
            runtime.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
