from __future__ import annotations

import asyncio
import math
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from projectflow.config import get_settings, reset_settings_cache
from projectflow.logging import get_logger
from projectflow.service.clients import ClientRegistry
from projectflow.service.codes import AuthorizationCodeService
from projectflow.service.dispatcher import DiscoveryLinks, ProtocolDispatcher
from projectflow.service.pending import PendingRequestService
from projectflow.service.protocol_methods import build_method_table
from projectflow.service.tokens import TokenService
from projectflow.service.tools import ProjectTools
from projectflow.storage.memory import MemoryProjectRepository, MemoryStore
from projectflow.storage.postgres import PostgresStore
from projectflow.storage.redis_cache import (
    CacheBackend,
    RedisCache,
    SyncRedisCache,
    describe_backend,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379/0 -> redis://:***@host:6379/0"""
    if not url:
        return url
    try:
        parsed = urlsplit(url)
        password = parsed.password
    except ValueError:
        return "<unparseable url>"
    if not password:
        return url
    userinfo, _, hostinfo = parsed.netloc.rpartition("@")
    username = userinfo.split(":", 1)[0]
    return urlunsplit(parsed._replace(netloc=f"{username}:***@{hostinfo}"))


class LocalRateLimiter:
    """Per-process GCRA limiter used when Redis is not configured.

    Mirrors the Redis script: each key stores the theoretical arrival time.
    """

    def __init__(self, clock=time.monotonic) -> None:
        self._arrivals: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def check(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        interval = float(window_seconds) / float(limit)
        with self._lock:
            now = self._clock()
            arrival = max(self._arrivals.get(key, now), now)
            next_arrival = arrival + interval * max(1, cost)
            allow_at = next_arrival - interval * limit
            if allow_at > now:
                return False, 0, math.ceil(allow_at - now)
            self._arrivals[key] = next_arrival
            return True, int((now - allow_at) // interval), 0


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[CacheBackend] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode keeps the pool off per-test event loops
                cache: CacheBackend
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and identity token revocation; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are per-process "
                    "and identity tokens cannot be revoked."
                ),
                mode=fallback_mode,
            )

        self.pending = PendingRequestService(self.store, self.settings)
        self.codes = AuthorizationCodeService(self.store)
        self.tokens = TokenService(self.store, self.settings, cache=self.cache)
        self.clients = ClientRegistry(self.store)
        self.projects = MemoryProjectRepository()
        self.tools = ProjectTools(self.projects)
        issuer = self.settings.issuer
        self.dispatcher = ProtocolDispatcher(
            build_method_table(self.tools, self.settings),
            DiscoveryLinks(
                authorization_uri=f"{issuer}/.well-known/oauth-authorization-server",
                resource_metadata=f"{issuer}/.well-known/oauth-protected-resource",
            ),
        )
        self.local_rate_limiter = LocalRateLimiter()

        logger.info(
            "runtime_initialized",
            issuer=issuer,
            cache_backend=describe_backend(self.cache),
            protocol_methods=len(self.dispatcher.methods),
        )

    def sweep_expired(self) -> Dict[str, int]:
        """Delete expired pending requests, codes and stale tokens."""
        return {
            "pending_requests": self.pending.sweep(),
            "authorization_codes": self.codes.sweep(),
            "tokens": self.tokens.sweep(),
        }

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: CacheBackend) -> None:
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return
    try:
        loop = asyncio.get_running_loop()
        loop.create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Allow at most ``limit`` requests per ``window_seconds`` for ``key``.

    Enforced in Redis when configured, otherwise per process. Returns a
    bool, or ``(allowed, remaining, retry_after_seconds)`` with
    ``return_remaining``. A non-positive limit disables the check.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    outcome = runtime.local_rate_limiter.check(key, limit, window_seconds, cost)
    return outcome if return_remaining else outcome[0]
