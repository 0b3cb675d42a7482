from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from pairauth.config import Settings, get_settings, reset_settings_cache
from pairauth.logging import get_logger
from pairauth.service.auth import AuthService
from pairauth.service.credentials import PasswordCredentials
from pairauth.service.pairs import PairIssuer
from pairauth.service.revocation import RevocationGuard
from pairauth.service.tokens import SigningKey, TokenCodec
from pairauth.storage.memory import MemoryCache, MemoryStore
from pairauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )
        self.store = MemoryStore()
        self.cache = self._build_cache()

        self.signing_key = SigningKey(
            secret=self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm
        )
        self.codec = TokenCodec(self.signing_key)
        self.issuer = PairIssuer(
            self.codec,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.guard = RevocationGuard(
            self.cache,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            margin_seconds=self.settings.revocation_margin_seconds,
            timeout_seconds=self.settings.store_timeout_seconds,
        )
        self.credentials = PasswordCredentials(self.store)
        self.auth = AuthService(
            codec=self.codec,
            issuer=self.issuer,
            guard=self.guard,
            credentials=self.credentials,
            users=self.store,
            lookup_timeout_seconds=self.settings.lookup_timeout_seconds,
        )
        logger.info(
            "runtime_init_complete",
            cache_type=type(self.cache).__name__,
            algorithm=self.signing_key.algorithm.value,
        )

    def _build_cache(self):
        if self.settings.use_memory_cache:
            return MemoryCache()

        redis_error: Exception | None = None
        try:
            # Sync client under TEST_MODE avoids event loop binding in the test client
            if self.settings.test_mode:
                cache = SyncRedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
                )
            else:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
                )
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation; start Redis or set "
                "USE_MEMORY_CACHE=true / ALLOW_REDIS_FALLBACK_DEV=true for a local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message="Revocation records are kept in process memory and lost on restart.",
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    """Close a cache from sync code, whether or not an event loop is running."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
        return
    # asyncio.run refuses to nest; close on a private loop in a worker thread
    errors: list[Exception] = []

    def _run() -> None:
        try:
            asyncio.run(cache.close())
        except Exception as exc:
            errors.append(exc)

    worker = threading.Thread(target=_run, name="cache-close")
    worker.start()
    worker.join()
    if errors:
        raise errors[0]


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            _close_cache(runtime.cache)
        runtime = None
        reset_settings_cache()
