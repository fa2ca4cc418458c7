from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from huddle.config import Settings, get_settings, reset_settings_cache
from huddle.logging import get_logger
from huddle.service.auth import AuthService
from huddle.service.email import EmailService
from huddle.service.memo import Memoizer
from huddle.service.passwords import PasswordHasher
from huddle.service.sessions import SessionManager
from huddle.service.tokens import TokenService
from huddle.service.two_factor import TwoFactorManager
from huddle.service.verification import VerificationTokenManager
from huddle.storage.memory import MemoryStore
from huddle.storage.postgres import PostgresStore
from huddle.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the store, cache and service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        mfa_key = self.settings.mfa_secret_key or self.settings.jwt_secret
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(mfa_encryption_key=mfa_key)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, mfa_encryption_key=mfa_key)
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

        self.cache = self._connect_cache()
        self.memo = Memoizer(self.cache)
        self.hasher = PasswordHasher(time_cost=self.settings.password_hash_time_cost)
        self.tokens = TokenService(self.settings)
        self.sessions = SessionManager(self.store, self.tokens)
        self.verification = VerificationTokenManager(self.store, self.hasher, self.sessions)
        self.two_factor = TwoFactorManager(self.store, issuer=self.settings.totp_issuer)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            tokens=self.tokens,
            sessions=self.sessions,
            verification=self.verification,
            two_factor=self.two_factor,
            email=self.email,
            memo=self.memo,
        )
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    def _connect_cache(self) -> Optional[RedisCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the profile cache; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    async def close(self) -> None:
        if self.cache is not None:
            try:
                await self.cache.close()
            except RedisError as exc:
                logger.warning("redis_close_failed", error=str(exc))
        self.store.close()
        logger.info("runtime_closed")


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def init_runtime(settings: Optional[Settings] = None) -> Runtime:
    """Build the runtime once; later calls return the existing instance."""
    global runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime(settings)
        return runtime


def get_runtime() -> Runtime:
    if runtime is None:
        raise RuntimeError("runtime not initialized; call init_runtime() during startup")
    return runtime


async def close_runtime() -> None:
    global runtime
    with _runtime_lock:
        current, runtime = runtime, None
    if current is not None:
        await current.close()


def reset_runtime_for_tests() -> None:
    """Drop the runtime and cached settings so the next init re-reads the env.

    Tests run on the memory store without Redis, so there is nothing to close.
    """
    global runtime
    with _runtime_lock:
        runtime = None
    reset_settings_cache()
