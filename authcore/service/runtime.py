from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger, sanitize_error_message
from authcore.service.federation import FederatedIdentityLinker
from authcore.service.passwords import PasswordAuthenticator
from authcore.service.profiles import NullProfileClient, ProfileServiceClient
from authcore.service.sessions import SessionRotator
from authcore.service.stores import AuthStore
from authcore.service.tokens import TokenIssuer
from authcore.service.totp import TOTPAuthenticator
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import MemoryStateCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
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
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: AuthStore = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_key_material,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_key_material,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise

        self.cache = self._init_cache()

        if self.settings.profile_service_url:
            self.profiles = ProfileServiceClient(
                self.settings.profile_service_url,
                self.settings.internal_api_key,
                timeout=self.settings.profile_service_timeout_seconds,
            )
        else:
            logger.warning("profile_service_disabled", reason="PROFILE_SERVICE_URL unset")
            self.profiles = NullProfileClient()

        self.issuer = TokenIssuer(self.settings, self.store)
        self.rotator = SessionRotator(self.store, self.store, self.issuer)
        self.passwords = PasswordAuthenticator(
            self.store, self.issuer, self.rotator, self.profiles
        )
        self.totp = TOTPAuthenticator(
            self.store,
            self.issuer,
            self.rotator,
            self.profiles,
            mfa_issuer=self.settings.mfa_issuer,
        )
        self.federation = FederatedIdentityLinker(
            self.settings,
            self.store,
            self.issuer,
            self.rotator,
            self.profiles,
            self.cache,
        )

    def _init_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to one event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for OAuth state; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; OAuth state is process-local.",
            mode=fallback_mode,
        )
        return MemoryStateCache()

    async def aclose(self) -> None:
        await self.cache.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


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


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
