from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from staffauth.config import get_settings, reset_settings_cache
from staffauth.logging import get_logger
from staffauth.service.anomaly import SuspiciousLoginDetector
from staffauth.service.audit import SecurityAuditLog
from staffauth.service.auth import AuthService
from staffauth.service.lockout import LockoutPolicy
from staffauth.service.passwords import PasswordHasher, PasswordPolicy
from staffauth.service.sweeper import TokenSweeper
from staffauth.service.tokens import AccessTokenDenylist, TokenService
from staffauth.service.two_factor import TwoFactorService
from staffauth.storage.memory import MemoryStore
from staffauth.storage.postgres import PostgresStore
from staffauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        prefix = parsed.username or ""
        netloc = f"{prefix}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        store_type = "memory" if settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if settings.use_memory_store
                else PostgresStore(settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the access token denylist; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; revoked access tokens "
                    "are tracked in process memory only."
                ),
                mode=fallback_mode,
            )

        self.hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )
        self.policy = PasswordPolicy(
            min_length=settings.password_min_length,
            max_repeating=settings.password_max_repeating,
        )
        self.tokens = TokenService(self.store, settings)
        self.denylist = AccessTokenDenylist(self.cache)
        self.audit = SecurityAuditLog(self.store)
        self.lockout = LockoutPolicy(
            self.store,
            self.audit,
            threshold=settings.lockout_threshold,
            lock_duration=timedelta(minutes=settings.lockout_duration_minutes),
        )
        self.detector = SuspiciousLoginDetector(
            self.store,
            self.audit,
            window=timedelta(days=settings.suspicious_login_window_days),
        )
        self.two_factor = TwoFactorService(
            self.store,
            encryption_key=settings.mfa_encryption_key or settings.jwt_secret,
            issuer=settings.totp_issuer,
            backup_code_count=settings.backup_code_count,
        )
        self.auth = AuthService(
            self.store,
            settings,
            hasher=self.hasher,
            policy=self.policy,
            tokens=self.tokens,
            denylist=self.denylist,
            audit=self.audit,
            lockout=self.lockout,
            detector=self.detector,
            two_factor=self.two_factor,
        )
        self.sweeper = TokenSweeper(
            self.tokens,
            self.denylist,
            interval=settings.token_sweep_interval_seconds,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            lockout_threshold=settings.lockout_threshold,
            rotate_refresh_tokens=settings.rotate_refresh_tokens,
            token_sweep_enabled=settings.token_sweep_enabled,
        )

    async def close(self) -> None:
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked check is the fast path and the
    locked check prevents two threads from building competing runtimes.
    """
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                try:
                    asyncio.run(runtime.cache.close())
                except Exception as exc:
                    logger.warning("redis_close_failed", error=str(exc))
        runtime = Runtime()
        return runtime
