from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from venueauth.config import get_settings, reset_settings_cache
from venueauth.logging import get_logger
from venueauth.service.account import AccountService
from venueauth.service.auth import AuthService
from venueauth.service.blacklist import TokenBlacklist
from venueauth.service.cleanup import SessionCleanupWorker
from venueauth.service.email import EmailService
from venueauth.service.sms import SmsService
from venueauth.service.subusers import SubUserService
from venueauth.service.tokens import TokenService
from venueauth.service.validation import TokenValidator
from venueauth.service.verification import VerificationService
from venueauth.storage.memory import MemoryStore
from venueauth.storage.postgres import PostgresStore
from venueauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
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

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client under TEST_MODE avoids cross-event-loop connections
                cache = (
                    SyncRedisCache(self.settings.redis_url)
                    if self.settings.test_mode
                    else RedisCache(self.settings.redis_url)
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the token blacklist and rate limits; start Redis "
                    "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_not_attempted",
                message=(
                    f"Running without Redis under {fallback_mode}; the token blacklist "
                    "and rate limits are process-local."
                ),
                mode=fallback_mode,
            )

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.sms = SmsService(
            gateway_url=self.settings.sms_gateway_url,
            account_sid=self.settings.sms_account_sid,
            auth_token=self.settings.sms_auth_token,
            from_number=self.settings.sms_from_number,
        )
        self.blacklist = TokenBlacklist(self.cache)
        self.tokens = TokenService(self.store, self.blacklist, self.settings)
        self.validator = TokenValidator(self.tokens.codec, self.blacklist, self.store)
        self.verification = VerificationService(
            self.store, self.settings, email=self.email, sms=self.sms
        )
        self.auth = AuthService(
            self.store, self.tokens, self.verification, self.validator, self.settings
        )
        self.account = AccountService(
            self.store,
            self.auth,
            self.tokens,
            self.verification,
            self.validator,
            self.settings,
        )
        self.sub_users = SubUserService(self.store, self.tokens, self.settings)
        self.cleanup_worker = SessionCleanupWorker(
            self.tokens,
            interval_seconds=self.settings.session_cleanup_interval_hours * 3600,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process Runtime, creating it on first use (double-checked lock)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    if cache is None:
        return
    try:
        if isinstance(cache, SyncRedisCache):
            cache.client.close()
        else:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(cache.close())
            except RuntimeError:
                asyncio.run(cache.close())
    except Exception as exc:
        logger.warning("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_cache(runtime.cache)
            if isinstance(runtime.store, PostgresStore):
                runtime.store.close()
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
    """Token-bucket rate limit in Redis, or in process memory without it."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = (
            int((cost - tokens) / refill_rate) + 1 if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = [
    "Runtime",
    "get_runtime",
    "reset_runtime_for_tests",
    "check_rate_limit",
]
