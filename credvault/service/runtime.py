from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from credvault.config import get_settings, reset_settings_cache
from credvault.logging import get_logger
from credvault.service.accounts import AccountService
from credvault.service.crypto import CredentialHasher
from credvault.service.email import EmailService
from credvault.service.email_verification import EmailVerificationService
from credvault.service.identity_provider import build_identity_provider
from credvault.service.otp import OtpService
from credvault.service.password_reset import PasswordResetService
from credvault.service.role_ledger import RoleLedger
from credvault.service.sms import SmsService
from credvault.service.sweepers import build_sweepers
from credvault.service.tokens import TokenService
from credvault.storage.memory import MemoryStore
from credvault.storage.models import utcnow
from credvault.storage.postgres import PostgresStore
from credvault.storage.redis_limits import RedisRateLimiter, SyncRedisRateLimiter

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
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
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
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
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.limiter = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding a pool to one event loop
                if self.settings.test_mode:
                    limiter = SyncRedisRateLimiter(self.settings.redis_url)
                else:
                    limiter = RedisRateLimiter(self.settings.redis_url)
                limiter.verify_connection()
                self.limiter = limiter
            except Exception as exc:
                redis_error = exc
                self.limiter = None

        if not self.limiter:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for endpoint throttling; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; endpoint throttling is per-process only.",
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
            base_url=self.settings.app_base_url,
        )
        self.sms = SmsService(
            account_sid=self.settings.twilio_account_sid,
            auth_token=self.settings.twilio_auth_token,
            from_number=self.settings.twilio_from_number,
        )
        self.identity_provider = build_identity_provider(self.settings)

        self.hasher = CredentialHasher()
        self.roles = RoleLedger(self.store, identity_provider=self.identity_provider)
        self.tokens = TokenService(
            self.store,
            signing_secret=self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            role_ledger=self.roles,
            revoke_family_on_reuse=self.settings.refresh_reuse_revokes_family,
        )
        self.otp = OtpService(self.store, self.sms)
        self.email_verification = EmailVerificationService(self.store, self.email)
        self.password_reset = PasswordResetService(self.store, self.email, self.hasher)
        self.accounts = AccountService(
            self.store,
            hasher=self.hasher,
            tokens=self.tokens,
            otp=self.otp,
            email_verification=self.email_verification,
            roles=self.roles,
            identity_provider=self.identity_provider,
        )
        self.sweepers = build_sweepers(
            otp=self.otp,
            tokens=self.tokens,
            email_verification=self.email_verification,
            password_reset=self.password_reset,
        )

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.limiter is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            identity_provider_enabled=self.identity_provider is not None,
            sweepers_enabled=self.settings.sweepers_enabled,
        )

    async def aclose(self) -> None:
        if self.identity_provider is not None:
            await self.identity_provider.close()
        if self.limiter is not None:
            await self.limiter.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, creating it on first use."""
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
        if runtime is not None and isinstance(runtime.limiter, SyncRedisRateLimiter):
            runtime.limiter._sync_client.close()
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
    """Token-bucket endpoint throttle, local when Redis is unavailable.

    Returns ``allowed``, or ``(allowed, remaining, retry_after)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.limiter:
        result = await runtime.limiter.hit(key, limit, window_seconds, cost=cost)
        return result if return_remaining else result[0]

    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            runtime._local_rate_limits[key] = (tokens, now)
        retry_after = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, retry_after)
    return allowed
