from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Tuple

from credvault.logging import get_logger
from credvault.service.crypto import CredentialHasher, generate_token
from credvault.service.email import EmailService
from credvault.storage.models import PasswordResetToken, User, utcnow

logger = get_logger(__name__)

RESET_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_BYTES = 32
RESET_REQUEST_COOLDOWN = timedelta(minutes=5)
RESET_RETENTION = timedelta(days=7)
# Serial ids start at 1; lookups for unknown accounts run against this id
_NO_USER_ID = 0


class PasswordResetStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def has_recent_password_reset_token(self, user_id: int, since: datetime) -> bool: ...

    def invalidate_password_reset_tokens(self, user_id: int, now: datetime) -> int: ...

    def create_password_reset_token(
        self,
        *,
        user_id: int,
        token: str,
        created_at: datetime,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasswordResetToken: ...

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]: ...

    def apply_password_reset(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[Tuple[int, int]]: ...

    def delete_stale_password_reset_tokens(
        self, now: datetime, created_before: datetime
    ) -> int: ...


class PasswordResetService:
    """Password reset by single-use emailed token.

    ``request_reset`` answers the same way whether or not the address belongs
    to an account. Unknown addresses cost the same store round trips, and the
    email goes out from a tracked task after the answer; ``wait_for_deliveries``
    awaits the ones still in flight. A successful ``reset_password`` also retires the user's
    other reset tokens and revokes every active refresh token.
    """

    def __init__(
        self,
        store: PasswordResetStore,
        email: EmailService,
        hasher: CredentialHasher,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email = email
        self.hasher = hasher
        self._clock = clock or utcnow
        self._deliveries: set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return self._clock()

    async def request_reset(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        now = self._now()
        try:
            user = await asyncio.to_thread(self.store.get_user_by_email, email)
            known = user is not None and user.is_active
            user_id = user.id if known else _NO_USER_ID
            recent = await asyncio.to_thread(
                self.store.has_recent_password_reset_token,
                user_id,
                now - RESET_REQUEST_COOLDOWN,
            )
            if not known:
                await asyncio.to_thread(
                    self.store.invalidate_password_reset_tokens, user_id, now
                )
                logger.info("password_reset_unknown_account", email=email)
                return True
            if recent:
                logger.info("password_reset_throttled", user_id=user.id)
                return True
            await asyncio.to_thread(
                self.store.invalidate_password_reset_tokens, user.id, now
            )
            row = await asyncio.to_thread(
                self.store.create_password_reset_token,
                user_id=user.id,
                token=generate_token(RESET_TOKEN_BYTES),
                created_at=now,
                expires_at=now + RESET_TOKEN_TTL,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except Exception as exc:
            logger.error(
                "password_reset_request_failed",
                email=email,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        task = asyncio.create_task(self._deliver(email, row))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        return True

    async def _deliver(self, email: str, row: PasswordResetToken) -> None:
        try:
            sent = await asyncio.to_thread(self.email.send_password_reset, email, row.token)
        except Exception as exc:
            logger.error(
                "password_reset_email_failed",
                user_id=row.user_id,
                token_id=row.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not sent:
            logger.error("password_reset_email_failed", user_id=row.user_id, token_id=row.id)
        else:
            logger.info("password_reset_requested", user_id=row.user_id, token_id=row.id)

    async def wait_for_deliveries(self) -> None:
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries))

    async def validate_token(self, token: str) -> bool:
        if not token:
            return False
        try:
            row = await asyncio.to_thread(self.store.get_password_reset_token, token)
        except Exception as exc:
            logger.error(
                "password_reset_lookup_failed",
                token_prefix=token[:8],
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return row is not None and row.is_valid(self._now())

    async def reset_password(self, token: str, new_password: str) -> bool:
        if not token:
            return False
        try:
            # Cheap pre-check so bad tokens do not pay for an Argon2 hash
            if not await self.validate_token(token):
                logger.warning("password_reset_invalid_token", token_prefix=token[:8])
                return False
            password_hash = await asyncio.to_thread(self.hasher.hash, new_password)
            result = await asyncio.to_thread(
                self.store.apply_password_reset, token, password_hash, self._now()
            )
        except Exception as exc:
            logger.error(
                "password_reset_failed",
                token_prefix=token[:8],
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if result is None:
            logger.warning("password_reset_token_raced", token_prefix=token[:8])
            return False
        user_id, revoked_sessions = result
        logger.info(
            "password_reset_completed", user_id=user_id, revoked_sessions=revoked_sessions
        )
        return True

    async def cleanup_expired(self) -> int:
        now = self._now()
        return await asyncio.to_thread(
            self.store.delete_stale_password_reset_tokens, now, now - RESET_RETENTION
        )
