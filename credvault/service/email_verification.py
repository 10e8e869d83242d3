from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from credvault.logging import get_logger
from credvault.service.crypto import generate_token
from credvault.service.email import EmailService
from credvault.storage.models import EmailVerificationToken, User, utcnow

logger = get_logger(__name__)

VERIFICATION_TOKEN_TTL = timedelta(hours=24)
VERIFICATION_TOKEN_BYTES = 32
RESEND_COOLDOWN = timedelta(minutes=5)
VERIFICATION_RETENTION = timedelta(days=30)


class EmailVerificationStore(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: int) -> Optional[User]: ...

    def invalidate_email_verification_tokens(self, user_id: int, now: datetime) -> int: ...

    def create_email_verification_token(
        self,
        *,
        user_id: int,
        token: str,
        email: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> EmailVerificationToken: ...

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]: ...

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]: ...

    def has_recent_email_verification_token(self, user_id: int, since: datetime) -> bool: ...

    def delete_stale_email_verification_tokens(
        self, now: datetime, created_before: datetime
    ) -> int: ...


class EmailVerificationService:
    """Single-use email verification tokens.

    Issuing a token supersedes the user's unused ones; ``verify`` consumes a
    token at most once and flips the user's verified flag.
    """

    def __init__(
        self,
        store: EmailVerificationStore,
        email: EmailService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email = email
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def generate_token(self, user_id: int, email: str) -> Optional[str]:
        """Supersede unused tokens and issue a new one; None if the store fails."""
        now = self._now()
        try:
            await asyncio.to_thread(
                self.store.invalidate_email_verification_tokens, user_id, now
            )
            row = await asyncio.to_thread(
                self.store.create_email_verification_token,
                user_id=user_id,
                token=generate_token(VERIFICATION_TOKEN_BYTES),
                email=email,
                created_at=now,
                expires_at=now + VERIFICATION_TOKEN_TTL,
            )
        except Exception as exc:
            logger.error(
                "email_verification_issue_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        logger.info("email_verification_token_issued", user_id=user_id, token_id=row.id)
        return row.token

    async def send_verification(self, user_id: int, email: str) -> bool:
        """Issue a fresh token and deliver it; False on any failure."""
        token = await self.generate_token(user_id, email)
        if token is None:
            return False
        return await asyncio.to_thread(self.email.send_email_verification, email, token)

    async def verify(self, token: str) -> bool:
        if not token:
            return False
        now = self._now()
        try:
            row = await asyncio.to_thread(
                self.store.consume_email_verification_token, token, now
            )
            if row is None:
                existing = await asyncio.to_thread(
                    self.store.get_email_verification_token, token
                )
                if existing is None:
                    reason = "not_found"
                elif existing.is_used:
                    reason = "used"
                else:
                    reason = "expired"
                logger.warning(
                    "email_verification_rejected", token_prefix=token[:8], reason=reason
                )
                return False
            user = await asyncio.to_thread(self.store.mark_email_verified, row.user_id)
        except Exception as exc:
            logger.error(
                "email_verification_error",
                token_prefix=token[:8],
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_verified", user_id=row.user_id)
        if user is not None and user.email:
            sent = await asyncio.to_thread(self.email.send_welcome, user.email)
            if not sent:
                logger.warning("welcome_email_failed", user_id=user.id)
        return True

    async def resend(self, email: str) -> bool:
        now = self._now()
        try:
            user = await asyncio.to_thread(self.store.get_user_by_email, email)
            if user is None or user.is_email_verified or not user.is_active:
                logger.info("email_verification_resend_skipped", email=email)
                return False
            recent = await asyncio.to_thread(
                self.store.has_recent_email_verification_token,
                user.id,
                now - RESEND_COOLDOWN,
            )
        except Exception as exc:
            logger.error(
                "email_verification_resend_error",
                email=email,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if recent:
            logger.info("email_verification_resend_throttled", user_id=user.id)
            return False
        return await self.send_verification(user.id, email)

    async def cleanup_expired(self) -> int:
        now = self._now()
        return await asyncio.to_thread(
            self.store.delete_stale_email_verification_tokens,
            now,
            now - VERIFICATION_RETENTION,
        )
