from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from credvault.logging import get_logger
from credvault.service.crypto import generate_otp_code
from credvault.service.sms import SmsService
from credvault.storage.errors import ConstraintViolation
from credvault.storage.models import OtpCredential, User, utcnow

logger = get_logger(__name__)

OTP_TTL = timedelta(minutes=5)
OTP_MAX_ATTEMPTS = 3
OTP_SENDS_PER_WINDOW = 3
OTP_SEND_WINDOW = timedelta(hours=1)


class OtpStore(Protocol):
    def get_user_by_phone(self, phone_number: str) -> Optional[User]: ...

    def create_user(self, *, phone_number: Optional[str] = None, created_at: datetime, **kwargs) -> User: ...

    def mark_phone_verified(self, user_id: int, login_at: datetime) -> Optional[User]: ...

    def count_otps_since(self, phone_number: str, since: datetime) -> int: ...

    def invalidate_otps(self, phone_number: str, now: datetime) -> int: ...

    def create_otp(
        self,
        *,
        user_id: int,
        phone_number: str,
        code: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> OtpCredential: ...

    def find_valid_otp(
        self, phone_number: str, code: str, now: datetime, max_attempts: int
    ) -> Optional[OtpCredential]: ...

    def consume_otp(self, otp_id: int, now: datetime) -> bool: ...

    def record_failed_otp_attempt(
        self, phone_number: str, now: datetime, max_attempts: int
    ) -> int: ...

    def delete_expired_otps(self, now: datetime, max_attempts: int) -> int: ...


@dataclass
class OtpSendResult:
    success: bool
    message: str
    expires_at: Optional[datetime] = None
    rate_limited: bool = False


class OtpService:
    """Phone one-time codes: issue, rate-limit, validate.

    At most three codes per phone per trailing hour. A new code supersedes
    any unused one. Three wrong guesses burn every outstanding code for the
    phone, and a correct code is consumed with a compare-and-set so it can
    succeed only once.
    """

    def __init__(
        self,
        store: OtpStore,
        sms: SmsService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sms = sms
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def _sent_in_window(self, phone_number: str, now: datetime) -> int:
        return await asyncio.to_thread(
            self.store.count_otps_since, phone_number, now - OTP_SEND_WINDOW
        )

    async def _user_for_phone(self, phone_number: str, now: datetime) -> User:
        user = await asyncio.to_thread(self.store.get_user_by_phone, phone_number)
        if user is not None:
            return user
        try:
            user = await asyncio.to_thread(
                self.store.create_user, phone_number=phone_number, created_at=now
            )
        except ConstraintViolation:
            # Lost a race with a concurrent first send for the same phone
            user = await asyncio.to_thread(self.store.get_user_by_phone, phone_number)
            if user is None:
                raise
            return user
        logger.info("phone_user_created", user_id=user.id)
        return user

    async def send(self, phone_number: str) -> OtpSendResult:
        now = self._now()
        try:
            if await self._sent_in_window(phone_number, now) >= OTP_SENDS_PER_WINDOW:
                logger.warning("otp_rate_limited", phone=phone_number)
                return OtpSendResult(
                    success=False,
                    message="Too many OTP requests. Please try again later.",
                    rate_limited=True,
                )
            user = await self._user_for_phone(phone_number, now)
            if not user.is_active:
                logger.warning("otp_send_inactive_user", user_id=user.id)
                return OtpSendResult(success=False, message="Failed to send OTP")
            await asyncio.to_thread(self.store.invalidate_otps, phone_number, now)
            code = generate_otp_code()
            otp = await asyncio.to_thread(
                self.store.create_otp,
                user_id=user.id,
                phone_number=phone_number,
                code=code,
                created_at=now,
                expires_at=now + OTP_TTL,
            )
        except Exception as exc:
            logger.error(
                "otp_send_failed",
                phone=phone_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return OtpSendResult(success=False, message="Failed to send OTP")

        delivered = await asyncio.to_thread(self.sms.send_otp, phone_number, code)
        if not delivered:
            # Never-delivered codes must not be redeemable
            await asyncio.to_thread(self.store.consume_otp, otp.id, self._now())
            logger.error("otp_delivery_failed", phone=phone_number, otp_id=otp.id)
            return OtpSendResult(success=False, message="Failed to send OTP")

        logger.info("otp_sent", user_id=user.id, otp_id=otp.id)
        return OtpSendResult(
            success=True, message="OTP sent successfully", expires_at=otp.expires_at
        )

    async def validate(self, phone_number: str, code: str) -> bool:
        now = self._now()
        try:
            otp = await asyncio.to_thread(
                self.store.find_valid_otp, phone_number, code, now, OTP_MAX_ATTEMPTS
            )
            if otp is None:
                exhausted = await asyncio.to_thread(
                    self.store.record_failed_otp_attempt,
                    phone_number,
                    now,
                    OTP_MAX_ATTEMPTS,
                )
                logger.warning(
                    "otp_validation_failed", phone=phone_number, exhausted=exhausted
                )
                return False
            if not await asyncio.to_thread(self.store.consume_otp, otp.id, now):
                logger.warning("otp_already_consumed", phone=phone_number, otp_id=otp.id)
                return False
            await asyncio.to_thread(self.store.mark_phone_verified, otp.user_id, now)
        except Exception as exc:
            logger.error(
                "otp_validation_error",
                phone=phone_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("otp_validated", user_id=otp.user_id, otp_id=otp.id)
        return True

    async def can_send(self, phone_number: str) -> bool:
        return await self.remaining_attempts(phone_number) > 0

    async def remaining_attempts(self, phone_number: str) -> int:
        sent = await self._sent_in_window(phone_number, self._now())
        return max(0, OTP_SENDS_PER_WINDOW - sent)

    async def cleanup_expired(self) -> int:
        return await asyncio.to_thread(
            self.store.delete_expired_otps, self._now(), OTP_MAX_ATTEMPTS
        )
