from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from credvault.logging import get_logger
from credvault.service.crypto import CredentialHasher
from credvault.service.email_verification import EmailVerificationService
from credvault.service.identity_provider import ExternalIdentityProvider
from credvault.service.otp import OTP_TTL, OtpSendResult, OtpService
from credvault.service.role_ledger import RoleLedger
from credvault.service.roles import Role
from credvault.service.tokens import TokenPair, TokenService
from credvault.storage.errors import ConstraintViolation
from credvault.storage.models import User

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"


@dataclass
class AuthResult:
    success: bool
    message: str
    tokens: Optional[TokenPair] = None
    user: Optional[User] = None


@dataclass
class AuthContext:
    user: User
    role: Optional[Role]


class AccountService:
    """Registration, login and identity resolution on top of the engines."""

    def __init__(
        self,
        store,
        *,
        hasher: CredentialHasher,
        tokens: TokenService,
        otp: OtpService,
        email_verification: EmailVerificationService,
        roles: RoleLedger,
        identity_provider: Optional[ExternalIdentityProvider] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.otp = otp
        self.email_verification = email_verification
        self.roles = roles
        self.identity_provider = identity_provider
        self._bootstrap_lock = asyncio.Lock()

    def _now(self):
        return self.tokens._now()

    async def _mirror_new_user(self, user: User) -> User:
        if self.identity_provider is None or user.external_id:
            return user
        external_id = await self.identity_provider.create_user(user)
        if not external_id:
            logger.warning("identity_provider_user_sync_failed", user_id=user.id)
            return user
        try:
            updated = await asyncio.to_thread(self.store.set_external_id, user.id, external_id)
        except Exception as exc:
            logger.error(
                "external_id_save_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return user
        return updated or user

    async def register_email(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        existing = await asyncio.to_thread(self.store.get_user_by_email, email)
        if existing is not None:
            logger.info("register_email_duplicate", email=email)
            return AuthResult(success=False, message="Email already registered")
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            user = await asyncio.to_thread(
                self.store.create_user,
                email=email,
                password_hash=password_hash,
                created_at=self._now(),
            )
        except ConstraintViolation:
            logger.info("register_email_duplicate", email=email)
            return AuthResult(success=False, message="Email already registered")

        logger.info("user_registered", user_id=user.id, method="email")
        if not await self.email_verification.send_verification(user.id, email):
            logger.warning("verification_email_not_sent", user_id=user.id)
        user = await self._mirror_new_user(user)
        pair = await self.tokens.issue(
            user, device_info=device_info, ip_address=ip_address
        )
        return AuthResult(
            success=True,
            message="Registration successful. Please verify your email.",
            tokens=pair,
            user=user,
        )

    async def login_email(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        stored_hash = user.password_hash if user else None
        if stored_hash:
            valid = await asyncio.to_thread(self.hasher.verify, password, stored_hash)
        else:
            # Unknown and phone-only accounts pay the same Argon2 cost
            valid = await asyncio.to_thread(self.hasher.verify_absent, password)
        if user is None or not valid or not user.is_active:
            logger.warning(
                "login_failed",
                email=email,
                known=user is not None,
                active=bool(user and user.is_active),
            )
            return AuthResult(success=False, message=INVALID_CREDENTIALS)

        if stored_hash and self.hasher.needs_rehash(stored_hash):
            new_hash = await asyncio.to_thread(self.hasher.hash, password)
            await asyncio.to_thread(self.store.set_password_hash, user.id, new_hash)
            logger.info("password_rehashed", user_id=user.id)
        user = await asyncio.to_thread(self.store.record_login, user.id, self._now()) or user
        pair = await self.tokens.issue(
            user, device_info=device_info, ip_address=ip_address
        )
        logger.info("login_succeeded", user_id=user.id, method="email")
        return AuthResult(success=True, message="Login successful", tokens=pair, user=user)

    async def register_phone(self, phone_number: str) -> OtpSendResult:
        existing = await asyncio.to_thread(self.store.get_user_by_phone, phone_number)
        if existing is not None and existing.is_phone_verified:
            logger.info("register_phone_duplicate", phone=phone_number)
            return OtpSendResult(success=False, message="Phone number already registered")
        return await self.otp.send(phone_number)

    async def login_phone(self, phone_number: str) -> OtpSendResult:
        user = await asyncio.to_thread(self.store.get_user_by_phone, phone_number)
        if user is None or not user.is_active:
            # Same answer as a real send so callers cannot probe for accounts
            logger.info("login_phone_unknown", phone=phone_number)
            return OtpSendResult(
                success=True,
                message="OTP sent successfully",
                expires_at=self._now() + OTP_TTL,
            )
        return await self.otp.send(phone_number)

    async def send_otp(self, phone_number: str) -> OtpSendResult:
        return await self.otp.send(phone_number)

    async def verify_otp(
        self,
        phone_number: str,
        code: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        if not await self.otp.validate(phone_number, code):
            return AuthResult(success=False, message="Invalid or expired OTP")
        user = await asyncio.to_thread(self.store.get_user_by_phone, phone_number)
        if user is None or not user.is_active:
            logger.warning("otp_login_inactive_user", phone=phone_number)
            return AuthResult(success=False, message="Invalid or expired OTP")
        user = await self._mirror_new_user(user)
        pair = await self.tokens.issue(
            user, device_info=device_info, ip_address=ip_address
        )
        logger.info("login_succeeded", user_id=user.id, method="phone")
        return AuthResult(
            success=True, message="Phone verified successfully", tokens=pair, user=user
        )

    async def get_user(self, user_id: int) -> Optional[User]:
        return await asyncio.to_thread(self.store.get_user, user_id)

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        user_id = self.tokens.validate_access(token)
        if user_id is None:
            return None
        user = await self.get_user(user_id)
        if user is None or not user.is_active:
            logger.warning("access_token_inactive_user", user_id=user_id)
            return None
        return AuthContext(user=user, role=await self.roles.current_role(user.id))

    async def bootstrap_admin(self, user_id: int) -> bool:
        """Grant platform admin to ``user_id`` only while no admin exists."""
        async with self._bootstrap_lock:
            counts = await self.roles.statistics()
            if counts.get(Role.PLATFORM_ADMIN, 0) > 0:
                logger.warning("admin_bootstrap_refused", user_id=user_id)
                return False
            granted = await self.roles.assign(
                user_id, Role.PLATFORM_ADMIN, assigned_by=None, notes="Initial admin bootstrap"
            )
        if granted:
            logger.info("admin_bootstrapped", user_id=user_id)
        return granted

    async def admin_status(self) -> dict[str, Any]:
        counts = await self.roles.statistics()
        total_users = await asyncio.to_thread(self.store.count_users)
        admins = counts.get(Role.PLATFORM_ADMIN, 0)
        return {
            "total_users": total_users,
            "admin_count": admins,
            "bootstrap_required": admins == 0,
            "role_counts": {role.value: count for role, count in counts.items()},
        }
