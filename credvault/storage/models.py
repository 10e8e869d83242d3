from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    email: Optional[str] = None
    phone_number: Optional[str] = None
    password_hash: Optional[str] = None
    is_email_verified: bool = False
    is_phone_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    external_id: Optional[str] = None


@dataclass
class OtpCredential:
    id: int
    user_id: int
    phone_number: str
    code: str
    created_at: datetime
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    attempt_count: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class EmailVerificationToken:
    id: int
    user_id: int
    token: str
    email: str
    created_at: datetime
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        return not self.is_used and now < self.expires_at


@dataclass
class PasswordResetToken:
    id: int
    user_id: int
    token: str
    created_at: datetime
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def is_valid(self, now: datetime) -> bool:
        return not self.is_used and now < self.expires_at


@dataclass
class RefreshToken:
    """Rotating session credential.

    Expiry is derived at read time from ``expires_at``; only revocation is a
    stored transition. ``replaced_by`` links a rotated token to its successor.
    """

    id: int
    user_id: int
    token: str
    created_at: datetime
    expires_at: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    device_info: Optional[str] = None
    ip_address: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class UserRoleAssignment:
    id: int
    user_id: int
    role: str
    assigned_at: datetime
    assigned_by: Optional[int] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[int] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None
