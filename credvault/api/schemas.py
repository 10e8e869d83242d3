from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from credvault.service.roles import Role

_VALID_ERROR_CODES = frozenset({
    "bad_request",
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{7,14}$")
_OTP_PATTERN = re.compile(r"^\d{6}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: str) -> str:
    """Strip formatting characters and require an E.164-style number."""
    if not isinstance(value, str):
        raise ValueError("phone number must be a string")
    cleaned = re.sub(r"[\s().-]", "", value)
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError("invalid phone number")
    return cleaned if cleaned.startswith("+") else f"+{cleaned}"


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# -- auth requests -----------------------------------------------------------


class EmailRegisterRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailLoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class PhoneRequest(BaseModel):
    phone_number: str = Field(..., max_length=32)

    @field_validator("phone_number")
    @classmethod
    def _validate_phone_number(cls, value: str) -> str:
        return _validate_phone(value)


class OtpVerifyRequest(PhoneRequest):
    otp_code: str

    @field_validator("otp_code")
    @classmethod
    def _validate_otp_code(cls, value: str) -> str:
        value = value.strip()
        if not _OTP_PATTERN.match(value):
            raise ValueError("otp_code must be 6 digits")
        return value


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


# -- auth responses ----------------------------------------------------------


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime


class UserResponse(BaseModel):
    id: int
    email: Optional[str] = None
    phone_number: Optional[str] = None
    is_email_verified: bool = False
    is_phone_verified: bool = False
    is_active: bool = True
    created_at: datetime
    last_login_at: Optional[datetime] = None
    role: Optional[str] = None


class AuthResponse(BaseModel):
    success: bool
    message: str
    tokens: Optional[TokenPairResponse] = None
    user: Optional[UserResponse] = None


class OtpResponse(BaseModel):
    success: bool
    message: str
    expires_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    success: bool
    message: str


class ResetTokenStatus(BaseModel):
    valid: bool


class RevokeAllResponse(BaseModel):
    revoked: int


# -- roles -------------------------------------------------------------------


class RoleChangeRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    role: Role
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("role", mode="before")
    @classmethod
    def _parse_role(cls, value: Any) -> Any:
        if isinstance(value, str):
            parsed = Role.parse(value)
            if parsed is None:
                raise ValueError("unknown role")
            return parsed
        return value


class RoleAssignmentResponse(BaseModel):
    id: int
    user_id: int
    role: str
    assigned_at: datetime
    assigned_by: Optional[int] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[int] = None
    notes: Optional[str] = None
    is_active: bool


class RoleSummary(BaseModel):
    role: Optional[str] = None
    namespace: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)


class PermissionCheckResponse(BaseModel):
    permission: str
    granted: bool


class RoleInfo(BaseModel):
    role: str
    namespace: str
    display_name: str
    description: str
    permissions: List[str]


class RoleStatisticsResponse(BaseModel):
    counts: Dict[str, int]
    total_active: int


class AdminStatusResponse(BaseModel):
    total_users: int
    admin_count: int
    bootstrap_required: bool
    role_counts: Dict[str, int]
