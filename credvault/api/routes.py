from __future__ import annotations

from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    Query,
    Request,
    Response,
)

from credvault.api.schemas import (
    AdminStatusResponse,
    AuthResponse,
    EmailLoginRequest,
    EmailRegisterRequest,
    EmailRequest,
    Envelope,
    MessageResponse,
    OtpResponse,
    OtpVerifyRequest,
    PasswordResetConfirm,
    PermissionCheckResponse,
    PhoneRequest,
    RefreshTokenRequest,
    ResetTokenStatus,
    RevokeAllResponse,
    RoleAssignmentResponse,
    RoleChangeRequest,
    RoleInfo,
    RoleStatisticsResponse,
    RoleSummary,
    TokenPairResponse,
    TokenRequest,
    UserResponse,
)
from credvault.service.accounts import AuthContext, AuthResult
from credvault.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from credvault.service.otp import OtpSendResult
from credvault.service.roles import Role, describe_role, permissions_for
from credvault.service.runtime import check_rate_limit, get_runtime
from credvault.service.tokens import ACCESS_TOKEN_TTL, TokenPair
from credvault.storage.models import User

router = APIRouter(prefix="/v1")
well_known_router = APIRouter(prefix="/.well-known", tags=["discovery"])

INVALID_TOKEN_MESSAGE = "Invalid or expired token"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Apply the endpoint throttle; raises 429 once the bucket is empty."""
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, retry_after)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": retry_after}
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _device_info(request: Request) -> Optional[str]:
    agent = request.headers.get("user-agent")
    return agent[:255] if agent else None


def _user_response(user: User, role: Optional[Role] = None) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        phone_number=user.phone_number,
        is_email_verified=user.is_email_verified,
        is_phone_verified=user.is_phone_verified,
        is_active=user.is_active,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
        role=role.value if role else None,
    )


def _token_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=int(ACCESS_TOKEN_TTL.total_seconds()),
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


async def _auth_envelope(result: AuthResult) -> Envelope:
    role = None
    if result.user is not None:
        role = await get_runtime().roles.current_role(result.user.id)
    return Envelope(
        status="ok",
        data=AuthResponse(
            success=result.success,
            message=result.message,
            tokens=_token_response(result.tokens) if result.tokens else None,
            user=_user_response(result.user, role) if result.user else None,
        ),
    )


def _otp_envelope(result: OtpSendResult) -> Envelope:
    if result.rate_limited:
        raise RateLimitedError(result.message)
    if not result.success:
        raise BadRequestError(result.message)
    return Envelope(
        status="ok",
        data=OtpResponse(
            success=True, message=result.message, expires_at=result.expires_at
        ),
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.accounts.authenticate(authorization)
    if not ctx:
        raise AuthenticationError("invalid or missing access token")
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.role is not Role.PLATFORM_ADMIN:
        raise ForbiddenError("admin access required")
    return principal


# -- auth --------------------------------------------------------------------


@router.post("/auth/register/email", response_model=Envelope, tags=["auth"])
async def register_email(body: EmailRegisterRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.accounts.register_email(
        body.email,
        body.password,
        device_info=_device_info(request),
        ip_address=_client_ip(request),
    )
    if not result.success:
        raise BadRequestError(result.message)
    return await _auth_envelope(result)


@router.post("/auth/login/email", response_model=Envelope, tags=["auth"])
async def login_email(body: EmailLoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: Unknown email, wrong password or disabled account (same message)
        429: Too many attempts for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.accounts.login_email(
        body.email,
        body.password,
        device_info=_device_info(request),
        ip_address=_client_ip(request),
    )
    if not result.success:
        raise AuthenticationError(result.message)
    return await _auth_envelope(result)


@router.post("/auth/register/phone", response_model=Envelope, tags=["auth"])
async def register_phone(body: PhoneRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:{body.phone_number}", runtime.settings.otp_rate_limit_per_minute, 60
    )
    return _otp_envelope(await runtime.accounts.register_phone(body.phone_number))


@router.post("/auth/login/phone", response_model=Envelope, tags=["auth"])
async def login_phone(body: PhoneRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:{body.phone_number}", runtime.settings.otp_rate_limit_per_minute, 60
    )
    return _otp_envelope(await runtime.accounts.login_phone(body.phone_number))


@router.post("/auth/send-otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: PhoneRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:{body.phone_number}", runtime.settings.otp_rate_limit_per_minute, 60
    )
    return _otp_envelope(await runtime.accounts.send_otp(body.phone_number))


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OtpVerifyRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp-verify:{body.phone_number}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
    )
    result = await runtime.accounts.verify_otp(
        body.phone_number,
        body.otp_code,
        device_info=_device_info(request),
        ip_address=_client_ip(request),
    )
    if not result.success:
        raise AuthenticationError(result.message)
    return await _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshTokenRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
    )
    pair = await runtime.tokens.refresh(
        body.refresh_token,
        device_info=_device_info(request),
        ip_address=_client_ip(request),
    )
    if pair is None:
        raise AuthenticationError("invalid refresh token")
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/revoke", response_model=Envelope, tags=["auth"])
async def revoke_token(body: RefreshTokenRequest):
    await get_runtime().tokens.revoke(body.refresh_token)
    # Same answer whether or not the token existed
    return Envelope(
        status="ok", data=MessageResponse(success=True, message="Token revoked")
    )


@router.post("/auth/revoke-all", response_model=Envelope, tags=["auth"])
async def revoke_all_tokens(principal: AuthContext = Depends(get_user)):
    count = await get_runtime().tokens.revoke_all(principal.user.id)
    return Envelope(status="ok", data=RevokeAllResponse(revoked=count))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=_user_response(principal.user, principal.role))


async def _verify_email_token(token: str) -> Envelope:
    if not await get_runtime().email_verification.verify(token):
        raise ValidationError(INVALID_TOKEN_MESSAGE)
    return Envelope(
        status="ok",
        data=MessageResponse(success=True, message="Email verified successfully"),
    )


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email_link(token: str = Query(..., min_length=1, max_length=256)):
    return await _verify_email_token(token)


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: TokenRequest):
    return await _verify_email_token(body.token)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"verify-resend:{body.email}", runtime.settings.reset_rate_limit_per_minute, 60
    )
    if not await runtime.email_verification.resend(body.email):
        raise BadRequestError("Unable to resend verification email")
    return Envelope(
        status="ok",
        data=MessageResponse(success=True, message="Verification email sent"),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: EmailRequest, request: Request, background_tasks: BackgroundTasks
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:{body.email}", runtime.settings.reset_rate_limit_per_minute, 60
    )
    ok = await runtime.password_reset.request_reset(
        body.email, ip_address=_client_ip(request), user_agent=_device_info(request)
    )
    if not ok:
        raise ServerError("Unable to process request")
    # Reset mail goes out after the response is written
    background_tasks.add_task(runtime.password_reset.wait_for_deliveries)
    return Envelope(
        status="ok",
        data=MessageResponse(
            success=True,
            message="If an account exists for that email, a reset link has been sent",
        ),
    )


@router.post("/auth/validate-reset-token", response_model=Envelope, tags=["auth"])
async def validate_reset_token(body: TokenRequest):
    valid = await get_runtime().password_reset.validate_token(body.token)
    return Envelope(status="ok", data=ResetTokenStatus(valid=valid))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset-confirm:{body.token[:16]}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    if not await runtime.password_reset.reset_password(body.token, body.new_password):
        raise ValidationError(INVALID_TOKEN_MESSAGE)
    return Envelope(
        status="ok",
        data=MessageResponse(success=True, message="Password has been reset"),
    )


# -- roles -------------------------------------------------------------------


def _parse_role_path(value: str) -> Role:
    role = Role.parse(value)
    if role is None:
        raise ValidationError("unknown role")
    return role


@router.post("/roles/assign", response_model=Envelope, tags=["roles"])
async def assign_role(
    body: RoleChangeRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    if not await runtime.roles.can_assign(principal.user.id, body.role):
        raise ForbiddenError("not allowed to assign this role")
    ok = await runtime.roles.assign(
        body.user_id, body.role, assigned_by=principal.user.id, notes=body.notes
    )
    if not ok:
        raise BadRequestError("Failed to assign role")
    return Envelope(
        status="ok",
        data=MessageResponse(
            success=True, message=f"Role {body.role.value} assigned to user {body.user_id}"
        ),
    )


@router.post("/roles/revoke", response_model=Envelope, tags=["roles"])
async def revoke_role(
    body: RoleChangeRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    if not await runtime.roles.can_assign(principal.user.id, body.role):
        raise ForbiddenError("not allowed to revoke this role")
    ok = await runtime.roles.revoke(
        body.user_id, body.role, revoked_by=principal.user.id, notes=body.notes
    )
    if not ok:
        raise BadRequestError("Failed to revoke role")
    return Envelope(
        status="ok",
        data=MessageResponse(
            success=True, message=f"Role {body.role.value} revoked from user {body.user_id}"
        ),
    )


@router.get("/roles/users/{role}", response_model=Envelope, tags=["roles"])
async def users_with_role(role: str, principal: AuthContext = Depends(get_admin_user)):
    parsed = _parse_role_path(role)
    users = await get_runtime().roles.users_with_role(parsed)
    return Envelope(status="ok", data=[_user_response(u, parsed) for u in users])


@router.get("/roles/history/{user_id}", response_model=Envelope, tags=["roles"])
async def role_history(user_id: int, principal: AuthContext = Depends(get_admin_user)):
    entries = await get_runtime().roles.history(user_id)
    return Envelope(
        status="ok",
        data=[
            RoleAssignmentResponse(
                id=e.id,
                user_id=e.user_id,
                role=e.role,
                assigned_at=e.assigned_at,
                assigned_by=e.assigned_by,
                revoked_at=e.revoked_at,
                revoked_by=e.revoked_by,
                notes=e.notes,
                is_active=e.is_active,
            )
            for e in entries
        ],
    )


@router.get("/roles/statistics", response_model=Envelope, tags=["roles"])
async def role_statistics(principal: AuthContext = Depends(get_admin_user)):
    counts = await get_runtime().roles.statistics()
    return Envelope(
        status="ok",
        data=RoleStatisticsResponse(
            counts={role.value: n for role, n in counts.items()},
            total_active=sum(counts.values()),
        ),
    )


@router.get("/roles/me", response_model=Envelope, tags=["roles"])
async def my_role(principal: AuthContext = Depends(get_user)):
    role = principal.role
    return Envelope(
        status="ok",
        data=RoleSummary(
            role=role.value if role else None,
            namespace=role.namespace.value if role else None,
            permissions=sorted(permissions_for(role)) if role else [],
        ),
    )


@router.get("/roles/check-permission/{permission}", response_model=Envelope, tags=["roles"])
async def check_permission(permission: str, principal: AuthContext = Depends(get_user)):
    granted = await get_runtime().roles.has_permission(principal.user.id, permission)
    return Envelope(
        status="ok", data=PermissionCheckResponse(permission=permission, granted=granted)
    )


@router.get("/roles/available", response_model=Envelope, tags=["roles"])
async def available_roles():
    return Envelope(status="ok", data=[RoleInfo(**describe_role(role)) for role in Role])


# -- admin -------------------------------------------------------------------


@router.post("/admin/bootstrap", response_model=Envelope, tags=["admin"])
async def bootstrap_admin(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    status = await runtime.accounts.admin_status()
    if not status["bootstrap_required"]:
        raise ConflictError("an administrator already exists")
    if not await runtime.accounts.bootstrap_admin(principal.user.id):
        raise BadRequestError("unable to bootstrap administrator")
    return Envelope(
        status="ok",
        data=MessageResponse(success=True, message="Administrator role granted"),
    )


@router.get("/admin/status", response_model=Envelope, tags=["admin"])
async def admin_status():
    status = await get_runtime().accounts.admin_status()
    return Envelope(status="ok", data=AdminStatusResponse(**status))


# -- discovery ---------------------------------------------------------------


@well_known_router.get("/jwks.json")
async def jwks():
    return get_runtime().tokens.jwks()


@well_known_router.get("/openid-configuration")
@well_known_router.get("/openid_configuration", include_in_schema=False)
async def openid_configuration():
    runtime = get_runtime()
    return runtime.tokens.openid_configuration(runtime.settings.app_base_url)
