from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

from credvault.logging import get_logger
from credvault.service.crypto import encode_urlsafe, generate_token
from credvault.service.errors import ServerError
from credvault.storage.errors import ConstraintViolation
from credvault.storage.models import RefreshToken, User, utcnow

if TYPE_CHECKING:
    from credvault.service.role_ledger import RoleLedger

logger = get_logger(__name__)

ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)
REFRESH_TOKEN_BYTES = 64
REFRESH_TOKEN_RETENTION = timedelta(days=30)


class RefreshTokenStore(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...

    def create_refresh_token(
        self,
        *,
        user_id: int,
        token: str,
        created_at: datetime,
        expires_at: datetime,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        token: str,
        *,
        new_token: str,
        created_at: datetime,
        expires_at: datetime,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(
        self, token: str, now: datetime, replaced_by: Optional[str] = None
    ) -> bool: ...

    def revoke_refresh_tokens_for_user(self, user_id: int, now: datetime) -> int: ...

    def revoke_refresh_chain(self, token: str, now: datetime) -> int: ...

    def delete_stale_refresh_tokens(self, cutoff: datetime) -> int: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "Bearer"


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Signed access tokens and rotating refresh tokens.

    Access tokens are HS256 JWTs checked without touching storage. Refresh
    tokens are opaque, stored, and single-use: ``refresh`` revokes the
    presented token and persists its successor in one storage step, so two
    concurrent refreshes of the same token yield one new pair.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        *,
        signing_secret: str,
        issuer: str,
        audience: str,
        role_ledger: Optional["RoleLedger"] = None,
        revoke_family_on_reuse: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not signing_secret:
            raise ValueError("signing_secret is required")
        self.store = store
        self._secret = signing_secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.role_ledger = role_ledger
        self.revoke_family_on_reuse = revoke_family_on_reuse
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    # -- access tokens -------------------------------------------------------

    def _sign(self, signing_input: str) -> str:
        return encode_urlsafe(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT", "kid": self.key_id}
        header_enc = encode_urlsafe(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = encode_urlsafe(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode_access(self, token: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or None. Expiry is checked with zero leeway."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("typ") != "access":
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        return payload

    def validate_access(self, token: str) -> Optional[int]:
        claims = self.decode_access(token)
        if not claims:
            return None
        try:
            return int(claims["sub"])
        except (KeyError, TypeError, ValueError):
            return None

    def create_access_token(
        self, user: User, *, role: Optional[str] = None
    ) -> tuple[str, datetime]:
        now = self._now()
        expires_at = now + ACCESS_TOKEN_TTL
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": str(user.id),
            "email": user.email,
            "phone": user.phone_number,
            "email_verified": user.is_email_verified,
            "phone_verified": user.is_phone_verified,
            "role": role,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "typ": "access",
        }
        return self._encode_jwt(payload), expires_at

    async def _role_claim(self, user_id: int) -> Optional[str]:
        if self.role_ledger is None:
            return None
        role = await self.role_ledger.current_role(user_id)
        return role.value if role else None

    # -- refresh tokens ------------------------------------------------------

    async def issue(
        self,
        user: User,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        now = self._now()
        refresh_value = generate_token(REFRESH_TOKEN_BYTES)
        try:
            row = await asyncio.to_thread(
                self.store.create_refresh_token,
                user_id=user.id,
                token=refresh_value,
                created_at=now,
                expires_at=now + REFRESH_TOKEN_TTL,
                device_info=device_info,
                ip_address=ip_address,
            )
        except ConstraintViolation as exc:
            logger.error("token_issue_rejected", user_id=user.id, error=exc.message)
            raise ServerError("unable to start session") from exc
        except Exception as exc:
            logger.error(
                "token_issue_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("unable to start session") from exc
        access_token, access_expires_at = self.create_access_token(
            user, role=await self._role_claim(user.id)
        )
        logger.info("token_pair_issued", user_id=user.id, refresh_id=row.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=row.token,
            access_expires_at=access_expires_at,
            refresh_expires_at=row.expires_at,
        )

    async def validate_refresh(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        try:
            row = await asyncio.to_thread(self.store.get_refresh_token, token)
        except Exception as exc:
            logger.error(
                "refresh_token_lookup_failed",
                token_prefix=token[:8],
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if row is None or not row.is_active(self._now()):
            return None
        return row

    async def _report_reuse(self, token: str, row: Optional[RefreshToken]) -> None:
        logger.error(
            "refresh_token_replay",
            token_prefix=token[:8],
            user_id=row.user_id if row else None,
            replaced=bool(row and row.replaced_by),
        )
        if not self.revoke_family_on_reuse:
            return
        revoked = await asyncio.to_thread(
            self.store.revoke_refresh_chain, token, self._now()
        )
        logger.warning(
            "refresh_token_family_revoked",
            token_prefix=token[:8],
            user_id=row.user_id if row else None,
            revoked=revoked,
        )

    async def refresh(
        self,
        token: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[TokenPair]:
        if not token:
            return None
        now = self._now()
        try:
            row = await asyncio.to_thread(self.store.get_refresh_token, token)
            if row is None:
                logger.warning("refresh_token_unknown", token_prefix=token[:8])
                return None
            if row.is_revoked:
                if row.replaced_by:
                    await self._report_reuse(token, row)
                else:
                    logger.warning(
                        "refresh_token_revoked", token_prefix=token[:8], user_id=row.user_id
                    )
                return None
            if row.is_expired(now):
                logger.info(
                    "refresh_token_expired", token_prefix=token[:8], user_id=row.user_id
                )
                return None

            user = await asyncio.to_thread(self.store.get_user, row.user_id)
            if user is None or not user.is_active:
                logger.warning(
                    "refresh_token_inactive_user", token_prefix=token[:8], user_id=row.user_id
                )
                return None

            successor = await asyncio.to_thread(
                self.store.rotate_refresh_token,
                token,
                new_token=generate_token(REFRESH_TOKEN_BYTES),
                created_at=now,
                expires_at=now + REFRESH_TOKEN_TTL,
                device_info=device_info,
                ip_address=ip_address,
            )
            if successor is None:
                # Another caller rotated or revoked it between our read and write
                await self._report_reuse(token, row)
                return None

            access_token, access_expires_at = self.create_access_token(
                user, role=await self._role_claim(user.id)
            )
        except Exception as exc:
            logger.error(
                "refresh_token_rotation_failed",
                token_prefix=token[:8],
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

        logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            refresh_id=row.id,
            successor_id=successor.id,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=successor.token,
            access_expires_at=access_expires_at,
            refresh_expires_at=successor.expires_at,
        )

    async def revoke(self, token: str, replaced_by: Optional[str] = None) -> bool:
        if not token:
            return False
        try:
            revoked = await asyncio.to_thread(
                self.store.revoke_refresh_token, token, self._now(), replaced_by
            )
        except Exception as exc:
            logger.error(
                "refresh_token_revoke_failed",
                token_prefix=token[:8],
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if revoked:
            logger.info("refresh_token_revoked_explicitly", token_prefix=token[:8])
        return revoked

    async def revoke_all(self, user_id: int) -> int:
        try:
            count = await asyncio.to_thread(
                self.store.revoke_refresh_tokens_for_user, user_id, self._now()
            )
        except Exception as exc:
            logger.error(
                "refresh_token_revoke_all_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return 0
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=count)
        return count

    async def cleanup_expired(self) -> int:
        cutoff = self._now() - REFRESH_TOKEN_RETENTION
        return await asyncio.to_thread(self.store.delete_stale_refresh_tokens, cutoff)

    # -- discovery -----------------------------------------------------------

    @property
    def key_id(self) -> str:
        digest = hashlib.sha256(self._secret).digest()
        return base64.b64encode(digest).decode("ascii")[:8]

    def jwks(self) -> dict[str, Any]:
        # Symmetric key: advertise the algorithm and kid, never the material.
        return {
            "keys": [
                {"kty": "oct", "use": "sig", "alg": "HS256", "kid": self.key_id}
            ]
        }

    def openid_configuration(self, base_url: str) -> dict[str, Any]:
        base = base_url.rstrip("/")
        return {
            "issuer": self.issuer,
            "jwks_uri": f"{base}/.well-known/jwks.json",
            "authorization_endpoint": f"{base}/v1/auth/login/email",
            "token_endpoint": f"{base}/v1/auth/refresh",
            "userinfo_endpoint": f"{base}/v1/auth/me",
            "registration_endpoint": f"{base}/v1/auth/register/email",
            "revocation_endpoint": f"{base}/v1/auth/revoke",
            "response_types_supported": ["code", "token"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": ["HS256"],
            "scopes_supported": ["openid", "profile", "email"],
            "token_endpoint_auth_methods_supported": [
                "client_secret_basic",
                "client_secret_post",
            ],
            "claims_supported": [
                "sub",
                "iss",
                "aud",
                "exp",
                "iat",
                "email",
                "email_verified",
                "phone",
                "phone_verified",
                "role",
            ],
        }
