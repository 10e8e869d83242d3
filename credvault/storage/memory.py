from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from credvault.logging import get_logger
from credvault.storage.errors import ConstraintViolation
from credvault.storage.models import (
    EmailVerificationToken,
    OtpCredential,
    PasswordResetToken,
    RefreshToken,
    User,
    UserRoleAssignment,
)


class MemoryStore:
    """In-process backing store for tests and local development.

    Every read and every compare-and-set runs under one re-entrant lock, so
    check-then-write sequences inside a single method are atomic. Callers get
    copies of stored rows; mutating them has no effect on the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.otps: Dict[int, OtpCredential] = {}
        self.email_tokens: Dict[str, EmailVerificationToken] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.role_assignments: Dict[int, UserRoleAssignment] = {}
        self._ids: Dict[str, itertools.count] = {}
        self._data_lock = threading.RLock()

    def _next_id(self, table: str) -> int:
        counter = self._ids.setdefault(table, itertools.count(1))
        return next(counter)

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        *,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        password_hash: Optional[str] = None,
        is_email_verified: bool = False,
        is_phone_verified: bool = False,
        created_at: datetime,
    ) -> User:
        if not email and not phone_number:
            raise ConstraintViolation("user requires email or phone", {"field": "email"})
        with self._data_lock:
            if email and any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone_number and any(
                u.phone_number == phone_number for u in self.users.values()
            ):
                raise ConstraintViolation(
                    "phone number already exists", {"field": "phone_number"}
                )
            user = User(
                id=self._next_id("users"),
                email=email,
                phone_number=phone_number,
                password_hash=password_hash,
                is_email_verified=is_email_verified,
                is_phone_verified=is_phone_verified,
                created_at=created_at,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.phone_number == phone_number), None
            )
            return replace(user) if user else None

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def _update_user(self, user_id: int, **fields) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in fields.items():
                setattr(user, key, value)
            return replace(user)

    def mark_email_verified(self, user_id: int) -> Optional[User]:
        return self._update_user(user_id, is_email_verified=True)

    def mark_phone_verified(self, user_id: int, login_at: datetime) -> Optional[User]:
        return self._update_user(user_id, is_phone_verified=True, last_login_at=login_at)

    def record_login(self, user_id: int, login_at: datetime) -> Optional[User]:
        return self._update_user(user_id, last_login_at=login_at)

    def set_password_hash(self, user_id: int, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, password_hash=password_hash)

    def set_external_id(self, user_id: int, external_id: str) -> Optional[User]:
        return self._update_user(user_id, external_id=external_id)

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    # -- one-time codes ------------------------------------------------------

    def count_otps_since(self, phone_number: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for otp in self.otps.values()
                if otp.phone_number == phone_number and otp.created_at > since
            )

    def invalidate_otps(self, phone_number: str, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for otp in self.otps.values():
                if otp.phone_number == phone_number and not otp.is_used:
                    otp.is_used = True
                    otp.used_at = now
                    count += 1
            return count

    def create_otp(
        self,
        *,
        user_id: int,
        phone_number: str,
        code: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> OtpCredential:
        with self._data_lock:
            otp = OtpCredential(
                id=self._next_id("otps"),
                user_id=user_id,
                phone_number=phone_number,
                code=code,
                created_at=created_at,
                expires_at=expires_at,
            )
            self.otps[otp.id] = otp
            return replace(otp)

    def find_valid_otp(
        self, phone_number: str, code: str, now: datetime, max_attempts: int
    ) -> Optional[OtpCredential]:
        with self._data_lock:
            matches = [
                otp
                for otp in self.otps.values()
                if otp.phone_number == phone_number
                and otp.code == code
                and not otp.is_used
                and now < otp.expires_at
                and otp.attempt_count < max_attempts
            ]
            if not matches:
                return None
            latest = max(matches, key=lambda otp: (otp.created_at, otp.id))
            return replace(latest)

    def consume_otp(self, otp_id: int, now: datetime) -> bool:
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if not otp or otp.is_used:
                return False
            otp.is_used = True
            otp.used_at = now
            return True

    def record_failed_otp_attempt(
        self, phone_number: str, now: datetime, max_attempts: int
    ) -> int:
        """Bump attempts on every unused code for the phone; return how many were exhausted."""
        with self._data_lock:
            exhausted = 0
            for otp in self.otps.values():
                if otp.phone_number != phone_number or otp.is_used:
                    continue
                otp.attempt_count += 1
                if otp.attempt_count >= max_attempts:
                    otp.is_used = True
                    otp.used_at = now
                    exhausted += 1
            return exhausted

    def delete_expired_otps(self, now: datetime, max_attempts: int) -> int:
        with self._data_lock:
            stale = [
                otp_id
                for otp_id, otp in self.otps.items()
                if otp.expires_at < now or otp.attempt_count >= max_attempts
            ]
            for otp_id in stale:
                del self.otps[otp_id]
            return len(stale)

    # -- email verification --------------------------------------------------

    def invalidate_email_verification_tokens(self, user_id: int, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for token in self.email_tokens.values():
                if token.user_id == user_id and not token.is_used:
                    token.is_used = True
                    token.used_at = now
                    count += 1
            return count

    def create_email_verification_token(
        self,
        *,
        user_id: int,
        token: str,
        email: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> EmailVerificationToken:
        with self._data_lock:
            if token in self.email_tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            row = EmailVerificationToken(
                id=self._next_id("email_tokens"),
                user_id=user_id,
                token=token,
                email=email,
                created_at=created_at,
                expires_at=expires_at,
            )
            self.email_tokens[token] = row
            return replace(row)

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            row = self.email_tokens.get(token)
            return replace(row) if row else None

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            row = self.email_tokens.get(token)
            if not row or not row.is_valid(now):
                return None
            row.is_used = True
            row.used_at = now
            return replace(row)

    def has_recent_email_verification_token(self, user_id: int, since: datetime) -> bool:
        with self._data_lock:
            return any(
                t.user_id == user_id and not t.is_used and t.created_at > since
                for t in self.email_tokens.values()
            )

    def delete_stale_email_verification_tokens(
        self, now: datetime, created_before: datetime
    ) -> int:
        with self._data_lock:
            stale = [
                key
                for key, t in self.email_tokens.items()
                if t.expires_at < now or t.created_at < created_before
            ]
            for key in stale:
                del self.email_tokens[key]
            return len(stale)

    # -- password reset ------------------------------------------------------

    def has_recent_password_reset_token(self, user_id: int, since: datetime) -> bool:
        with self._data_lock:
            return any(
                t.user_id == user_id and not t.is_used and t.created_at > since
                for t in self.reset_tokens.values()
            )

    def invalidate_password_reset_tokens(self, user_id: int, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for token in self.reset_tokens.values():
                if token.user_id == user_id and not token.is_used:
                    token.is_used = True
                    token.used_at = now
                    count += 1
            return count

    def create_password_reset_token(
        self,
        *,
        user_id: int,
        token: str,
        created_at: datetime,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasswordResetToken:
        with self._data_lock:
            if token in self.reset_tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            row = PasswordResetToken(
                id=self._next_id("reset_tokens"),
                user_id=user_id,
                token=token,
                created_at=created_at,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.reset_tokens[token] = row
            return replace(row)

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            row = self.reset_tokens.get(token)
            return replace(row) if row else None

    def apply_password_reset(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[Tuple[int, int]]:
        """Consume the token, store the hash and end every session in one step.

        Returns ``(user_id, revoked_refresh_tokens)`` or None when the token is
        unknown, used, or expired.
        """
        with self._data_lock:
            row = self.reset_tokens.get(token)
            if not row or not row.is_valid(now):
                return None
            user = self.users.get(row.user_id)
            if not user:
                return None
            row.is_used = True
            row.used_at = now
            user.password_hash = password_hash
            self.invalidate_password_reset_tokens(row.user_id, now)
            revoked = self.revoke_refresh_tokens_for_user(row.user_id, now)
            return row.user_id, revoked

    def delete_stale_password_reset_tokens(
        self, now: datetime, created_before: datetime
    ) -> int:
        with self._data_lock:
            stale = [
                key
                for key, t in self.reset_tokens.items()
                if (t.expires_at < now or t.is_used) and t.created_at <= created_before
            ]
            for key in stale:
                del self.reset_tokens[key]
            return len(stale)

    # -- refresh tokens ------------------------------------------------------

    def create_refresh_token(
        self,
        *,
        user_id: int,
        token: str,
        created_at: datetime,
        expires_at: datetime,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if token in self.refresh_tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            row = RefreshToken(
                id=self._next_id("refresh_tokens"),
                user_id=user_id,
                token=token,
                created_at=created_at,
                expires_at=expires_at,
                device_info=device_info,
                ip_address=ip_address,
            )
            self.refresh_tokens[token] = row
            return replace(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            return replace(row) if row else None

    def rotate_refresh_token(
        self,
        token: str,
        *,
        new_token: str,
        created_at: datetime,
        expires_at: datetime,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[RefreshToken]:
        """Revoke ``token`` and persist its successor, or do nothing if it is no longer active."""
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            if not row or not row.is_active(created_at):
                return None
            successor = self.create_refresh_token(
                user_id=row.user_id,
                token=new_token,
                created_at=created_at,
                expires_at=expires_at,
                device_info=device_info,
                ip_address=ip_address,
            )
            row.is_revoked = True
            row.revoked_at = created_at
            row.replaced_by = new_token
            return successor

    def revoke_refresh_token(
        self, token: str, now: datetime, replaced_by: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            if not row or not row.is_active(now):
                return False
            row.is_revoked = True
            row.revoked_at = now
            if replaced_by:
                row.replaced_by = replaced_by
            return True

    def revoke_refresh_tokens_for_user(self, user_id: int, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for row in self.refresh_tokens.values():
                if row.user_id == user_id and row.is_active(now):
                    row.is_revoked = True
                    row.revoked_at = now
                    count += 1
            return count

    def revoke_refresh_chain(self, token: str, now: datetime) -> int:
        """Revoke every still-active descendant reachable through ``replaced_by``."""
        with self._data_lock:
            count = 0
            seen: set[str] = set()
            row = self.refresh_tokens.get(token)
            while row and row.replaced_by and row.replaced_by not in seen:
                seen.add(row.replaced_by)
                row = self.refresh_tokens.get(row.replaced_by)
                if row and row.is_active(now):
                    row.is_revoked = True
                    row.revoked_at = now
                    count += 1
            return count

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]:
        with self._data_lock:
            rows = [replace(r) for r in self.refresh_tokens.values() if r.user_id == user_id]
            return sorted(rows, key=lambda r: (r.created_at, r.id), reverse=True)

    def delete_stale_refresh_tokens(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                key
                for key, r in self.refresh_tokens.items()
                if r.expires_at < cutoff
                or (r.is_revoked and r.revoked_at is not None and r.revoked_at < cutoff)
            ]
            for key in stale:
                del self.refresh_tokens[key]
            return len(stale)

    # -- role ledger ---------------------------------------------------------

    def create_role_assignment(
        self,
        *,
        user_id: int,
        role: str,
        assigned_at: datetime,
        assigned_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> UserRoleAssignment:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(
                a.user_id == user_id and a.is_active
                for a in self.role_assignments.values()
            ):
                raise ConstraintViolation(
                    "user already has an active role", {"user_id": user_id}
                )
            row = UserRoleAssignment(
                id=self._next_id("role_assignments"),
                user_id=user_id,
                role=role,
                assigned_at=assigned_at,
                assigned_by=assigned_by,
                notes=notes,
            )
            self.role_assignments[row.id] = row
            return replace(row)

    def list_role_assignments(
        self, user_id: int, *, active_only: bool = False
    ) -> List[UserRoleAssignment]:
        with self._data_lock:
            rows = [
                replace(a)
                for a in self.role_assignments.values()
                if a.user_id == user_id and (a.is_active or not active_only)
            ]
            return sorted(rows, key=lambda a: (a.assigned_at, a.id), reverse=True)

    def revoke_role_assignment(
        self,
        assignment_id: int,
        *,
        revoked_at: datetime,
        revoked_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            row = self.role_assignments.get(assignment_id)
            if not row or not row.is_active:
                return False
            row.revoked_at = revoked_at
            row.revoked_by = revoked_by
            row.notes = notes
            return True

    def list_users_with_role(self, role: str) -> List[User]:
        with self._data_lock:
            user_ids = {
                a.user_id
                for a in self.role_assignments.values()
                if a.role == role and a.is_active
            }
            return [replace(self.users[uid]) for uid in sorted(user_ids) if uid in self.users]

    def count_active_roles(self) -> Dict[str, int]:
        with self._data_lock:
            counts: Dict[str, int] = {}
            for a in self.role_assignments.values():
                if a.is_active:
                    counts[a.role] = counts.get(a.role, 0) + 1
            return counts

    # -- health --------------------------------------------------------------

    def ping(self) -> bool:
        return True
