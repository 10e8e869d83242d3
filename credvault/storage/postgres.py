from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_REQUIRED_TABLES = (
    "app_user",
    "otp_credential",
    "email_verification_token",
    "password_reset_token",
    "refresh_token",
    "user_role_assignment",
)


class PostgresStore:
    """Postgres-backed credential store.

    Compare-and-set transitions are single ``UPDATE ... WHERE <still valid>``
    statements, so concurrent callers racing on the same row see exactly one
    winner. Each method runs in its own pooled connection and commits on exit.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure credential tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, phone_number, password_hash, is_email_verified,
                                          is_phone_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        email,
                        phone_number,
                        password_hash,
                        is_email_verified,
                        is_phone_verified,
                        created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "phone" in constraint:
                raise ConstraintViolation(
                    "phone number already exists", {"field": "phone_number"}
                ) from exc
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return User(**row)

    def _fetch_user(self, where: str, value) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {where} = %s", (value,)
            ).fetchone()
        return User(**row) if row else None

    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        return self._fetch_user("phone_number", phone_number)

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM app_user").fetchone()
        return int(row["total"]) if row else 0

    def _update_user(self, user_id: int, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return User(**row) if row else None

    def mark_email_verified(self, user_id: int) -> Optional[User]:
        return self._update_user(user_id, "is_email_verified = TRUE", ())

    def mark_phone_verified(self, user_id: int, login_at: datetime) -> Optional[User]:
        return self._update_user(
            user_id, "is_phone_verified = TRUE, last_login_at = %s", (login_at,)
        )

    def record_login(self, user_id: int, login_at: datetime) -> Optional[User]:
        return self._update_user(user_id, "last_login_at = %s", (login_at,))

    def set_password_hash(self, user_id: int, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, "password_hash = %s", (password_hash,))

    def set_external_id(self, user_id: int, external_id: str) -> Optional[User]:
        return self._update_user(user_id, "external_id = %s", (external_id,))

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, "is_active = %s", (is_active,))

    # -- one-time codes ------------------------------------------------------

    def count_otps_since(self, phone_number: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM otp_credential WHERE phone_number = %s AND created_at > %s",
                (phone_number, since),
            ).fetchone()
        return int(row["total"]) if row else 0

    def invalidate_otps(self, phone_number: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE otp_credential SET is_used = TRUE, used_at = %s WHERE phone_number = %s AND is_used = FALSE",
                (now, phone_number),
            )
            return cur.rowcount

    def create_otp(
        self,
        *,
        user_id: int,
        phone_number: str,
        code: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> OtpCredential:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO otp_credential (user_id, phone_number, code, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (user_id, phone_number, code, created_at, expires_at),
            ).fetchone()
        return OtpCredential(**row)

    def find_valid_otp(
        self, phone_number: str, code: str, now: datetime, max_attempts: int
    ) -> Optional[OtpCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_credential
                WHERE phone_number = %s AND code = %s AND is_used = FALSE
                  AND expires_at > %s AND attempt_count < %s
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (phone_number, code, now, max_attempts),
            ).fetchone()
        return OtpCredential(**row) if row else None

    def consume_otp(self, otp_id: int, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otp_credential SET is_used = TRUE, used_at = %s WHERE id = %s AND is_used = FALSE RETURNING id",
                (now, otp_id),
            ).fetchone()
        return row is not None

    def record_failed_otp_attempt(
        self, phone_number: str, now: datetime, max_attempts: int
    ) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE otp_credential
                SET attempt_count = attempt_count + 1,
                    is_used = (attempt_count + 1 >= %s),
                    used_at = CASE WHEN attempt_count + 1 >= %s THEN %s ELSE used_at END
                WHERE phone_number = %s AND is_used = FALSE
                RETURNING is_used
                """,
                (max_attempts, max_attempts, now, phone_number),
            ).fetchall()
        return sum(1 for row in rows if row["is_used"])

    def delete_expired_otps(self, now: datetime, max_attempts: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM otp_credential WHERE expires_at < %s OR attempt_count >= %s",
                (now, max_attempts),
            )
            return cur.rowcount

    # -- email verification --------------------------------------------------

    def invalidate_email_verification_tokens(self, user_id: int, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE email_verification_token SET is_used = TRUE, used_at = %s WHERE user_id = %s AND is_used = FALSE",
                (now, user_id),
            )
            return cur.rowcount

    def create_email_verification_token(
        self,
        *,
        user_id: int,
        token: str,
        email: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> EmailVerificationToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO email_verification_token (user_id, token, email, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, token, email, created_at, expires_at),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("token already exists", {"field": "token"}) from exc
        return EmailVerificationToken(**row)

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_verification_token WHERE token = %s", (token,)
            ).fetchone()
        return EmailVerificationToken(**row) if row else None

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_verification_token SET is_used = TRUE, used_at = %s
                WHERE token = %s AND is_used = FALSE AND expires_at > %s
                RETURNING *
                """,
                (now, token, now),
            ).fetchone()
        return EmailVerificationToken(**row) if row else None

    def has_recent_email_verification_token(self, user_id: int, since: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS found FROM email_verification_token
                WHERE user_id = %s AND is_used = FALSE AND created_at > %s
                LIMIT 1
                """,
                (user_id, since),
            ).fetchone()
        return row is not None

    def delete_stale_email_verification_tokens(
        self, now: datetime, created_before: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM email_verification_token WHERE expires_at < %s OR created_at < %s",
                (now, created_before),
            )
            return cur.rowcount

    # -- password reset ------------------------------------------------------

    def has_recent_password_reset_token(self, user_id: int, since: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS found FROM password_reset_token
                WHERE user_id = %s AND is_used = FALSE AND created_at > %s
                LIMIT 1
                """,
                (user_id, since),
            ).fetchone()
        return row is not None

    def invalidate_password_reset_tokens(self, user_id: int, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE password_reset_token SET is_used = TRUE, used_at = %s WHERE user_id = %s AND is_used = FALSE",
                (now, user_id),
            )
            return cur.rowcount

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO password_reset_token (user_id, token, created_at, expires_at,
                                                      ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, token, created_at, expires_at, ip_address, user_agent),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("token already exists", {"field": "token"}) from exc
        return PasswordResetToken(**row)

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s", (token,)
            ).fetchone()
        return PasswordResetToken(**row) if row else None

    def apply_password_reset(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[Tuple[int, int]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET is_used = TRUE, used_at = %s
                WHERE token = %s AND is_used = FALSE AND expires_at > %s
                RETURNING user_id
                """,
                (now, token, now),
            ).fetchone()
            if not row:
                return None
            user_id = row["user_id"]
            conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            conn.execute(
                "UPDATE password_reset_token SET is_used = TRUE, used_at = %s WHERE user_id = %s AND is_used = FALSE",
                (now, user_id),
            )
            cur = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND is_revoked = FALSE AND expires_at > %s
                """,
                (now, user_id, now),
            )
            return user_id, cur.rowcount

    def delete_stale_password_reset_tokens(
        self, now: datetime, created_before: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM password_reset_token
                WHERE (expires_at < %s OR is_used = TRUE) AND created_at <= %s
                """,
                (now, created_before),
            )
            return cur.rowcount

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (user_id, token, created_at, expires_at,
                                               device_info, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, token, created_at, expires_at, device_info, ip_address),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("token already exists", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc
        return RefreshToken(**row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return RefreshToken(**row) if row else None

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
        # The UPDATE takes the row lock; a concurrent rotation re-checks
        # is_revoked after this transaction commits and matches nothing.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, replaced_by = %s
                WHERE token = %s AND is_revoked = FALSE AND expires_at > %s
                RETURNING user_id
                """,
                (created_at, new_token, token, created_at),
            ).fetchone()
            if not row:
                return None
            successor = conn.execute(
                """
                INSERT INTO refresh_token (user_id, token, created_at, expires_at,
                                           device_info, ip_address)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (row["user_id"], new_token, created_at, expires_at, device_info, ip_address),
            ).fetchone()
        return RefreshToken(**successor)

    def revoke_refresh_token(
        self, token: str, now: datetime, replaced_by: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = %s, replaced_by = COALESCE(%s, replaced_by)
                WHERE token = %s AND is_revoked = FALSE AND expires_at > %s
                RETURNING id
                """,
                (now, replaced_by, token, now),
            ).fetchone()
        return row is not None

    def revoke_refresh_tokens_for_user(self, user_id: int, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND is_revoked = FALSE AND expires_at > %s
                """,
                (now, user_id, now),
            )
            return cur.rowcount

    def revoke_refresh_chain(self, token: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                WITH RECURSIVE chain(next_token) AS (
                    SELECT replaced_by FROM refresh_token WHERE token = %s
                    UNION
                    SELECT r.replaced_by FROM refresh_token r
                    JOIN chain c ON r.token = c.next_token
                )
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE token IN (SELECT next_token FROM chain WHERE next_token IS NOT NULL)
                  AND is_revoked = FALSE AND expires_at > %s
                """,
                (token, now, now),
            )
            return cur.rowcount

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [RefreshToken(**row) for row in rows]

    def delete_stale_refresh_tokens(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE expires_at < %s OR (is_revoked = TRUE AND revoked_at < %s)
                """,
                (cutoff, cutoff),
            )
            return cur.rowcount

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_role_assignment (user_id, role, assigned_at, assigned_by, notes)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, role, assigned_at, assigned_by, notes),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "user already has an active role", {"user_id": user_id}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc
        return UserRoleAssignment(**row)

    def list_role_assignments(
        self, user_id: int, *, active_only: bool = False
    ) -> List[UserRoleAssignment]:
        query = "SELECT * FROM user_role_assignment WHERE user_id = %s"
        if active_only:
            query += " AND revoked_at IS NULL"
        query += " ORDER BY assigned_at DESC, id DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [UserRoleAssignment(**row) for row in rows]

    def revoke_role_assignment(
        self,
        assignment_id: int,
        *,
        revoked_at: datetime,
        revoked_by: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_role_assignment SET revoked_at = %s, revoked_by = %s, notes = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (revoked_at, revoked_by, notes, assignment_id),
            ).fetchone()
        return row is not None

    def list_users_with_role(self, role: str) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT u.* FROM app_user u
                JOIN user_role_assignment a ON a.user_id = u.id
                WHERE a.role = %s AND a.revoked_at IS NULL
                ORDER BY u.id
                """,
                (role,),
            ).fetchall()
        return [User(**row) for row in rows]

    def count_active_roles(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role, COUNT(*) AS total FROM user_role_assignment
                WHERE revoked_at IS NULL
                GROUP BY role
                """
            ).fetchall()
        return {row["role"]: int(row["total"]) for row in rows}
