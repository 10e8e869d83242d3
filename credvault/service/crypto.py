from __future__ import annotations

import base64
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from credvault.logging import get_logger

logger = get_logger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999


class CredentialHasher:
    """Argon2id password hashing.

    ``verify`` never raises: a mismatch, a malformed stored hash, or a missing
    hash all come back as ``False``.
    """

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unreadable", error_type=type(exc).__name__)
            return False

    def verify_absent(self, plaintext: str) -> bool:
        """Run a full verify for an account with no hash; always ``False``."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.verify(plaintext, self._dummy_hash)
        return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True


def encode_urlsafe(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_token(num_bytes: int = 32) -> str:
    """Random bytes from the OS CSPRNG as unpadded URL-safe base64."""
    if num_bytes <= 0:
        raise ValueError("num_bytes must be positive")
    return encode_urlsafe(secrets.token_bytes(num_bytes))


def generate_otp_code() -> str:
    """Six-digit code drawn uniformly from 100000-999999."""
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))
