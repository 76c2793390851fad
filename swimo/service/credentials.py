from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from swimo.logging import get_logger
from swimo.service.errors import InvalidCredentialsError

_INVALID_CREDENTIALS = "invalid email or password"


class CredentialVerifier:
    """argon2id password hashing with a single, non-revealing failure mode."""

    def __init__(
        self, hasher: Optional[PasswordHasher] = None, *, logger=None
    ) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self.logger = logger or get_logger(__name__)
        # Used to spend comparable time when the account does not exist
        self._dummy_hash = self._hasher.hash("swimo-dummy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def compare(self, stored_hash: str, candidate: str) -> None:
        """Raise ``InvalidCredentialsError`` unless ``candidate`` matches ``stored_hash``."""
        try:
            self._hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            raise InvalidCredentialsError(_INVALID_CREDENTIALS) from None
        except (InvalidHash, VerificationError) as exc:
            self.logger.warning("password_hash_unusable", error_type=type(exc).__name__)
            raise InvalidCredentialsError(_INVALID_CREDENTIALS) from None

    def compare_dummy(self, candidate: str) -> None:
        """Run a full comparison against a throwaway hash and always fail."""
        try:
            self._hasher.verify(self._dummy_hash, candidate + "\x00")
        except VerificationError:
            pass
        raise InvalidCredentialsError(_INVALID_CREDENTIALS)
