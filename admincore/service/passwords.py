from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from admincore.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing with a constant-shape verify for unknown accounts."""

    def __init__(self, *, fast: bool = False) -> None:
        if fast:
            # Minimum cost parameters keep test suites quick
            self._hasher = PasswordHasher(
                type=Type.ID, time_cost=1, memory_cost=8, parallelism=1
            )
        else:
            self._hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash = self._hasher.hash("admincore-dummy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except InvalidHash:
            logger.warning("password_hash_invalid")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def dummy_verify(self, password: str) -> None:
        """Spend one verification so unknown emails cost the same as known ones."""
        self.verify(self._dummy_hash, password)
