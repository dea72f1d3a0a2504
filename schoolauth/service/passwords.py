from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from schoolauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordService:
    """argon2id hashing for identity passwords."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: str, algo: str, password: str) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

