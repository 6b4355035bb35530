from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeep.logging import email_hash, get_logger
from gatekeep.storage.common import SecretStore
from gatekeep.storage.models import User

logger = get_logger(__name__)


class CredentialVerifier:
    """Checks an (email, password) pair against the stored argon2id hash.

    ``verify`` has no side effects: it never issues tokens, never sends mail
    and never touches the two-factor confirmation.
    """

    def __init__(self, store: SecretStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def check_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def verify(self, email: str, password: str) -> Optional[User]:
        user = self.store.get_user_by_email(email)
        if not user:
            logger.warning("credential_user_missing", email_hash=email_hash(email))
            return None
        # OAuth-only users have no local password and can never sign in with one
        if not user.password_hash:
            logger.warning("credential_password_missing", user_id=user.id)
            return None
        if not self.check_hash(user.password_hash, password):
            logger.warning("password_verification_failed", user_id=user.id)
            return None
        return user
