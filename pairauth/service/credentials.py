from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from pairauth.logging import get_logger
from pairauth.storage.models import LoginCredential, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def create_user(self, email: str, *, is_active: bool = True) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_credential(
        self, user_id: str, login: str, password_hash: str, password_algo: str
    ) -> LoginCredential: ...

    def get_credential(self, login: str) -> Optional[LoginCredential]: ...


class PasswordCredentials:
    """Login identifier + password lookup over argon2id hashes.

    ``find_subject_by_credential`` always runs exactly one argon2 verification,
    against a placeholder hash when the login is unknown, so response time does
    not reveal whether an account exists.
    """

    def __init__(self, store: CredentialStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._placeholder_hash = self._pwd_hasher.hash("placeholder-password-never-matches")

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def register(self, email: str, password: str) -> User:
        """Create a user with a password credential keyed by its email."""
        user = self.store.create_user(email)
        pwd_hash, algo = self._hash_password(password)
        try:
            self.store.save_credential(user.id, user.email, pwd_hash, algo)
        except Exception:
            self.store.delete_user(user.id)
            raise
        return user

    def find_subject_by_credential(self, login: str, secret: str) -> Optional[str]:
        credential = self.store.get_credential(login)
        stored_hash = self._placeholder_hash
        if credential is not None:
            if credential.password_algo == PASSWORD_ALGO:
                stored_hash = credential.password_hash
            else:
                logger.warning("password_algo_mismatch", user_id=credential.user_id)
        try:
            matched = self._pwd_hasher.verify(stored_hash, secret)
        except (InvalidHash, VerificationError):
            matched = False
        if stored_hash is self._placeholder_hash or not matched:
            logger.info("credential_lookup_failed")
            return None
        return credential.user_id
