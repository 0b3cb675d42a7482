from __future__ import annotations

import threading
import time
import uuid
from typing import Callable, Dict, Optional, Tuple

from pairauth.logging import get_logger
from pairauth.storage.errors import ConstraintViolation
from pairauth.storage.models import LoginCredential, User


class MemoryCache:
    """In-process stand-in for Redis with per-key expiry.

    Used when Redis is disabled (TEST_MODE or ALLOW_REDIS_FALLBACK_DEV).
    Expired keys are dropped lazily on access. Records are lost on restart,
    so revocations do not survive a process restart in this mode.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[str, float]] = {}

    def verify_connection(self) -> None:
        return None

    def _live_entry(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live_entry(key) is not None:
                return False
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))
            return True

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            return int(round(entry[1] - self._clock()))

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


class MemoryStore:
    """In-memory users and login credentials."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data_lock = threading.Lock()
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, LoginCredential] = {}

    @staticmethod
    def _normalize_login(login: str) -> str:
        return login.strip().lower()

    def create_user(self, email: str, *, is_active: bool = True) -> User:
        normalized = self._normalize_login(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=normalized, is_active=is_active)
            self.users[user.id] = user
        self.logger.info("user_created", user_id=user.id)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if user is None:
                return False
            for login, credential in list(self.credentials.items()):
                if credential.user_id == user_id:
                    self.credentials.pop(login, None)
            return True

    def save_credential(
        self, user_id: str, login: str, password_hash: str, password_algo: str
    ) -> LoginCredential:
        normalized = self._normalize_login(login)
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            existing = self.credentials.get(normalized)
            if existing is not None and existing.user_id != user_id:
                raise ConstraintViolation("login already exists", {"field": "login"})
            credential = LoginCredential(
                user_id=user_id,
                login=normalized,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self.credentials[normalized] = credential
            return credential

    def get_credential(self, login: str) -> Optional[LoginCredential]:
        with self._data_lock:
            return self.credentials.get(self._normalize_login(login))
