from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True


@dataclass
class LoginCredential:
    """Password record bound to a user; one per login identifier."""

    user_id: str
    login: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=_utcnow)
