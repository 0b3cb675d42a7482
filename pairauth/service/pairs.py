from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from pairauth.service.tokens import (
    AccessClaims,
    RefreshClaims,
    TokenCodec,
    new_pairing_id,
)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    pairing_id: str
    access_expires_at: int
    refresh_expires_at: int


class PairIssuer:
    """Mint access/refresh pairs bound by one pairing id.

    Issuing has no side effects: nothing is stored, the pair lives only with
    the client until one of its tokens is presented again.
    """

    def __init__(
        self,
        codec: TokenCodec,
        *,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 2 * 24 * 60 * 60,
        pairing_id_factory: Callable[[], str] | None = None,
    ) -> None:
        if access_ttl_seconds <= 0 or refresh_ttl_seconds <= 0:
            raise ValueError("token lifetimes must be positive")
        self.codec = codec
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._pairing_id_factory = pairing_id_factory or (lambda: new_pairing_id(codec.clock))

    def issue(self, subject_id: str) -> TokenPair:
        issued_at = self.codec.now()
        pairing_id = self._pairing_id_factory()
        access = AccessClaims(
            subject_id=subject_id,
            pairing_id=pairing_id,
            issued_at=issued_at,
            expires_at=issued_at + self.access_ttl_seconds,
        )
        refresh = RefreshClaims(
            subject_id=subject_id,
            pairing_id=pairing_id,
            issued_at=issued_at,
            expires_at=issued_at + self.refresh_ttl_seconds,
        )
        return TokenPair(
            access_token=self.codec.sign(access),
            refresh_token=self.codec.sign(refresh),
            pairing_id=pairing_id,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )
