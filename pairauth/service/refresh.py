from __future__ import annotations

from typing import Optional

from pairauth.logging import get_logger
from pairauth.service.errors import InvalidRefreshPair, PairMismatch, Revoked
from pairauth.service.pairs import PairIssuer, TokenPair
from pairauth.service.revocation import RevocationGuard
from pairauth.service.tokens import AccessClaims, RefreshClaims, TokenCodec, TokenError

logger = get_logger(__name__)


class PairingRetirement:
    """Obligation to revoke one pairing, discharged on every exit path.

    ``async with`` the retirement around the pair checks: the pairing is
    revoked when the block exits, whether it returned or raised. ``claimed``
    tells whether this attempt wrote the record or found it already there.
    """

    def __init__(self, guard: RevocationGuard, claims: AccessClaims | RefreshClaims) -> None:
        self.guard = guard
        self.claims = claims
        self.claimed: Optional[bool] = None

    async def __aenter__(self) -> "PairingRetirement":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.claimed = await self.guard.revoke(self.claims)
        return False


class RefreshProtocol:
    """Exchange a presented access/refresh pair for a new pair, once."""

    def __init__(self, codec: TokenCodec, guard: RevocationGuard, issuer: PairIssuer) -> None:
        self.codec = codec
        self.guard = guard
        self.issuer = issuer

    def _check_pair(
        self, primary: AccessClaims | RefreshClaims, secondary_token: str
    ) -> AccessClaims | RefreshClaims:
        try:
            secondary = self.codec.verify(
                secondary_token, verify_expiry=False, pairing_id=primary.pairing_id
            )
        except TokenError as exc:
            raise InvalidRefreshPair(
                "secondary token rejected", detail={"cause": type(exc).__name__}
            ) from exc
        if secondary.subject_id != primary.subject_id:
            raise PairMismatch("subject")
        if secondary.token_type == primary.token_type:
            raise PairMismatch("type")
        refresh_claims = primary if primary.token_type == "refresh" else secondary
        if self.codec.now() >= refresh_claims.expires_at:
            raise InvalidRefreshPair("refresh token expired", reason="refresh_token_expired")
        return secondary

    async def refresh(
        self, primary: AccessClaims | RefreshClaims, secondary_token: str
    ) -> TokenPair:
        """Retire ``primary``'s pairing and, if the pair checks out, issue a new one.

        ``primary`` comes from the Authorization header and has already passed
        authentication (signature, revocation, type policy). Its own expiry is
        not checked: an expired access token may be traded in as long as the
        refresh token of its pairing is still live. The pairing is revoked even
        when the checks fail, so a rejected pair can't be retried.
        """
        async with PairingRetirement(self.guard, primary) as retirement:
            self._check_pair(primary, secondary_token)
        if not retirement.claimed:
            # A concurrent attempt retired this pairing first
            raise Revoked("pairing retired by a concurrent refresh")
        pair = self.issuer.issue(primary.subject_id)
        logger.info(
            "token_pair_refreshed",
            subject_id=primary.subject_id,
            retired_pairing_id=primary.pairing_id,
            pairing_id=pair.pairing_id,
        )
        return pair
