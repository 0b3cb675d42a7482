from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, TypeVar

from pairauth.logging import get_logger
from pairauth.service.credentials import PasswordCredentials
from pairauth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidOrExpiredToken,
    MissingCredential,
    PrincipalNotFound,
    Revoked,
    StoreUnavailable,
    WrongTokenType,
)
from pairauth.service.pairs import PairIssuer, TokenPair
from pairauth.service.refresh import RefreshProtocol
from pairauth.service.revocation import RevocationGuard
from pairauth.service.tokens import AccessClaims, RefreshClaims, TokenCodec, TokenError
from pairauth.storage.errors import ConstraintViolation
from pairauth.storage.models import User

logger = get_logger(__name__)

T = TypeVar("T")


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    claims: AccessClaims | RefreshClaims
    user: User

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def pairing_id(self) -> str:
        return self.claims.pairing_id


class AuthService:
    """Login, request authentication, refresh and logout over token pairs."""

    def __init__(
        self,
        *,
        codec: TokenCodec,
        issuer: PairIssuer,
        guard: RevocationGuard,
        credentials: PasswordCredentials,
        users: UserDirectory,
        lookup_timeout_seconds: float = 2.0,
    ) -> None:
        self.codec = codec
        self.issuer = issuer
        self.guard = guard
        self.credentials = credentials
        self.users = users
        self.refresh_protocol = RefreshProtocol(codec, guard, issuer)
        self.lookup_timeout_seconds = lookup_timeout_seconds
        self.logger = logger

    async def _lookup(self, op: str, fn: Callable[..., T], *args) -> T:
        # Lookups may hash passwords or hit a database; keep them off the loop
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), timeout=self.lookup_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            self.logger.error("lookup_timeout", op=op, timeout=self.lookup_timeout_seconds)
            raise StoreUnavailable("lookup timed out", store="credentials", detail={"op": op}) from exc

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        token = token.strip()
        if not token or " " in token:
            return None
        return token

    async def login(self, email: str, password: str) -> TokenPair:
        try:
            subject_id = await self._lookup(
                "find_subject_by_credential",
                self.credentials.find_subject_by_credential,
                email,
                password,
            )
        except StoreUnavailable as exc:
            raise AuthenticationError(reason="credential_lookup_unavailable") from exc
        if subject_id is None:
            raise AuthenticationError("invalid credentials", reason="invalid_credentials")
        pair = self.issuer.issue(subject_id)
        self.logger.info("token_pair_issued", subject_id=subject_id, pairing_id=pair.pairing_id)
        return pair

    def signup(self, email: str, password: str) -> User:
        try:
            user = self.credentials.register(email, password)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        return user

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        allow_refresh: bool = False,
        allow_expired: bool = False,
    ) -> AuthContext:
        """Verify the bearer token of a request and resolve its principal.

        Raises an ``AuthenticationError`` subclass naming the first failed
        check. ``allow_refresh`` opts a route into accepting refresh tokens;
        ``allow_expired`` is only set by the refresh route, whose protocol
        checks the pairing's refresh token lifetime itself.
        """
        token = self._extract_bearer(authorization)
        if token is None:
            raise MissingCredential("missing or malformed Authorization header")

        try:
            claims = self.codec.verify(token, verify_expiry=not allow_expired)
        except TokenError as exc:
            raise InvalidOrExpiredToken(
                "token rejected", detail={"cause": type(exc).__name__}
            ) from exc

        try:
            revoked = await self.guard.is_revoked(claims)
        except StoreUnavailable as exc:
            # Fail closed: an unreachable deny-list never lets a token through
            raise AuthenticationError(
                "revocation check unavailable", reason="store_unavailable"
            ) from exc
        if revoked:
            raise Revoked("pairing revoked", detail={"pairing_id": claims.pairing_id})

        if not self.guard.is_type_allowed(claims, allow_refresh=allow_refresh):
            raise WrongTokenType(
                "token type not allowed here", detail={"token_type": claims.token_type}
            )

        try:
            user = await self._lookup("get_user", self.users.get_user, claims.subject_id)
        except StoreUnavailable as exc:
            raise AuthenticationError(
                "principal lookup unavailable", reason="store_unavailable"
            ) from exc
        if user is None:
            # Valid signature for an unknown subject: deleted account or a
            # token minted elsewhere with our key
            self.logger.error(
                "principal_missing_for_valid_token",
                subject_id=claims.subject_id,
                pairing_id=claims.pairing_id,
            )
            raise PrincipalNotFound("principal not found")
        if not user.is_active:
            raise PrincipalNotFound("principal inactive", reason="principal_inactive")
        return AuthContext(claims=claims, user=user)

    async def refresh(self, ctx: AuthContext, secondary_token: str) -> TokenPair:
        return await self.refresh_protocol.refresh(ctx.claims, secondary_token)

    async def logout(self, ctx: AuthContext) -> None:
        await self.guard.revoke(ctx.claims)
        self.logger.info("logout", user_id=ctx.user_id, pairing_id=ctx.pairing_id)
