from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

from pairauth.logging import get_logger
from pairauth.service.errors import StoreUnavailable
from pairauth.service.tokens import AccessClaims, RefreshClaims

logger = get_logger(__name__)

T = TypeVar("T")

REVOCATION_KEY_PREFIX = "revoked-pairing:"


class RevocationStore(Protocol):
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> Optional[int]: ...


def revocation_key(pairing_id: str) -> str:
    return f"{REVOCATION_KEY_PREFIX}{pairing_id}"


class RevocationGuard:
    """Deny-list of retired pairing ids plus the per-route token type policy.

    Store round trips are bounded by ``timeout_seconds``; a timeout or any
    backend failure raises ``StoreUnavailable`` so callers fail closed.
    """

    def __init__(
        self,
        store: RevocationStore,
        *,
        refresh_ttl_seconds: int,
        margin_seconds: int = 60,
        timeout_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.margin_seconds = margin_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    async def _bounded(self, op: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.error("revocation_store_timeout", op=op, timeout=self.timeout_seconds)
            raise StoreUnavailable("revocation store timed out", detail={"op": op}) from exc
        except StoreUnavailable:
            logger.error("revocation_store_failed", op=op)
            raise
        except (ConnectionError, OSError) as exc:
            logger.error("revocation_store_failed", op=op, error=str(exc))
            raise StoreUnavailable(str(exc), detail={"op": op}) from exc

    def record_ttl(self, claims: AccessClaims | RefreshClaims) -> int:
        """Seconds a revocation record must live to outlast the whole pairing.

        Both tokens of a pairing share ``issued_at``, so the refresh token's
        expiry is derivable from either claim set.
        """
        pairing_expires_at = max(
            claims.expires_at, claims.issued_at + self.refresh_ttl_seconds
        )
        remaining = pairing_expires_at - int(self._clock())
        return max(1, remaining + self.margin_seconds)

    async def is_revoked(self, claims: AccessClaims | RefreshClaims) -> bool:
        return await self._bounded("exists", self.store.exists(revocation_key(claims.pairing_id)))

    async def revoke(self, claims: AccessClaims | RefreshClaims) -> bool:
        """Retire the pairing of ``claims``.

        Returns True when this call created the record and False when the
        pairing was already revoked. Both outcomes leave the pairing unusable.
        """
        revoked_at = datetime.now(timezone.utc).isoformat()
        created = await self._bounded(
            "set_if_absent",
            self.store.set_if_absent(
                revocation_key(claims.pairing_id), revoked_at, self.record_ttl(claims)
            ),
        )
        logger.info(
            "pairing_revoked" if created else "pairing_already_revoked",
            pairing_id=claims.pairing_id,
            subject_id=claims.subject_id,
        )
        return created

    @staticmethod
    def is_type_allowed(
        claims: AccessClaims | RefreshClaims, allow_refresh: bool = False
    ) -> bool:
        if claims.token_type == "access":
            return True
        return allow_refresh
