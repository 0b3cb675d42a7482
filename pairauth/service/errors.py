from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - service_unavailable (503)
    """

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` names the rejection kind for internal diagnostics. It is never
    rendered to the caller: every subclass produces the same 401 body.
    """

    status_code = 401
    error_code = "unauthorized"
    reason: str = "unauthorized"

    def __init__(
        self,
        message: str = "authentication rejected",
        *,
        reason: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        if reason is not None:
            self.reason = reason


class MissingCredential(AuthenticationError):
    reason = "missing_credential"


class InvalidOrExpiredToken(AuthenticationError):
    reason = "invalid_or_expired_token"


class Revoked(AuthenticationError):
    reason = "revoked"


class WrongTokenType(AuthenticationError):
    reason = "wrong_token_type"


class PrincipalNotFound(AuthenticationError):
    reason = "principal_not_found"


class InvalidRefreshPair(AuthenticationError):
    reason = "invalid_refresh_pair"


class PairMismatch(AuthenticationError):
    """The two presented tokens were not one access/refresh pair.

    ``field`` is ``"subject"`` or ``"type"``.
    """

    reason = "pair_mismatch"

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"pair mismatch: {field}",
            reason=f"pair_mismatch:{field}",
            detail={"field": field},
        )
        self.field = field


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class StoreUnavailable(ServiceError):
    """A backing store timed out or failed (503).

    Raised by revocation-store and lookup calls. Inside authentication the
    caller converts it into a rejection; elsewhere it surfaces as a 5xx.
    """

    status_code = 503
    error_code = "service_unavailable"

    def __init__(
        self, message: str = "backing store unavailable", *, store: str = "revocation", detail: Optional[dict] = None
    ) -> None:
        super().__init__(message, detail={"store": store, **(detail or {})})
        self.store = store


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "MissingCredential",
    "InvalidOrExpiredToken",
    "Revoked",
    "WrongTokenType",
    "PrincipalNotFound",
    "InvalidRefreshPair",
    "PairMismatch",
    "ForbiddenError",
    "ConflictError",
    "StoreUnavailable",
]
