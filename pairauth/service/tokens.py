"""Signed, self-contained bearer tokens.

Tokens use the compact JWS layout: ``base64url(header).base64url(claims).
base64url(signature)`` with an HMAC-SHA2 signature. Claims are validated into
``AccessClaims`` or ``RefreshClaims`` before they leave this module, so callers
never see an unchecked payload.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from pairauth.config import SigningAlgorithm
from pairauth.logging import get_logger

logger = get_logger(__name__)

_DIGESTS = {
    SigningAlgorithm.HS256: hashlib.sha256,
    SigningAlgorithm.HS384: hashlib.sha384,
    SigningAlgorithm.HS512: hashlib.sha512,
}


class TokenError(Exception):
    """A presented token could not be accepted."""


class MalformedToken(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class ExpiredToken(TokenError):
    pass


class PairingMismatch(TokenError):
    pass


class _ClaimsBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    subject_id: str = Field(alias="sub", min_length=1, max_length=256)
    pairing_id: str = Field(alias="jti", min_length=1, max_length=128)
    issued_at: int = Field(alias="iat", ge=0)
    expires_at: int = Field(alias="exp", ge=0)

    @model_validator(mode="after")
    def _expiry_after_issue(self):
        if self.expires_at <= self.issued_at:
            raise ValueError("exp must be later than iat")
        return self

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class AccessClaims(_ClaimsBase):
    token_type: Literal["access"] = "access"


class RefreshClaims(_ClaimsBase):
    token_type: Literal["refresh"] = "refresh"


TokenClaims = Annotated[Union[AccessClaims, RefreshClaims], Field(discriminator="token_type")]

_claims_adapter: TypeAdapter[TokenClaims] = TypeAdapter(TokenClaims)


@dataclass(frozen=True)
class SigningKey:
    """Secret and algorithm used to sign and verify tokens."""

    secret: str
    algorithm: SigningAlgorithm = SigningAlgorithm.HS256

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("signing secret must not be empty")
        object.__setattr__(self, "algorithm", SigningAlgorithm(self.algorithm))

    def __repr__(self) -> str:
        return f"SigningKey(algorithm={self.algorithm.value!r}, secret=***)"

    def mac(self, signing_input: bytes) -> bytes:
        return hmac.new(
            self.secret.encode(), signing_input, _DIGESTS[self.algorithm]
        ).digest()


def new_pairing_id(clock: Callable[[], float] = time.time) -> str:
    """Time-ordered random identifier in the UUIDv7 layout.

    48 bits of millisecond timestamp followed by 74 random bits, so ids sort
    by issuance time and never repeat across issuances.
    """
    unix_ms = int(clock() * 1000) & ((1 << 48) - 1)
    rand_a = secrets.randbits(12)
    rand_b = secrets.randbits(62)
    value = (unix_ms << 80) | (0x7 << 76) | (rand_a << 64) | (0b10 << 62) | rand_b
    return str(uuid.UUID(int=value))


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Create and verify signed tokens for one signing key."""

    def __init__(
        self, key: SigningKey, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.key = key
        self.clock = clock

    def now(self) -> int:
        return int(self.clock())

    def sign(self, claims: AccessClaims | RefreshClaims) -> str:
        header = {"alg": self.key.algorithm.value, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_wire(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self.key.mac(signing_input.encode())
        return f"{signing_input}.{_encode_segment(signature)}"

    def verify(
        self,
        token: str,
        *,
        verify_expiry: bool = True,
        pairing_id: Optional[str] = None,
    ) -> AccessClaims | RefreshClaims:
        """Return the validated claims of ``token``.

        Args:
            token: compact serialized token
            verify_expiry: when False an expired token is still accepted;
                only the refresh protocol reads expired tokens
            pairing_id: when given, the token must belong to this pairing

        Raises:
            MalformedToken, InvalidSignature, ExpiredToken, PairingMismatch
        """
        if not isinstance(token, str):
            raise MalformedToken("token must be a string")
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise MalformedToken("undecodable header") from exc
        if not isinstance(header, dict):
            raise MalformedToken("header must be an object")
        # Reject algorithm substitution before touching the signature
        if header.get("alg") != self.key.algorithm.value:
            logger.warning("token_algorithm_rejected", alg=str(header.get("alg"))[:16])
            raise InvalidSignature("unexpected signing algorithm")

        expected = _encode_segment(self.key.mac(f"{header_b64}.{payload_b64}".encode()))
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            raise InvalidSignature("signature mismatch")

        try:
            raw = json.loads(_decode_segment(payload_b64))
            claims = _claims_adapter.validate_python(raw)
        except (ValueError, TypeError) as exc:
            # pydantic's ValidationError is a ValueError subclass
            raise MalformedToken(_describe(exc)) from exc

        if verify_expiry and self.now() >= claims.expires_at:
            raise ExpiredToken("token expired")
        if pairing_id is not None and not hmac.compare_digest(
            claims.pairing_id.encode(), pairing_id.encode()
        ):
            raise PairingMismatch("token belongs to another pairing")
        return claims


def _describe(exc: Exception) -> str:
    if isinstance(exc, PydanticValidationError):
        return f"invalid claims: {exc.error_count()} error(s)"
    return "undecodable claims"
