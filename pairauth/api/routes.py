from __future__ import annotations

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import PlainTextResponse

from pairauth.api.schemas import (
    Envelope,
    LoginRequest,
    RefreshRequest,
    SignupRequest,
    TokenPairResponse,
    UserResponse,
)
from pairauth.config import get_settings
from pairauth.service.auth import AuthContext
from pairauth.service.errors import ForbiddenError
from pairauth.service.pairs import TokenPair
from pairauth.service.runtime import get_runtime

router = APIRouter()


def _pair_envelope(pair: TokenPair) -> Envelope:
    data = TokenPairResponse(access_token=pair.access_token, refresh_token=pair.refresh_token)
    return Envelope(status="ok", data=data.model_dump(by_alias=True))


async def _secondary_token(request: Request) -> str:
    """Body token of a refresh request, or "" when the body is unusable.

    The body is parsed here rather than by FastAPI so that a missing, empty
    or oversized token still reaches the refresh protocol and retires the
    presented pairing instead of ending in a 422.
    """
    try:
        payload = json.loads(await request.body() or b"null")
        return RefreshRequest.model_validate(payload).token
    except ValueError:
        # pydantic's ValidationError and UnicodeDecodeError are ValueErrors
        return ""


async def get_user(request: Request, authorization: Optional[str] = Header(None)) -> AuthContext:
    """Principal for ordinary protected routes: access tokens only."""
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    request.state.auth = ctx
    return ctx


async def get_token_holder(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    """Principal for routes that manage the token pair itself.

    Either half of the pair is accepted.
    """
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, allow_refresh=True)
    request.state.auth = ctx
    return ctx


async def get_refreshing_holder(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    # An expired access token may still be traded in; the refresh protocol
    # requires the refresh-tagged half of the pair to be live
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, allow_refresh=True, allow_expired=True)
    request.state.auth = ctx
    return ctx


@router.get("/ping", response_class=PlainTextResponse, tags=["health"])
async def ping() -> str:
    return "pong"


@router.post("/access-tokens", response_model=Envelope, tags=["auth"])
async def create_access_tokens(body: LoginRequest):
    """Exchange email and password for a new access/refresh token pair.

    Raises:
        401: If the credentials do not match an active account
    """
    runtime = get_runtime()
    pair = await runtime.auth.login(body.email, body.password)
    return _pair_envelope(pair)


@router.put(
    "/access-tokens",
    response_model=Envelope,
    tags=["auth"],
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {"application/json": {"schema": RefreshRequest.model_json_schema()}},
        }
    },
)
async def refresh_access_tokens(
    request: Request, principal: AuthContext = Depends(get_refreshing_holder)
):
    """Trade both halves of a pair for a new pair.

    One token rides in the Authorization header and the other in the body;
    the order does not matter. The presented pairing is revoked whether or
    not the refresh succeeds.

    Raises:
        401: If either token is invalid, revoked, or not from the same pair
        503: If the revocation store is unavailable
    """
    runtime = get_runtime()
    pair = await runtime.auth.refresh(principal, await _secondary_token(request))
    return _pair_envelope(pair)


@router.delete("/access-tokens", status_code=204, tags=["auth"])
async def delete_access_tokens(principal: AuthContext = Depends(get_token_holder)):
    runtime = get_runtime()
    await runtime.auth.logout(principal)
    return Response(status_code=204)


@router.get("/protected-resource", response_model=Envelope, tags=["users"])
async def protected_resource(principal: AuthContext = Depends(get_user)):
    user = principal.user
    return Envelope(
        status="ok",
        data=UserResponse(id=user.id, email=user.email, created_at=user.created_at),
    )


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(body: SignupRequest):
    """Register a new account with an email and password credential.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    settings = get_settings()
    if not settings.allow_signup:
        raise ForbiddenError("signup disabled")
    runtime = get_runtime()
    # argon2 hashing is CPU bound
    user = await asyncio.to_thread(runtime.auth.signup, body.email, body.password)
    return Envelope(
        status="ok",
        data=UserResponse(id=user.id, email=user.email, created_at=user.created_at),
    )
