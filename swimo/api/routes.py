from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from swimo.api.schemas import (
    ClaimsResponse,
    Envelope,
    GuestSignInRequest,
    GuestSignInResponse,
    SignInRequest,
    SignInResponse,
    SignUpRequest,
    SignUpResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from swimo.service.auth import NewProfile
from swimo.service.runtime import get_runtime
from swimo.service.tokens import Claims
from swimo.storage.models import ProfileHint, TokenPair


router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _token_pair(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        session_id=tokens.session_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in_ms=tokens.expires_in_ms,
        expires_at=tokens.expires_at,
    )


async def get_claims(authorization: Optional[str] = Header(None)) -> Claims:
    """Verify the bearer access token; raises 401 through the service error handler."""
    return get_runtime().auth.authenticate(authorization)


@router.post("/sign-up", response_model=Envelope, status_code=201)
async def sign_up(body: SignUpRequest):
    """Create an account and its profile in one transaction.

    Raises:
        409: If the email is already registered
    """
    runtime = get_runtime()
    account = await runtime.auth.signup(
        body.email,
        body.password,
        body.confirm_password,
        NewProfile(
            name=body.name,
            weight_kg=body.weight_kg,
            height_cm=body.height_cm,
            age_years=body.age_years,
        ),
        timeout=runtime.settings.store_timeout_seconds,
    )
    return Envelope(
        status="ok",
        data=SignUpResponse(
            account_id=account.id, email=account.email, created_at=account.created_at
        ),
    )


@router.post("/sign-in", response_model=Envelope)
async def sign_in(
    body: SignInRequest,
    user_agent: Optional[str] = Header(None),
):
    """Exchange email and password for a token pair.

    Prior sessions for the same account and User-Agent are revoked.

    Raises:
        401: If the email or password is wrong
        403: If the account is locked
    """
    runtime = get_runtime()
    result = await runtime.auth.signin(
        body.email,
        body.password,
        user_agent or "",
        timeout=runtime.settings.store_timeout_seconds,
    )
    profile = result.profile
    return Envelope(
        status="ok",
        data=SignInResponse(
            account_id=result.account.id,
            user_id=profile.id,
            email=result.account.email,
            name=profile.name,
            weight_kg=profile.weight_kg,
            height_cm=profile.height_cm,
            age_years=profile.age_years,
            tokens=_token_pair(result.tokens),
        ),
    )


@router.post("/sign-in-guest", response_model=Envelope)
async def sign_in_guest(
    body: Optional[GuestSignInRequest] = None,
    user_agent: Optional[str] = Header(None),
):
    """Open an anonymous session.

    Raises:
        403: If guest sign-in is disabled
        429: If this User-Agent exceeded the per-minute guest ceiling
    """
    runtime = get_runtime()
    body = body or GuestSignInRequest()
    result = await runtime.auth.signin_guest(
        user_agent or "",
        ProfileHint(
            weight_kg=body.weight_kg, height_cm=body.height_cm, age_years=body.age_years
        ),
        timeout=runtime.settings.store_timeout_seconds,
    )
    return Envelope(
        status="ok",
        data=GuestSignInResponse(
            weight_kg=result.hint.weight_kg,
            height_cm=result.hint.height_cm,
            age_years=result.hint.age_years,
            tokens=_token_pair(result.tokens),
        ),
    )


@router.post("/sign-out", response_model=Envelope)
async def sign_out(claims: Claims = Depends(get_claims)):
    runtime = get_runtime()
    await runtime.auth.signout(
        claims.session_id, timeout=runtime.settings.store_timeout_seconds
    )
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(body: TokenRefreshRequest):
    """Rotate a refresh credential; the presented one is consumed.

    Raises:
        401: If the refresh credential is unknown, expired or already used
    """
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(
        body.refresh_token, timeout=runtime.settings.store_timeout_seconds
    )
    return Envelope(status="ok", data=_token_pair(tokens))


@router.get("/me", response_model=Envelope)
async def me(claims: Claims = Depends(get_claims)):
    return Envelope(
        status="ok",
        data=ClaimsResponse(
            session_id=claims.session_id,
            kind=claims.kind.value,
            account_id=claims.aid,
            user_id=claims.uid,
            issued_at=claims.iat,
            expires_at=claims.exp,
        ),
    )
