from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from authcore.api.schemas import (
    CodeRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    OAuthCallbackResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    SessionInfo,
    SessionListResponse,
    SetUsernameRequest,
    TokenPairResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    VerifyResponse,
)
from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError
from authcore.service.passwords import LoginResultType
from authcore.service.runtime import get_runtime
from authcore.service.tokens import AccessClaims, TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("missing bearer token")
    return token.strip()


async def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    return _bearer_token(authorization)


async def get_principal(token: str = Depends(bearer_token)) -> AccessClaims:
    return get_runtime().issuer.verify_access(token)


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    user_agent = request.headers.get("user-agent")
    return {
        "user_agent": user_agent[:512] if user_agent else None,
        "ip_addr": request.client.host if request.client else None,
    }


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a password account.

    Raises:
        409: email or username already registered
        502: the profile service refused the account; nothing is kept
    """
    user = await get_runtime().passwords.register(body.email, body.password, body.username)
    return Envelope(status="ok", data=RegisterResponse(user_id=user.id))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Returns a token pair, or a temp token when two-factor is enabled.
    """
    result = await get_runtime().passwords.login(
        body.email, body.password, **_client_meta(request)
    )
    if result.type == LoginResultType.TEMP:
        data = LoginResponse(type="TEMP", temp_token=result.temp_token)
    else:
        data = LoginResponse(
            type="SESSION",
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.expires_in,
        )
    return Envelope(status="ok", data=data)


@router.post("/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_two_factor(
    body: CodeRequest, request: Request, temp_token: str = Depends(bearer_token)
):
    pair = get_runtime().totp.verify_step_up(temp_token, body.code, **_client_meta(request))
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_two_factor(principal: AccessClaims = Depends(get_principal)):
    provisioning = get_runtime().totp.setup(principal.sub, principal.email)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            otpauth_url=provisioning.otpauth_url,
            qr_payload=provisioning.qr_payload,
            secret=provisioning.secret_base32,
        ),
    )


@router.post("/2fa/confirm", response_model=Envelope, tags=["2fa"])
async def confirm_two_factor(
    body: CodeRequest, principal: AccessClaims = Depends(get_principal)
):
    await get_runtime().totp.confirm(principal.sub, body.code)
    return Envelope(status="ok", data=TwoFactorStatusResponse(enabled=True))


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(principal: AccessClaims = Depends(get_principal)):
    await get_runtime().totp.disable(principal.sub)
    return Envelope(status="ok", data=TwoFactorStatusResponse(enabled=False))


@router.post("/logout", status_code=204, tags=["auth"])
async def logout(token: str = Depends(bearer_token)):
    """Sign the user out everywhere by revoking all of their refresh tokens."""
    await get_runtime().passwords.logout(token)
    return Response(status_code=204)


@router.post("/token/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, request: Request):
    pair = get_runtime().rotator.rotate(body.refresh_token, **_client_meta(request))
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/revoke", status_code=204, tags=["auth"])
async def revoke_refresh_token(body: RefreshRequest):
    """Revoke a single refresh token (one device). Unknown tokens are ignored."""
    get_runtime().rotator.revoke(body.refresh_token)
    return Response(status_code=204)


@router.patch("/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AccessClaims = Depends(get_principal)
):
    """Change the password; every refresh session of the user is revoked."""
    await get_runtime().passwords.update_password(
        principal.sub, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=PasswordChangeResponse())


@router.get("/verify", response_model=Envelope, tags=["auth"])
async def verify_access_token(principal: AccessClaims = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=VerifyResponse(
            user_id=principal.sub,
            email=principal.email,
            username=principal.username,
            expires_at=datetime.fromtimestamp(principal.exp, tz=timezone.utc),
        ),
    )


@router.get("/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AccessClaims = Depends(get_principal)):
    sessions = get_runtime().rotator.list_sessions(principal.sub)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            sessions=[
                SessionInfo(
                    created_at=s.created_at,
                    expires_at=s.expires_at,
                    user_agent=s.user_agent,
                    ip_addr=s.ip_addr,
                )
                for s in sessions
            ]
        ),
    )


@router.get("/oauth/{provider}/start", tags=["oauth"])
async def oauth_start(provider: str = Path(..., max_length=32)):
    """Redirect the browser to the provider's consent page."""
    start = await get_runtime().federation.start(provider)
    return RedirectResponse(start.authorization_url, status_code=307)


@router.get("/oauth/{provider}/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=256),
):
    result = await get_runtime().federation.complete(
        provider, code, state, **_client_meta(request)
    )
    if result.tokens is not None:
        data = OAuthCallbackResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.expires_in,
        )
    else:
        data = OAuthCallbackResponse(temp_token=result.temp_token, needs_username=True)
    return Envelope(status="ok", data=data)


@router.post("/oauth/set-username", response_model=Envelope, tags=["oauth"])
async def oauth_set_username(body: SetUsernameRequest, request: Request):
    pair = await get_runtime().federation.set_username(
        body.temp_token, body.username, **_client_meta(request)
    )
    return Envelope(status="ok", data=_pair_response(pair))
