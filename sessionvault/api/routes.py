from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from sessionvault.api.schemas import (
    Envelope,
    GoogleLoginRequest,
    IdentityResponse,
    LoginRequest,
    LogoutRequest,
    RegisterRequest,
    TokenPairResponse,
    TokenRefreshRequest,
)
from sessionvault.logging import get_correlation_id, get_logger
from sessionvault.service.errors import AuthenticationError
from sessionvault.service.runtime import Runtime
from sessionvault.storage.models import Identity, TokenPair, to_public_identity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data) -> Envelope:
    cid = get_correlation_id()
    if cid:
        return Envelope(status="ok", data=data, request_id=cid)
    return Envelope(status="ok", data=data)


def _token_envelope(pair: TokenPair) -> Envelope:
    return _ok(TokenPairResponse(**pair.as_dict()))


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_current_identity(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Identity:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    try:
        return await runtime.sessions.authenticate(token.strip())
    except AuthenticationError as exc:
        raise _http_error("unauthorized", exc.message, status_code=401) from None


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create a password account and open its first session.

    Raises:
        409: If an account with this email already exists
    """
    pair = await runtime.sessions.register(
        email=body.email,
        name=body.name,
        password=body.password,
        device=body.device,
    )
    return _token_envelope(pair)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Authenticate with email and password.

    Raises:
        400: If the account only signs in through Google
        401: If the password does not match
        404: If no account uses this email
    """
    pair = await runtime.sessions.login(
        email=body.email, password=body.password, device=body.device
    )
    return _token_envelope(pair)


@router.post("/auth/google", response_model=Envelope, tags=["auth"])
async def google_login(body: GoogleLoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Sign in with a Google ID token, creating or linking the account by email."""
    pair = await runtime.sessions.login_with_federated_token(body.id_token, device=body.device)
    return _token_envelope(pair)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    pair = await runtime.sessions.refresh(body.refresh_token)
    return _token_envelope(pair)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, runtime: Runtime = Depends(get_runtime)):
    return _ok(await runtime.sessions.logout(body.refresh_token))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(identity: Identity = Depends(get_current_identity)):
    public = to_public_identity(identity)
    return _ok(
        IdentityResponse(
            id=public.id,
            email=public.email,
            name=public.name,
            auth_provider=public.auth_provider.value,
            federated=public.federated,
            avatar_url=public.avatar_url,
            last_login_at=public.last_login_at,
            created_at=public.created_at,
        )
    )


@router.get("/health", tags=["meta"])
async def health():
    return {"status": "ok"}
