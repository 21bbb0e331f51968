from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from kleroteria.api.schemas import (
    AuthResponse,
    Envelope,
    SignInRequest,
    SignUpRequest,
    TokenResponse,
    UserResponse,
    VerifyCodeRequest,
)
from kleroteria.logging import get_logger
from kleroteria.service.auth import AuthResult
from kleroteria.service.runtime import Runtime, get_runtime
from kleroteria.storage.models import PublicToken, PublicUser

logger = get_logger(__name__)

router = APIRouter(prefix="/api/users")


def _runtime() -> Runtime:
    return get_runtime()


def session_token_from(request: Request, runtime: Runtime = Depends(_runtime)) -> Optional[str]:
    return request.cookies.get(runtime.settings.session_cookie_name)


def _client_meta(request: Request) -> dict:
    return {
        "ip_addr": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _apply_session_cookie(response: Response, runtime: Runtime, result: AuthResult) -> None:
    response.set_cookie(
        runtime.settings.session_cookie_name,
        result.session_token,
        max_age=result.ttl_seconds,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="strict",
        path="/",
    )


def _user_payload(user: PublicUser) -> UserResponse:
    return UserResponse(**user.to_dict())


def _token_payload(token: PublicToken) -> TokenResponse:
    return TokenResponse(**token.to_dict())


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_payload(result.user),
        session_expires_at=result.expires_at,
        ttl_seconds=result.ttl_seconds,
    )


@router.post("/sign-up", response_model=Envelope, status_code=201, tags=["auth"])
async def sign_up(
    body: SignUpRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(_runtime),
):
    """Create an account and start a long-lived session."""
    result = await runtime.auth.sign_up(
        body.first_name,
        body.last_name,
        body.email,
        body.phone,
        body.password,
        **_client_meta(request),
    )
    auth = result.unwrap()
    _apply_session_cookie(response, runtime, auth)
    return Envelope(status="ok", data=_auth_payload(auth))


@router.post("/sign-in", response_model=Envelope, tags=["auth"])
async def sign_in(
    body: SignInRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(_runtime),
):
    """Authenticate with email and password.

    ``rememberMe`` selects the long session lifetime.
    """
    result = await runtime.auth.sign_in(
        body.email, body.password, body.remember_me, **_client_meta(request)
    )
    auth = result.unwrap()
    _apply_session_cookie(response, runtime, auth)
    return Envelope(status="ok", data=_auth_payload(auth))


@router.post("/sign-out", response_model=Envelope, tags=["auth"])
async def sign_out(
    response: Response,
    session_token: Optional[str] = Depends(session_token_from),
    runtime: Runtime = Depends(_runtime),
):
    await runtime.auth.sign_out(session_token)
    response.delete_cookie(
        runtime.settings.session_cookie_name,
        path="/",
        secure=runtime.settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )
    return Envelope(status="ok", data={"message": "signed out"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(
    session_token: Optional[str] = Depends(session_token_from),
    runtime: Runtime = Depends(_runtime),
):
    user = (await runtime.auth.get_current_user(session_token)).unwrap()
    return Envelope(status="ok", data=_user_payload(user))


@router.post("/send-email-verification", response_model=Envelope, tags=["verification"])
async def send_email_verification(
    session_token: Optional[str] = Depends(session_token_from),
    runtime: Runtime = Depends(_runtime),
):
    """Send a verification code to the signed-in user's email address.

    An unexpired code is returned as-is instead of minting a new one.
    """
    token = (await runtime.auth.send_email_verification(session_token)).unwrap()
    return Envelope(status="ok", data={"token": _token_payload(token)})


@router.post("/resend-email-verification", response_model=Envelope, tags=["verification"])
async def resend_email_verification(
    session_token: Optional[str] = Depends(session_token_from),
    runtime: Runtime = Depends(_runtime),
):
    token = (await runtime.auth.resend_email_verification(session_token)).unwrap()
    return Envelope(status="ok", data={"token": _token_payload(token)})


@router.post("/verify-email-verification", response_model=Envelope, tags=["verification"])
async def verify_email_verification(
    body: VerifyCodeRequest,
    session_token: Optional[str] = Depends(session_token_from),
    runtime: Runtime = Depends(_runtime),
):
    (await runtime.auth.verify_email_code(session_token, body.code)).unwrap()
    return Envelope(status="ok", data={"verified": True})


@router.post("/send-phone-verification", response_model=Envelope, tags=["verification"])
async def send_phone_verification(
    session_token: Optional[str] = Depends(session_token_from),
    runtime: Runtime = Depends(_runtime),
):
    token = (await runtime.auth.send_phone_verification(session_token)).unwrap()
    return Envelope(status="ok", data={"token": _token_payload(token)})


@router.post("/resend-phone-verification", response_model=Envelope, tags=["verification"])
async def resend_phone_verification(
    session_token: Optional[str] = Depends(session_token_from),
    runtime: Runtime = Depends(_runtime),
):
    token = (await runtime.auth.resend_phone_verification(session_token)).unwrap()
    return Envelope(status="ok", data={"token": _token_payload(token)})


@router.post("/verify-phone-verification", response_model=Envelope, tags=["verification"])
async def verify_phone_verification(
    body: VerifyCodeRequest,
    session_token: Optional[str] = Depends(session_token_from),
    runtime: Runtime = Depends(_runtime),
):
    (await runtime.auth.verify_phone_code(session_token, body.code)).unwrap()
    return Envelope(status="ok", data={"verified": True})


@router.get("/health", response_model=Envelope, tags=["health"])
async def health(runtime: Runtime = Depends(_runtime)):
    store_type = type(runtime.store).__name__
    return Envelope(status="ok", data={"status": "healthy", "store": store_type})
