from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from schoolauth.api.schemas import (
    AuthTokensResponse,
    EmailVerificationRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    RegisterRequest,
    ResendVerificationRequest,
    TokenRefreshRequest,
    TokenValidationResponse,
    UserSummary,
)
from schoolauth.logging import get_logger
from schoolauth.service.auth import AuthContext, AuthResult
from schoolauth.service.runtime import get_runtime
from schoolauth.tenancy import get_current_tenant

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


def _request_tenant(explicit: Optional[str] = None) -> str:
    """Tenant named in the body, else the one the middleware bound to the request."""
    tenant_id = (explicit or "").strip() or get_current_tenant()
    if not tenant_id:
        raise _http_error(
            "validation_error",
            "tenant is required; send the X-Tenant-ID header",
            status_code=400,
        )
    return tenant_id


def _tokens_response(result: AuthResult) -> AuthTokensResponse:
    return AuthTokensResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        user=UserSummary.from_identity(result.identity),
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate by username or email within a tenant.

    Raises:
        401: If credentials are invalid
        403: If the email is unverified, the account disabled or the tenant invalid
        423: If the account is inside its lockout window
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.username, body.password, _request_tenant(body.tenant_id)
    )
    return Envelope(status="ok", data=_tokens_response(result))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an unverified account and send its verification email.

    No tokens are issued until the email address has been verified.
    """
    runtime = get_runtime()
    identity = await runtime.auth.register(
        username=body.username,
        email=body.email,
        password=body.password,
        role=body.role,
        first_name=body.first_name,
        last_name=body.last_name,
        tenant_id=_request_tenant(),
    )
    return Envelope(status="ok", data=UserSummary.from_identity(identity))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_tokens_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    await runtime.auth.logout(authorization, body.refresh_token if body else None)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.initiate_password_reset(
        body.email, body.tenant_id or get_current_tenant()
    )
    # Same response whether or not the account exists
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data={"status": "verified"})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    await runtime.auth.resend_verification(body.email, _request_tenant(body.tenant_id))
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.identity_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"status": "changed"})


@router.get("/auth/validate-token", response_model=Envelope, tags=["auth"])
async def validate_token(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=TokenValidationResponse(
            user_id=principal.identity_id,
            tenant_id=principal.tenant_id,
            role=principal.role.value,
        ),
    )
