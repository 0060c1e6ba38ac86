"""
Authentication Endpoints.

This module exposes the account lifecycle of the chat service over HTTP:
password registration with email verification, password and Google sign-in,
and re-sending the verification email.

Endpoints Provided:
- `/api/auth/register`: Creates an unverified account and emails a
  verification link.
- `/api/auth/login`: Authenticates with email and password and returns an
  access token. Unverified accounts are refused with `needsVerification`.
- `/api/auth/google`: Signs in with a Google ID token, creating or linking the
  account as needed.
- `/api/auth/verify-email`: Consumes a verification token.
- `/api/auth/resend-verification`: Issues a fresh verification token.

Architectural Design:
- Data Validation: Pydantic models validate request bodies; field-level rules
  (email format, password length) are applied by `AuthService`.
- Dependency Injection: The `AuthService` is injected from the `ChatHub`.
- Clear Responses: Login responses carry the access token a client presents in
  its socket `auth` envelope.
"""

from typing import Dict, Optional
from fastapi import APIRouter, Depends

from core.auth import AuthService
from core.logging_config import get_logger, log_function_call
from core.models import CamelModel
from .dependencies import get_auth_service

logger = get_logger(__name__)
router = APIRouter(prefix="/api/auth", tags=["Authentication"])

REGISTERED_MESSAGE = "Check your email for verification instructions"
RESENT_MESSAGE = "If the account exists and is unverified, a new email was sent"


# Request/Response Models
class RegisterRequest(CamelModel):
    email: str
    password: str
    username: Optional[str] = None


class LoginRequest(CamelModel):
    email: str
    password: str


class GoogleLoginRequest(CamelModel):
    credential: str = ""


class VerifyEmailRequest(CamelModel):
    token: str


class ResendVerificationRequest(CamelModel):
    email: str


class LoginResponse(CamelModel):
    id: int
    email: str
    username: str
    access_token: str


class GoogleLoginResponse(CamelModel):
    id: int
    username: str
    access_token: str


@router.post("/register")
@log_function_call(logger)
async def register_user(
    request: RegisterRequest, auth: AuthService = Depends(get_auth_service)
) -> Dict[str, str]:
    """Register a new password account"""
    await auth.register(request.email, request.password, request.username)
    return {"message": REGISTERED_MESSAGE}


@router.post("/login", response_model=LoginResponse)
@log_function_call(logger)
async def login(request: LoginRequest, auth: AuthService = Depends(get_auth_service)):
    result = await auth.login(request.email, request.password)
    return LoginResponse(
        id=result.user.id,
        email=result.user.email,
        username=result.user.username,
        access_token=result.access_token,
    )


@router.post("/google", response_model=GoogleLoginResponse)
@log_function_call(logger)
async def login_with_google(
    request: GoogleLoginRequest, auth: AuthService = Depends(get_auth_service)
):
    """Sign in with a Google ID token"""
    result = await auth.login_with_google(request.credential)
    return GoogleLoginResponse(
        id=result.user.id,
        username=result.user.username,
        access_token=result.access_token,
    )


@router.post("/verify-email")
async def verify_email(
    request: VerifyEmailRequest, auth: AuthService = Depends(get_auth_service)
) -> Dict[str, bool]:
    await auth.verify_email(request.token)
    return {"success": True}


@router.post("/resend-verification")
async def resend_verification(
    request: ResendVerificationRequest, auth: AuthService = Depends(get_auth_service)
) -> Dict[str, str]:
    await auth.resend_verification(request.email)
    return {"message": RESENT_MESSAGE}
