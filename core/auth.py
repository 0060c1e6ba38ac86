"""
Authentication and Verification Service.

This module holds everything the chat service needs to establish who a user
is: password accounts with email verification, Google sign-in, and the access
tokens that let a socket prove the identity it claims in its `auth` envelope.

Key Components:
- `PasswordManager`: bcrypt hashing and verification of passwords.
- `JWTManager`: Issues and verifies HS256 access tokens (PyJWT).
- `GoogleIdentityVerifier`: Verifies a Google ID token against Google's
  `tokeninfo` endpoint with aiohttp and checks its audience.
- `AuthService`: Orchestrates registration, verification emails, password and
  Google login, email verification, and socket identity checks on top of the
  persistence service.

Architectural Design:
- Email is the durable identity. Google accounts are matched by their subject
  first and by email second, so a password account that later signs in with
  Google is linked instead of duplicated.
- Federated accounts never get a password; the `password_hash` column stays
  empty for them.
- Verification tokens are 32 random bytes in hex, valid for a configurable
  time-to-live (one hour by default), and are cleared once used.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import aiohttp
import bcrypt
import jwt

from core.exceptions import (
    AuthenticationError,
    EmailNotVerifiedError,
    ServiceUnavailableError,
    ValidationError,
)
from core.logging_config import get_logger
from core.models import User, utcnow
from core.validation import InputValidator

logger = get_logger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"


class PasswordManager:
    """Password hashing and verification"""

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash password using bcrypt"""
        InputValidator.validate_password(password)

        salt = bcrypt.gensalt()
        hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
        return hashed.decode("utf-8")

    @staticmethod
    def verify_password(password: str, hashed: Optional[str]) -> bool:
        """Verify password against hash"""
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError as e:
            logger.error(f"Password verification error: {e}")
            return False


class JWTManager:
    """JWT access token management"""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: str = "HS256",
        access_token_expire: timedelta = timedelta(hours=24),
    ):
        self.secret_key = secret_key or self._generate_secret_key()
        self.algorithm = algorithm
        self.access_token_expire = access_token_expire

    def _generate_secret_key(self) -> str:
        """Generate a secure secret key"""
        key = secrets.token_urlsafe(32)
        logger.warning(
            "Generated new JWT secret key. "
            "This should be set via JWT_SECRET_KEY environment variable."
        )
        return key

    def create_access_token(self, user: User) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "type": "access",
            "iat": now,
            "exp": now + self.access_token_expire,
            "jti": secrets.token_urlsafe(16),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Verify and decode an access token"""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid token: {str(e)}")

        if payload.get("type") != "access":
            raise AuthenticationError("Invalid token type")
        return payload


class GoogleIdentityVerifier:
    """Verifies Google ID tokens via the tokeninfo endpoint"""

    def __init__(self, client_id: Optional[str], timeout: float = 10.0):
        self.client_id = client_id
        self.timeout = timeout

    async def verify(self, credential: str) -> Dict[str, str]:
        """
        Returns:
            dict with `sub` and `email` of the verified Google account
        """
        if not self.client_id:
            raise ServiceUnavailableError("google", "GOOGLE_CLIENT_ID is not configured")

        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                async with session.get(
                    GOOGLE_TOKENINFO_URL, params={"id_token": credential}
                ) as response:
                    if response.status != 200:
                        raise AuthenticationError("Invalid Google token")
                    data = await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"Google token verification request failed: {e}")
            raise ServiceUnavailableError("google", str(e))

        if data.get("aud") != self.client_id:
            raise AuthenticationError("Google token audience mismatch")
        if not data.get("email") or not data.get("sub"):
            raise AuthenticationError("Google token is missing email or subject")
        # tokeninfo reports the claim as the string "true"
        if str(data.get("email_verified", "")).lower() != "true":
            raise AuthenticationError("Google account email is not verified")

        return {"sub": data["sub"], "email": data["email"]}


@dataclass
class LoginResult:
    user: User
    access_token: str


class AuthService:
    """Registration, login and identity checks"""

    def __init__(
        self,
        store,
        email_service,
        jwt_manager: JWTManager,
        google_verifier: GoogleIdentityVerifier,
        verification_ttl: timedelta = timedelta(hours=1),
        require_socket_token: bool = False,
    ):
        self.store = store
        self.email_service = email_service
        self.jwt_manager = jwt_manager
        self.google_verifier = google_verifier
        self.verification_ttl = verification_ttl
        self.require_socket_token = require_socket_token

    def new_verification_token(self) -> Tuple[str, datetime]:
        return secrets.token_hex(32), utcnow() + self.verification_ttl

    async def register(
        self, email: str, password: str, username: Optional[str] = None
    ) -> User:
        """Create an unverified password account and send the verification email"""
        email = InputValidator.validate_email(email)
        password_hash = PasswordManager.hash_password(password)
        token, expiry = self.new_verification_token()

        user = await self.store.create_user(
            email=email,
            password_hash=password_hash,
            username=username,
            email_verified=False,
            verification_token=token,
            verification_token_expiry=expiry,
        )
        await self.email_service.send_verification_email(user.email, token)
        logger.info(f"Registered user {user.id}", extra={"user_id": user.id})
        return user

    async def login(self, email: str, password: str) -> LoginResult:
        user = await self.store.get_user_by_email(email)
        if user is None or not PasswordManager.verify_password(password, user.password_hash):
            logger.warning("Failed login attempt", extra={"email": email})
            raise AuthenticationError("Invalid credentials")

        if not user.email_verified:
            raise EmailNotVerifiedError(user.email)

        logger.info(f"User {user.id} logged in", extra={"user_id": user.id})
        return LoginResult(user=user, access_token=self.jwt_manager.create_access_token(user))

    async def login_with_google(self, credential: str) -> LoginResult:
        if not credential:
            raise ValidationError("credential", credential, "Google credential is required")

        identity = await self.google_verifier.verify(credential)

        user = await self.store.get_user_by_external_id(identity["sub"])
        if user is None:
            user = await self.store.get_user_by_email(identity["email"])
            if user is not None:
                user = await self.store.link_external_identity(user.id, identity["sub"])
                logger.info(f"Linked Google identity to user {user.id}")
            else:
                user = await self.store.create_user(
                    email=identity["email"],
                    external_identity_id=identity["sub"],
                    email_verified=True,
                )

        logger.info(f"User {user.id} logged in with Google", extra={"user_id": user.id})
        return LoginResult(user=user, access_token=self.jwt_manager.create_access_token(user))

    async def verify_email(self, token: str) -> User:
        token = InputValidator.validate_verification_token(token)
        user = await self.store.get_user_by_verification_token(token)
        if user is None:
            raise ValidationError("token", token, "Invalid or expired token")

        user = await self.store.verify_email(user.id)
        logger.info(f"Verified email for user {user.id}", extra={"user_id": user.id})
        return user

    async def resend_verification(self, email: str) -> None:
        """Issue a fresh token; silent for unknown or already verified emails"""
        user = await self.store.get_user_by_email(email)
        if user is None or user.email_verified:
            return

        token, expiry = self.new_verification_token()
        await self.store.update_verification_token(user.id, token, expiry)
        await self.email_service.send_verification_email(user.email, token)

    def verify_socket_identity(self, user_id: int, token: Optional[str]) -> None:
        """
        Check the identity claimed by an `auth` envelope.

        A token is mandatory when socket tokens are required; a supplied token
        is always checked.
        """
        if token is None:
            if self.require_socket_token:
                raise AuthenticationError("Access token required")
            return

        payload = self.jwt_manager.verify_token(token)
        if payload.get("sub") != str(user_id):
            raise AuthenticationError("Token does not belong to this user")
