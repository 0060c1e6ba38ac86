"""
Custom Exception Classes for the Direct Messaging API.

This module defines the exception hierarchy used throughout the chat service.
Every failure that the application raises on purpose is a `ChatAPIException`
carrying a human readable message, a stable error code, and a `details`
dictionary, so the HTTP layer and the real-time layer can report it
consistently.

Key Components:
- `ChatAPIException`: The root of the hierarchy. It stores `message`,
  `error_code` and `details`.
- Specific Exception Classes: `ValidationError`, `UserNotFoundError`,
  `MessageNotFoundError`, `DuplicateEmailError`, `AuthenticationError`,
  `EmailNotVerifiedError`, `PermissionDeniedError`, `EditWindowExpiredError`,
  `ProtocolError`, `DatabaseConnectionError` and `ServiceUnavailableError`.
- `to_http_exception`: Maps a `ChatAPIException` onto FastAPI's `HTTPException`
  using the error code to pick the status.

Architectural Design:
- The real-time layer never converts these into HTTP responses; a
  `ChatAPIException` raised while handling a socket frame is turned into an
  `error` envelope for the originating connection instead.
- Error codes are part of the public API surface and are what clients match on.
"""

from typing import Optional, Dict, Any
from fastapi import HTTPException


class ChatAPIException(Exception):
    """Base exception class for the chat API"""

    def __init__(
        self,
        message: str,
        error_code: str = "CHAT_API_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_CODE_MAP.get(self.error_code, 500)


class ValidationError(ChatAPIException):
    """Raised when input validation fails"""

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Validation failed for field '{field}': {reason}",
            "VALIDATION_ERROR",
            {"field": field, "value": str(value), "reason": reason},
        )
        self.reason = reason


class UserNotFoundError(ChatAPIException):
    """Raised when a user cannot be found"""

    def __init__(self, user_id: Any):
        super().__init__(
            f"User not found: {user_id}",
            "USER_NOT_FOUND",
            {"user_id": user_id},
        )


class MessageNotFoundError(ChatAPIException):
    """Raised when a message cannot be found"""

    def __init__(self, message_id: int):
        super().__init__(
            f"Message not found: {message_id}",
            "MESSAGE_NOT_FOUND",
            {"message_id": message_id},
        )


class DuplicateEmailError(ChatAPIException):
    """Raised when registering an email that is already taken"""

    def __init__(self, email: str):
        super().__init__(
            "Email already exists",
            "DUPLICATE_EMAIL",
            {"email": email},
        )


class AuthenticationError(ChatAPIException):
    """Raised when authentication fails"""

    def __init__(self, reason: str):
        super().__init__(
            f"Authentication failed: {reason}",
            "AUTHENTICATION_ERROR",
            {"reason": reason},
        )


class EmailNotVerifiedError(ChatAPIException):
    """Raised when a password login is attempted before email verification"""

    def __init__(self, email: str):
        super().__init__(
            "Email not verified",
            "EMAIL_NOT_VERIFIED",
            {"email": email, "needsVerification": True},
        )


class PermissionDeniedError(ChatAPIException):
    """Raised when a user acts on a resource they do not own"""

    def __init__(self, user_id: int, action: str):
        super().__init__(
            f"User {user_id} is not allowed to {action}",
            "PERMISSION_DENIED",
            {"user_id": user_id, "action": action},
        )


class EditWindowExpiredError(ChatAPIException):
    """Raised when a message is edited after the edit window has closed"""

    def __init__(self, message_id: int, window_minutes: int):
        super().__init__(
            f"Message {message_id} can no longer be edited "
            f"(edit window is {window_minutes} minutes)",
            "EDIT_WINDOW_EXPIRED",
            {"message_id": message_id, "window_minutes": window_minutes},
        )


class ProtocolError(ChatAPIException):
    """Raised when a real-time frame cannot be decoded"""

    def __init__(self, reason: str):
        super().__init__(reason, "PROTOCOL_ERROR", {"reason": reason})


class DatabaseConnectionError(ChatAPIException):
    """Raised when database operations fail"""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            f"Database operation '{operation}' failed: {reason}",
            "DATABASE_ERROR",
            {"operation": operation, "reason": reason},
        )


class ServiceUnavailableError(ChatAPIException):
    """Raised when external services are unavailable"""

    def __init__(self, service: str, reason: str):
        super().__init__(
            f"Service '{service}' is unavailable: {reason}",
            "SERVICE_UNAVAILABLE",
            {"service": service, "reason": reason},
        )


STATUS_CODE_MAP = {
    "VALIDATION_ERROR": 400,
    "PROTOCOL_ERROR": 400,
    "AUTHENTICATION_ERROR": 401,
    "EMAIL_NOT_VERIFIED": 403,
    "PERMISSION_DENIED": 403,
    "EDIT_WINDOW_EXPIRED": 403,
    "USER_NOT_FOUND": 404,
    "MESSAGE_NOT_FOUND": 404,
    "DUPLICATE_EMAIL": 409,
    "DATABASE_ERROR": 500,
    "SERVICE_UNAVAILABLE": 503,
}


def to_http_exception(exc: ChatAPIException) -> HTTPException:
    """Convert ChatAPIException to FastAPI HTTPException"""
    return HTTPException(
        status_code=exc.status_code,
        detail={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )
