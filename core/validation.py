"""
Input Validation Utilities.

Validation rules shared by the authentication service and the persistence
service. Rules live here, once, so that an email accepted at registration is
normalized exactly the same way when it is later used to log in.

Key Components:
- `InputValidator`: Static validators for emails, passwords, display names,
  message content, media URLs and profile fields.
- `ValidationError`: Raised (from `core.exceptions`) with the offending field
  and a reason.

Message text is stored verbatim: chat content is rendered as text by clients,
so it is length-checked but never HTML-escaped or pattern-filtered.
"""

import re
from typing import Optional
from urllib.parse import urlparse

from core.logging_config import get_logger
from core.exceptions import ValidationError

logger = get_logger(__name__)


class InputValidator:
    """Input validation and normalization"""

    EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
    VERIFICATION_TOKEN_PATTERN = re.compile(r"^[a-f0-9]{64}$")

    MIN_PASSWORD_LENGTH = 6
    MAX_PASSWORD_LENGTH = 128
    MAX_USERNAME_LENGTH = 255
    MAX_CONTENT_LENGTH = 10000
    MAX_URL_LENGTH = 1024
    MAX_STATUS_LENGTH = 255
    MAX_STATUS_EMOJI_LENGTH = 32

    @staticmethod
    def validate_email(email: str) -> str:
        """Validate and normalize an email address"""
        if not isinstance(email, str):
            raise ValidationError("email", email, "Must be a string")

        email = email.strip()
        if len(email) > 254 or not InputValidator.EMAIL_PATTERN.match(email):
            raise ValidationError("email", email, "Invalid email format")

        return email.lower()

    @staticmethod
    def validate_password(password: str) -> str:
        """Validate password length"""
        if not isinstance(password, str):
            raise ValidationError("password", "***", "Must be a string")

        if len(password) < InputValidator.MIN_PASSWORD_LENGTH:
            raise ValidationError(
                "password",
                "***",
                f"Must be at least {InputValidator.MIN_PASSWORD_LENGTH} characters",
            )
        if len(password) > InputValidator.MAX_PASSWORD_LENGTH:
            raise ValidationError(
                "password",
                "***",
                f"Must be no more than {InputValidator.MAX_PASSWORD_LENGTH} characters",
            )

        return password

    @staticmethod
    def validate_username(username: Optional[str], email: str) -> str:
        """Resolve the display name, falling back to the email"""
        if username is None or not username.strip():
            return email

        username = username.strip()
        if len(username) > InputValidator.MAX_USERNAME_LENGTH:
            raise ValidationError(
                "username",
                username,
                f"Must be no more than {InputValidator.MAX_USERNAME_LENGTH} characters",
            )
        return username

    @staticmethod
    def validate_media_url(media_url: Optional[str]) -> Optional[str]:
        """Accept blob-store paths (`/uploads/...`) or http(s) URLs"""
        if media_url is None:
            return None

        media_url = media_url.strip()
        if not media_url:
            return None

        if len(media_url) > InputValidator.MAX_URL_LENGTH:
            raise ValidationError("mediaUrl", media_url, "URL is too long")

        if media_url.startswith("/"):
            return media_url

        parsed = urlparse(media_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError(
                "mediaUrl", media_url, "Must be an upload path or an http(s) URL"
            )
        return media_url

    @staticmethod
    def validate_message_content(content: Optional[str], media_url: Optional[str]) -> str:
        """Content may be empty only when media is attached"""
        content = content or ""
        if not content.strip() and not media_url:
            raise ValidationError(
                "content", content, "Message content or media required"
            )
        if len(content) > InputValidator.MAX_CONTENT_LENGTH:
            raise ValidationError(
                "content",
                content[:50],
                f"Must be no more than {InputValidator.MAX_CONTENT_LENGTH} characters",
            )
        return content

    @staticmethod
    def validate_edited_content(content: str) -> str:
        """Edited content replaces text only, so it must not be blank"""
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content", content, "Edited content cannot be empty")
        if len(content) > InputValidator.MAX_CONTENT_LENGTH:
            raise ValidationError(
                "content",
                content[:50],
                f"Must be no more than {InputValidator.MAX_CONTENT_LENGTH} characters",
            )
        return content

    @staticmethod
    def validate_distinct_users(sender_id: int, receiver_id: int) -> None:
        if sender_id == receiver_id:
            logger.warning(
                "Rejected message addressed to its own sender",
                extra={"sender_id": sender_id},
            )
            raise ValidationError(
                "receiverId", receiver_id, "Cannot send message to yourself"
            )

    @staticmethod
    def validate_profile_text(
        field: str, value: Optional[str], max_length: int
    ) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if len(value) > max_length:
            raise ValidationError(
                field, value, f"Must be no more than {max_length} characters"
            )
        return value or None

    @staticmethod
    def validate_verification_token(token: str) -> str:
        if not isinstance(token, str) or not InputValidator.VERIFICATION_TOKEN_PATTERN.match(
            token
        ):
            raise ValidationError("token", token, "Malformed verification token")
        return token
