"""
Application Settings.

All runtime configuration for the Direct Messaging API is read from environment
variables in one place, so the rest of the application receives a plain
`Settings` object instead of calling `os.getenv` on its own.

Key Components:
- `Settings`: A dataclass holding every tunable value (database URL, heartbeat
  interval, edit window, SMTP credentials, and so on) with development defaults.
- `Settings.from_env`: Builds a `Settings` instance from the process environment.
- `get_settings`: Cached accessor used by the application entry point.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5000",
    "http://localhost:5173",
]


@dataclass
class Settings:
    """Runtime configuration"""

    environment: str = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./chat.db"

    # Real-time core
    heartbeat_interval: float = 30.0
    require_socket_token: bool = False

    # Messages
    message_edit_window_minutes: int = 15

    # Authentication
    jwt_secret_key: Optional[str] = None
    access_token_expire_minutes: int = 60 * 24
    verification_token_ttl_minutes: int = 60
    google_client_id: Optional[str] = None

    # Email delivery
    app_url: str = "http://localhost:5000"
    smtp_host: Optional[str] = None
    smtp_port: int = 465
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    email_sender: str = "Direct Chat <noreply@localhost>"

    # Media uploads
    uploads_dir: str = "./uploads"
    max_upload_mb: int = 25

    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables"""
        return cls(
            environment=os.getenv("ENVIRONMENT", "development").lower(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./chat.db"),
            heartbeat_interval=float(os.getenv("HEARTBEAT_INTERVAL", "30")),
            require_socket_token=_env_bool("REQUIRE_SOCKET_TOKEN"),
            message_edit_window_minutes=int(
                os.getenv("MESSAGE_EDIT_WINDOW_MINUTES", "15")
            ),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY"),
            access_token_expire_minutes=int(
                os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24))
            ),
            verification_token_ttl_minutes=int(
                os.getenv("VERIFICATION_TOKEN_TTL_MINUTES", "60")
            ),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID"),
            app_url=os.getenv("APP_URL", "http://localhost:5000"),
            smtp_host=os.getenv("SMTP_HOST"),
            smtp_port=int(os.getenv("SMTP_PORT", "465")),
            smtp_user=os.getenv("SMTP_USER"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            email_sender=os.getenv("EMAIL_SENDER", "Direct Chat <noreply@localhost>"),
            uploads_dir=os.getenv("UPLOADS_DIR", "./uploads"),
            max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "25")),
            cors_origins=_env_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
        )

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)


@lru_cache()
def get_settings() -> Settings:
    """Get the process-wide settings loaded from the environment"""
    return Settings.from_env()
