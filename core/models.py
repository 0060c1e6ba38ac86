"""
Core data models for the Direct Messaging API

Defines the persisted `User` and `Message` tables and the camelCase wire models
shared by REST responses and real-time events.
"""

from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp, the form written to the database"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Aware UTC view of a stored timestamp. SQLite hands columns back without
    tzinfo; their values are UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class User(SQLModel, table=True):
    """
    Registered chat user. Email is the durable unique identity; username is a
    display name resolved to the email at creation when none is given.
    """

    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(max_length=255, index=True)
    email: str = Field(max_length=255, unique=True, index=True)
    password_hash: Optional[str] = Field(default=None, max_length=255)
    external_identity_id: Optional[str] = Field(
        default=None, max_length=255, unique=True
    )  # Google subject for federated accounts
    online: bool = Field(default=False)
    email_verified: bool = Field(default=False)
    verification_token: Optional[str] = Field(default=None, max_length=128, index=True)
    verification_token_expiry: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)
    )
    avatar_url: Optional[str] = Field(default=None, max_length=1024)
    status: Optional[str] = Field(default=None, max_length=255)
    status_emoji: Optional[str] = Field(default=None, max_length=32)
    has_story: bool = Field(default=False)
    last_seen: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True)
    )
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True)
    )


class Message(SQLModel, table=True):
    """
    Direct message between two distinct users. `deleted` is a tombstone flag;
    content is retained.
    """

    __tablename__ = "messages"

    id: Optional[int] = Field(default=None, primary_key=True)
    content: str = Field(default="")
    sender_id: int = Field(foreign_key="users.id", index=True)
    receiver_id: int = Field(foreign_key="users.id", index=True)
    media_url: Optional[str] = Field(default=None, max_length=1024)
    created_at: datetime = Field(
        default_factory=utcnow, index=True, sa_type=DateTime(timezone=True)
    )
    deleted: bool = Field(default=False)


class CamelModel(BaseModel):
    """Base for wire models serialized with camelCase keys"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class MessagePayload(CamelModel):
    id: int
    content: str
    sender_id: int
    receiver_id: int
    media_url: Optional[str] = None
    created_at: datetime
    deleted: bool = False

    @field_validator("created_at")
    @classmethod
    def created_at_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class UserSummary(CamelModel):
    """Roster entry; never carries credentials or verification tokens"""

    id: int
    username: str
    email: str
    online: bool
    avatar_url: Optional[str] = None
    status: Optional[str] = None
    status_emoji: Optional[str] = None
    has_story: bool = False
    last_seen: Optional[datetime] = None

    @field_validator("last_seen")
    @classmethod
    def last_seen_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class ChatSummary(CamelModel):
    """Most recent visible message exchanged with one counterpart"""

    user_id: int
    last_message: Optional[MessagePayload] = None
