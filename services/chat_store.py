"""
Chat Persistence Service.

This module provides `ChatStore`, the persistence service every other part of
the application calls into for users, messages and chat summaries. It is the
only code that issues SQL; the real-time core sees it as a set of awaitable
operations that are durable and consistent per call.

Key Components:
- User operations: creation with explicit defaults, lookups by id, email,
  external identity and verification token, roster listing, online/last-seen
  updates, profile updates and email verification.
- Message operations: creation with validation, conversation history, edit
  within the edit window, and soft deletion (tombstones).
- Chat summaries: the most recent visible message per counterpart, recomputed
  from the `messages` table on every call.
- `reset_online_flags`: startup sweep clearing `online` flags left behind by a
  previous process, whose connection registry died with it.

Architectural Design:
- One session per operation. Each method opens a session from the injected
  factory, commits, and returns detached records (the factory is configured not
  to expire them on commit).
- Row-level atomicity only. No operation spans several rows transactionally
  except `reset_online_flags`, which is a single UPDATE statement.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import and_, col, or_, select

from core.exceptions import (
    DuplicateEmailError,
    EditWindowExpiredError,
    MessageNotFoundError,
    PermissionDeniedError,
    UserNotFoundError,
    ValidationError,
)
from core.models import ChatSummary, Message, MessagePayload, User, as_utc, utcnow
from core.validation import InputValidator

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("avatar_url", "status", "status_emoji", "has_story")


class ChatStore:
    """Persistence service for users, messages and chat summaries"""

    def __init__(self, session_factory, edit_window: timedelta = timedelta(minutes=15)):
        self._session_factory = session_factory
        self.edit_window = edit_window

    # User operations

    async def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        username: Optional[str] = None,
        external_identity_id: Optional[str] = None,
        email_verified: bool = False,
        verification_token: Optional[str] = None,
        verification_token_expiry: Optional[datetime] = None,
    ) -> User:
        """
        Create a user with every default resolved up front.

        Raises:
            ValidationError: malformed email or a half-present token pair
            DuplicateEmailError: the email is already registered
        """
        email = InputValidator.validate_email(email)
        username = InputValidator.validate_username(username, email)

        if (verification_token is None) != (verification_token_expiry is None):
            raise ValidationError(
                "verificationToken",
                verification_token,
                "Token and expiry must be set together",
            )

        if await self.get_user_by_email(email):
            raise DuplicateEmailError(email)

        now = utcnow()
        user = User(
            username=username,
            email=email,
            password_hash=password_hash,
            external_identity_id=external_identity_id,
            online=False,
            email_verified=email_verified,
            verification_token=verification_token,
            verification_token_expiry=verification_token_expiry,
            has_story=False,
            last_seen=now,
            created_at=now,
        )

        async with self._session_factory() as session:
            session.add(user)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateEmailError(email)
            await session.refresh(user)

        logger.info(
            f"Created user {user.id}",
            extra={"user_id": user.id, "federated": external_identity_id is not None},
        )
        return user

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def require_user(self, user_id: int) -> User:
        user = await self.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._session_factory() as session:
            result = await session.exec(
                select(User).where(User.email == email.strip().lower())
            )
            return result.first()

    async def get_user_by_external_id(self, external_identity_id: str) -> Optional[User]:
        async with self._session_factory() as session:
            result = await session.exec(
                select(User).where(User.external_identity_id == external_identity_id)
            )
            return result.first()

    async def get_user_by_verification_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        """User holding this token, only while the token is unexpired"""
        now = as_utc(now or utcnow())
        async with self._session_factory() as session:
            result = await session.exec(
                select(User).where(
                    and_(
                        User.verification_token == token,
                        User.verification_token_expiry > now,
                    )
                )
            )
            return result.first()

    async def list_users(self, except_user_id: int) -> List[User]:
        """Roster for one user: everybody else, ordered by display name"""
        async with self._session_factory() as session:
            result = await session.exec(
                select(User)
                .where(User.id != except_user_id)
                .order_by(col(User.username), col(User.id))
            )
            return list(result.all())

    async def set_online(self, user_id: int, online: bool) -> bool:
        """
        Persist a presence transition and stamp `last_seen`.

        Returns:
            bool: False when the user does not exist
        """
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                logger.warning(f"Presence update for unknown user {user_id}")
                return False
            user.online = online
            user.last_seen = utcnow()
            session.add(user)
            await session.commit()
        logger.debug(f"User {user_id} marked {'online' if online else 'offline'}")
        return True

    async def reset_online_flags(self) -> int:
        """Mark every user offline; returns how many rows were changed"""
        async with self._session_factory() as session:
            result = await session.execute(
                update(User).where(User.online == True).values(online=False)  # noqa: E712
            )
            await session.commit()
            count = result.rowcount or 0
        if count:
            logger.info(f"Reset stale online flag for {count} users")
        return count

    async def update_last_seen(self, user_id: int, last_seen: datetime) -> User:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            user.last_seen = as_utc(last_seen)
            session.add(user)
            await session.commit()
            return user

    async def update_profile(self, user_id: int, changes: Dict[str, Any]) -> User:
        """Apply profile decorations; keys outside the profile fields are ignored"""
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            for key in PROFILE_FIELDS:
                if key in changes:
                    setattr(user, key, changes[key])
            session.add(user)
            await session.commit()
            return user

    async def update_verification_token(
        self, user_id: int, token: str, expiry: datetime
    ) -> None:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            user.verification_token = token
            user.verification_token_expiry = expiry
            session.add(user)
            await session.commit()

    async def verify_email(self, user_id: int) -> User:
        """Mark the email verified and clear the token pair"""
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            user.email_verified = True
            user.verification_token = None
            user.verification_token_expiry = None
            session.add(user)
            await session.commit()
            return user

    async def link_external_identity(self, user_id: int, external_identity_id: str) -> User:
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            user.external_identity_id = external_identity_id
            user.email_verified = True
            session.add(user)
            await session.commit()
            return user

    # Message operations

    async def create_message(
        self,
        sender_id: int,
        receiver_id: int,
        content: Optional[str],
        media_url: Optional[str] = None,
    ) -> Message:
        """
        Validate and persist a new message.

        Raises:
            ValidationError: sender equals receiver, or no content and no media
            UserNotFoundError: either party does not exist
        """
        InputValidator.validate_distinct_users(sender_id, receiver_id)
        media_url = InputValidator.validate_media_url(media_url)
        content = InputValidator.validate_message_content(content, media_url)

        async with self._session_factory() as session:
            for user_id in (sender_id, receiver_id):
                if await session.get(User, user_id) is None:
                    raise UserNotFoundError(user_id)

            message = Message(
                content=content,
                sender_id=sender_id,
                receiver_id=receiver_id,
                media_url=media_url,
                created_at=utcnow(),
                deleted=False,
            )
            session.add(message)
            await session.commit()
            await session.refresh(message)

        logger.info(
            f"Stored message {message.id}",
            extra={
                "message_id": message.id,
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "has_media": media_url is not None,
            },
        )
        return message

    async def get_message(self, message_id: int) -> Optional[Message]:
        async with self._session_factory() as session:
            return await session.get(Message, message_id)

    async def list_messages_between(self, user_a: int, user_b: int) -> List[Message]:
        """Conversation history in creation order, tombstones included"""
        async with self._session_factory() as session:
            result = await session.exec(
                select(Message)
                .where(
                    or_(
                        and_(Message.sender_id == user_a, Message.receiver_id == user_b),
                        and_(Message.sender_id == user_b, Message.receiver_id == user_a),
                    )
                )
                .order_by(col(Message.created_at), col(Message.id))
            )
            return list(result.all())

    async def edit_message(
        self,
        message_id: int,
        content: str,
        editor_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Message:
        """
        Replace a message's content, keeping its id and creation time.

        Raises:
            MessageNotFoundError: unknown id
            PermissionDeniedError: editor is not the sender
            EditWindowExpiredError: the edit window has closed
            ValidationError: blank content, or the message is a tombstone
        """
        content = InputValidator.validate_edited_content(content)
        now = now or utcnow()

        async with self._session_factory() as session:
            message = await session.get(Message, message_id)
            if message is None:
                raise MessageNotFoundError(message_id)
            if editor_id is not None and editor_id != message.sender_id:
                raise PermissionDeniedError(editor_id, f"edit message {message_id}")
            if message.deleted:
                raise ValidationError("id", message_id, "Deleted messages cannot be edited")
            if as_utc(now) - as_utc(message.created_at) > self.edit_window:
                raise EditWindowExpiredError(
                    message_id, int(self.edit_window.total_seconds() // 60)
                )

            message.content = content
            session.add(message)
            await session.commit()

        logger.info(f"Edited message {message_id}", extra={"message_id": message_id})
        return message

    async def delete_message(
        self, message_id: int, requester_id: Optional[int] = None
    ) -> Message:
        """Tombstone a message; deleting twice is a no-op"""
        async with self._session_factory() as session:
            message = await session.get(Message, message_id)
            if message is None:
                raise MessageNotFoundError(message_id)
            if requester_id is not None and requester_id != message.sender_id:
                raise PermissionDeniedError(requester_id, f"delete message {message_id}")
            if not message.deleted:
                message.deleted = True
                session.add(message)
                await session.commit()
                logger.info(
                    f"Deleted message {message_id}", extra={"message_id": message_id}
                )
        return message

    # Chat summaries

    async def get_user_chats(self, user_id: int) -> List[ChatSummary]:
        """
        One summary per counterpart, most recent conversation first.
        Tombstoned messages are skipped when picking the last message.
        """
        async with self._session_factory() as session:
            result = await session.exec(
                select(Message)
                .where(
                    and_(
                        or_(Message.sender_id == user_id, Message.receiver_id == user_id),
                        Message.deleted == False,  # noqa: E712
                    )
                )
                .order_by(col(Message.created_at).desc(), col(Message.id).desc())
            )
            messages = result.all()

        chats: Dict[int, ChatSummary] = {}
        for message in messages:
            other_id = (
                message.receiver_id if message.sender_id == user_id else message.sender_id
            )
            if other_id not in chats:
                chats[other_id] = ChatSummary(
                    user_id=other_id,
                    last_message=MessagePayload.model_validate(message),
                )

        return list(chats.values())
