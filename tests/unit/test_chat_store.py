"""
Unit tests for ChatStore

Runs against an in-memory SQLite database.
"""
from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import (
    DuplicateEmailError,
    EditWindowExpiredError,
    MessageNotFoundError,
    PermissionDeniedError,
    UserNotFoundError,
    ValidationError,
)
from core.models import as_utc, utcnow


@pytest.mark.unit
class TestUserOperations:
    """Test user persistence"""

    @pytest.mark.asyncio
    async def test_create_user_defaults(self, store):
        """Test that every default is resolved at creation"""
        user = await store.create_user("Alice@Example.com")

        assert user.id is not None
        assert user.email == "alice@example.com"
        assert user.username == "alice@example.com"
        assert user.online is False
        assert user.email_verified is False
        assert user.has_story is False
        assert user.password_hash is None
        assert user.last_seen is not None

    @pytest.mark.asyncio
    async def test_create_user_with_username(self, store):
        user = await store.create_user("bob@example.com", username="  Bob  ")
        assert user.username == "Bob"

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, store):
        """Test that email is a unique identity regardless of case"""
        await store.create_user("carol@example.com")

        with pytest.raises(DuplicateEmailError) as exc_info:
            await store.create_user("CAROL@example.com")

        assert exc_info.value.message == "Email already exists"

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.create_user("not-an-email")

    @pytest.mark.asyncio
    async def test_half_token_pair_rejected(self, store):
        """Test that a verification token needs an expiry"""
        with pytest.raises(ValidationError):
            await store.create_user("dan@example.com", verification_token="a" * 64)

    @pytest.mark.asyncio
    async def test_lookups(self, store):
        """Test lookups by id, email and external identity"""
        user = await store.create_user(
            "erin@example.com", external_identity_id="google-123"
        )

        assert (await store.get_user(user.id)).email == "erin@example.com"
        assert (await store.get_user_by_email(" ERIN@example.com ")).id == user.id
        assert (await store.get_user_by_external_id("google-123")).id == user.id
        assert await store.get_user(9999) is None
        with pytest.raises(UserNotFoundError):
            await store.require_user(9999)

    @pytest.mark.asyncio
    async def test_list_users_excludes_caller_sorted_by_username(self, store):
        """Test the roster"""
        zed = await store.create_user("z@example.com", username="zed")
        amy = await store.create_user("a@example.com", username="amy")
        me = await store.create_user("me@example.com", username="me")

        roster = await store.list_users(me.id)

        assert [u.id for u in roster] == [amy.id, zed.id]

    @pytest.mark.asyncio
    async def test_set_online_and_reset(self, store):
        """Test presence persistence and the startup sweep"""
        user = await store.create_user("frank@example.com")
        before = (await store.get_user(user.id)).last_seen

        assert await store.set_online(user.id, True) is True
        stored = await store.get_user(user.id)
        assert stored.online is True
        assert stored.last_seen >= before

        assert await store.reset_online_flags() == 1
        assert (await store.get_user(user.id)).online is False
        assert await store.set_online(9999, True) is False

    @pytest.mark.asyncio
    async def test_update_last_seen_normalizes_timezone(self, store):
        """Test that an offset timestamp is stored as the same UTC instant"""
        user = await store.create_user("gina@example.com")
        aware = datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

        await store.update_last_seen(user.id, aware)

        stored = await store.get_user(user.id)
        assert as_utc(stored.last_seen) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_timestamps_round_trip(self, store):
        """Test that written timestamps read back as the same UTC instants"""
        before = utcnow()
        sender = await store.create_user("ida@example.com")
        receiver = await store.create_user("jon@example.com")
        await store.set_online(sender.id, True)
        message = await store.create_message(sender.id, receiver.id, "hi")
        after = utcnow()

        stored_user = await store.get_user(sender.id)
        stored_message = await store.get_message(message.id)
        assert before <= as_utc(stored_user.last_seen) <= after
        assert before <= as_utc(stored_user.created_at) <= after
        assert before <= as_utc(stored_message.created_at) <= after

    @pytest.mark.asyncio
    async def test_update_profile_ignores_unknown_fields(self, store):
        """Test that only profile decorations can be changed"""
        user = await store.create_user("hank@example.com")

        updated = await store.update_profile(
            user.id,
            {"status": "Busy", "status_emoji": "🚀", "has_story": True, "email": "x@y.z"},
        )

        assert updated.status == "Busy"
        assert updated.status_emoji == "🚀"
        assert updated.has_story is True
        assert updated.email == "hank@example.com"

    @pytest.mark.asyncio
    async def test_verification_token_lookup_respects_expiry(self, store):
        """Test that expired tokens are not found"""
        token = "b" * 64
        user = await store.create_user(
            "ivy@example.com",
            verification_token=token,
            verification_token_expiry=utcnow() + timedelta(hours=1),
        )

        assert (await store.get_user_by_verification_token(token)).id == user.id
        later = utcnow() + timedelta(hours=2)
        assert await store.get_user_by_verification_token(token, now=later) is None

        verified = await store.verify_email(user.id)
        assert verified.email_verified is True
        assert verified.verification_token is None
        assert verified.verification_token_expiry is None


@pytest.mark.unit
class TestMessageOperations:
    """Test message persistence"""

    @pytest.fixture
    async def pair(self, store):
        alice = await store.create_user("alice@example.com")
        bob = await store.create_user("bob@example.com")
        return alice, bob

    @pytest.mark.asyncio
    async def test_create_message(self, store, pair):
        alice, bob = pair

        message = await store.create_message(alice.id, bob.id, "hello")

        assert message.id is not None
        assert message.content == "hello"
        assert message.deleted is False
        assert message.created_at is not None

    @pytest.mark.asyncio
    async def test_media_only_message_allowed(self, store, pair):
        """Test that empty content is fine when media is attached"""
        alice, bob = pair

        message = await store.create_message(alice.id, bob.id, "", "/uploads/abc.png")

        assert message.content == ""
        assert message.media_url == "/uploads/abc.png"

    @pytest.mark.asyncio
    async def test_message_validation(self, store, pair):
        """Test the rejected shapes"""
        alice, bob = pair

        with pytest.raises(ValidationError) as exc_info:
            await store.create_message(alice.id, alice.id, "me")
        assert exc_info.value.reason == "Cannot send message to yourself"
        assert await store.list_messages_between(alice.id, alice.id) == []

        with pytest.raises(ValidationError) as exc_info:
            await store.create_message(alice.id, bob.id, "   ")
        assert exc_info.value.reason == "Message content or media required"

        with pytest.raises(UserNotFoundError):
            await store.create_message(alice.id, 9999, "hello?")

    @pytest.mark.asyncio
    async def test_conversation_in_creation_order(self, store, pair):
        """Test history for both directions, tombstones included"""
        alice, bob = pair
        first = await store.create_message(alice.id, bob.id, "one")
        second = await store.create_message(bob.id, alice.id, "two")
        third = await store.create_message(alice.id, bob.id, "three")
        await store.delete_message(second.id)

        history = await store.list_messages_between(bob.id, alice.id)

        assert [m.id for m in history] == [first.id, second.id, third.id]
        assert history[1].deleted is True

    @pytest.mark.asyncio
    async def test_edit_within_window(self, store, pair):
        """Test that an edit keeps id and creation time"""
        alice, bob = pair
        message = await store.create_message(alice.id, bob.id, "typo")

        edited = await store.edit_message(message.id, "fixed", editor_id=alice.id)

        assert edited.id == message.id
        assert edited.content == "fixed"
        assert edited.created_at == message.created_at

    @pytest.mark.asyncio
    async def test_edit_after_window(self, store, pair):
        alice, bob = pair
        message = await store.create_message(alice.id, bob.id, "old")

        with pytest.raises(EditWindowExpiredError):
            await store.edit_message(
                message.id, "new", now=message.created_at + timedelta(minutes=16)
            )

    @pytest.mark.asyncio
    async def test_only_sender_may_edit_or_delete(self, store, pair):
        alice, bob = pair
        message = await store.create_message(alice.id, bob.id, "mine")

        with pytest.raises(PermissionDeniedError):
            await store.edit_message(message.id, "yours", editor_id=bob.id)
        with pytest.raises(PermissionDeniedError):
            await store.delete_message(message.id, requester_id=bob.id)

    @pytest.mark.asyncio
    async def test_tombstone_cannot_be_edited(self, store, pair):
        alice, bob = pair
        message = await store.create_message(alice.id, bob.id, "gone")
        await store.delete_message(message.id)

        with pytest.raises(ValidationError):
            await store.edit_message(message.id, "back")

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, store, pair):
        """Test that deleting twice leaves one tombstone with its content"""
        alice, bob = pair
        message = await store.create_message(alice.id, bob.id, "bye")

        first = await store.delete_message(message.id)
        second = await store.delete_message(message.id)

        assert first.deleted is True
        assert second.deleted is True
        assert (await store.get_message(message.id)).content == "bye"

    @pytest.mark.asyncio
    async def test_unknown_message(self, store):
        with pytest.raises(MessageNotFoundError):
            await store.delete_message(12345)
        with pytest.raises(MessageNotFoundError):
            await store.edit_message(12345, "text")


@pytest.mark.unit
class TestChatSummaries:
    """Test get_user_chats"""

    @pytest.mark.asyncio
    async def test_latest_visible_message_per_counterpart(self, store):
        """Test one summary per counterpart, newest conversation first"""
        me = await store.create_user("me@example.com")
        bob = await store.create_user("bob@example.com")
        carol = await store.create_user("carol@example.com")

        await store.create_message(me.id, bob.id, "hi bob")
        await store.create_message(carol.id, me.id, "hi from carol")
        visible = await store.create_message(bob.id, me.id, "hey")
        hidden = await store.create_message(me.id, bob.id, "oops")
        await store.delete_message(hidden.id)

        chats = await store.get_user_chats(me.id)

        assert [c.user_id for c in chats] == [bob.id, carol.id]
        assert chats[0].last_message.id == visible.id
        assert chats[1].last_message.content == "hi from carol"

    @pytest.mark.asyncio
    async def test_no_chats(self, store):
        user = await store.create_user("lonely@example.com")
        assert await store.get_user_chats(user.id) == []
