"""
API Endpoints for Direct Messaging.

This module defines the REST and WebSocket endpoints of the chat service. REST
endpoints cover everything a client pulls or mutates (conversation history,
rosters, profiles, uploads); the single WebSocket endpoint carries the pushed
events (new messages, typing signals, presence changes).

Endpoints Provided:
- `POST /api/messages`: Stores a message and relays it to both parties.
- `GET /api/messages/{userId}`: Conversation history with another user.
- `PATCH /api/messages/{id}/edit`, `PATCH /api/messages/{id}/delete`: Edit
  within the edit window and soft deletion.
- `GET /api/users`, `GET /api/users/{id}`: Roster and identity lookups.
- `GET|PATCH /api/users/{id}/profile`, `PATCH /api/users/{id}/presence`:
  Profile decorations and last-seen updates.
- `GET /api/chats`: Chat summaries for a user.
- `POST /api/upload`: Raw-body media upload.
- `GET /api/presence`: Live registry statistics.
- `/ws`: The real-time channel.

Architectural Design:
- Separation of Concerns: REST and WebSocket endpoints are defined in separate
  routers (`router` and `websocket_router`).
- Dependency Injection: Services are resolved from the `ChatHub` on
  `app.state` through the functions in `api.dependencies`.
- Error Handling: Endpoints raise `ChatAPIException` subclasses, which the
  error handling middleware turns into JSON error responses.
- Persist, then relay: a message is pushed to live connections only after it
  has been stored, and the HTTP response does not wait on the receiver.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Header, Query, Request, WebSocket

from core.exceptions import UserNotFoundError, ValidationError
from core.logging_config import log_function_call
from core.models import CamelModel, ChatSummary, MessagePayload, UserSummary
from core.validation import InputValidator
from services.chat_store import ChatStore
from services.connection_registry import ClientConnection, ConnectionRegistry
from services.media_storage import MediaStorage
from services.relay import MessageRelay
from services.socket_session import SocketSession
from .dependencies import (
    get_media_storage,
    get_registry,
    get_relay,
    get_store,
)

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/api", tags=["Direct Messaging"])
websocket_router = APIRouter(tags=["WebSocket Communication"])


# Request/Response Models
class CreateMessageRequest(CamelModel):
    sender_id: int
    receiver_id: int
    content: Optional[str] = None
    media_url: Optional[str] = None


class EditMessageRequest(CamelModel):
    content: str
    user_id: Optional[int] = None


class DeleteMessageRequest(CamelModel):
    user_id: Optional[int] = None


class UpdateProfileRequest(CamelModel):
    avatar_url: Optional[str] = None
    status: Optional[str] = None
    status_emoji: Optional[str] = None
    has_story: Optional[bool] = None


class UpdatePresenceRequest(CamelModel):
    last_seen: datetime


class UserIdentityResponse(CamelModel):
    id: int
    email: str
    external_identity_id: Optional[str] = None


class UploadResponse(CamelModel):
    url: str


# Messages
@router.post("/messages", response_model=MessagePayload)
@log_function_call(logger)
async def create_message(
    request: CreateMessageRequest,
    store: ChatStore = Depends(get_store),
    relay: MessageRelay = Depends(get_relay),
):
    """Store a message, then push it to the receiver and echo it to the sender"""
    message = await store.create_message(
        request.sender_id, request.receiver_id, request.content, request.media_url
    )
    await relay.notify_new_message(message)
    return MessagePayload.model_validate(message)


@router.get("/messages/{user_id}", response_model=List[MessagePayload])
async def get_conversation(
    user_id: int,
    current_user_id: int = Query(..., alias="currentUserId"),
    store: ChatStore = Depends(get_store),
):
    """Conversation between the caller and another user, oldest first"""
    if current_user_id == user_id:
        raise ValidationError(
            "userId", user_id, "Cannot fetch messages sent to yourself"
        )

    messages = await store.list_messages_between(current_user_id, user_id)
    logger.debug(
        f"Fetched {len(messages)} messages between {current_user_id} and {user_id}",
        extra={"current_user_id": current_user_id, "other_user_id": user_id},
    )
    return [MessagePayload.model_validate(message) for message in messages]


@router.patch("/messages/{message_id}/edit")
@log_function_call(logger)
async def edit_message(
    message_id: int,
    request: EditMessageRequest,
    store: ChatStore = Depends(get_store),
) -> Dict[str, Any]:
    message = await store.edit_message(
        message_id, request.content, editor_id=request.user_id
    )
    payload = MessagePayload.model_validate(message)
    return {"success": True, "message": payload.model_dump(mode="json", by_alias=True)}


@router.patch("/messages/{message_id}/delete")
@log_function_call(logger)
async def delete_message(
    message_id: int,
    request: Optional[DeleteMessageRequest] = None,
    store: ChatStore = Depends(get_store),
) -> Dict[str, Any]:
    requester_id = request.user_id if request else None
    await store.delete_message(message_id, requester_id=requester_id)
    return {"success": True}


# Users
@router.get("/users", response_model=List[UserSummary])
async def list_users(
    current_user_id: int = Query(..., alias="currentUserId"),
    store: ChatStore = Depends(get_store),
):
    """Every user except the caller"""
    users = await store.list_users(current_user_id)
    return [UserSummary.model_validate(user) for user in users]


@router.get("/users/{user_id}", response_model=UserIdentityResponse)
async def get_user(user_id: int, store: ChatStore = Depends(get_store)):
    user = await store.require_user(user_id)
    return UserIdentityResponse.model_validate(user)


@router.get("/users/{user_id}/profile", response_model=UserSummary)
async def get_user_profile(user_id: int, store: ChatStore = Depends(get_store)):
    user = await store.get_user(user_id)
    if user is None:
        raise UserNotFoundError(user_id)
    return UserSummary.model_validate(user)


@router.patch("/users/{user_id}/profile")
@log_function_call(logger)
async def update_user_profile(
    user_id: int,
    request: UpdateProfileRequest,
    store: ChatStore = Depends(get_store),
) -> Dict[str, Any]:
    """Update profile decorations; fields left out of the body are unchanged"""
    changes = request.model_dump(exclude_unset=True)
    if "avatar_url" in changes:
        changes["avatar_url"] = InputValidator.validate_media_url(changes["avatar_url"])
    if "status" in changes:
        changes["status"] = InputValidator.validate_profile_text(
            "status", changes["status"], InputValidator.MAX_STATUS_LENGTH
        )
    if "status_emoji" in changes:
        changes["status_emoji"] = InputValidator.validate_profile_text(
            "statusEmoji",
            changes["status_emoji"],
            InputValidator.MAX_STATUS_EMOJI_LENGTH,
        )
    if changes.get("has_story") is None:
        changes.pop("has_story", None)

    await store.update_profile(user_id, changes)
    return {"success": True}


@router.patch("/users/{user_id}/presence")
async def update_user_presence(
    user_id: int,
    request: UpdatePresenceRequest,
    store: ChatStore = Depends(get_store),
) -> Dict[str, Any]:
    await store.update_last_seen(user_id, request.last_seen)
    return {"success": True}


# Chats
@router.get("/chats", response_model=List[ChatSummary])
async def get_chats(
    user_id: int = Query(..., alias="userId"),
    store: ChatStore = Depends(get_store),
):
    """Latest visible message per counterpart, most recent first"""
    return await store.get_user_chats(user_id)


# Media
@router.post("/upload", response_model=UploadResponse)
@log_function_call(logger)
async def upload_media(
    request: Request,
    x_file_name: Optional[str] = Header(None, alias="X-File-Name"),
    media: MediaStorage = Depends(get_media_storage),
):
    """Stream the raw request body to the blob store"""
    url = await media.save_stream(request.stream(), original_name=x_file_name)
    return UploadResponse(url=url)


# Presence
@router.get("/presence")
async def get_presence(
    registry: ConnectionRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    return registry.get_connection_stats()


# WebSocket Endpoint
@websocket_router.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    """Real-time channel; the client identifies itself with an `auth` envelope"""
    hub = websocket.app.state.hub
    await websocket.accept()

    connection = ClientConnection(websocket)
    client = websocket.client.host if websocket.client else None
    logger.info(
        f"WebSocket accepted: {connection.connection_id}",
        extra={"connection_id": connection.connection_id, "client_ip": client},
    )
    await SocketSession(hub, connection).run()
