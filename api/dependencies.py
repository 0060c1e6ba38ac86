from fastapi import Request

from core.auth import AuthService
from services.chat_hub import ChatHub
from services.chat_store import ChatStore
from services.connection_registry import ConnectionRegistry
from services.media_storage import MediaStorage
from services.relay import MessageRelay


def get_hub(request: Request) -> ChatHub:
    return request.app.state.hub


def get_store(request: Request) -> ChatStore:
    return get_hub(request).store


def get_registry(request: Request) -> ConnectionRegistry:
    return get_hub(request).registry


def get_relay(request: Request) -> MessageRelay:
    return get_hub(request).relay


def get_auth_service(request: Request) -> AuthService:
    return get_hub(request).auth_service


def get_media_storage(request: Request) -> MediaStorage:
    return get_hub(request).media_storage
