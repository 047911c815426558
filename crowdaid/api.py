"""FastAPI application exposing help requests, chat and the streaming channel."""
from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import Settings, load_settings
from .conversations import ConversationService
from .database import Database
from .errors import CrowdAidError, Forbidden, NotFound, Unauthorized
from .lifecycle import LifecycleManager
from .models import HelpRequest, Identity, Message, NearbyRequest, User
from .proximity import ProximityMatcher
from .router import MessageRouter
from .security import APIKeyAuth
from .streaming import WebSocketSession, serve_session

logger = logging.getLogger("crowdaid.api")

_WEBSOCKET_UNAUTHORIZED = 4401


class UserResponse(BaseModel):
    id: int
    name: str
    email: Optional[str]
    phone_number: Optional[str]
    address: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    available: bool
    roles: List[str]
    created_at: datetime


class UserProfileResponse(BaseModel):
    id: int
    name: str
    volunteer: bool
    available: bool


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=255)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class AvailabilityResponse(BaseModel):
    available: bool


class HelpRequestCreate(BaseModel):
    description: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class HelpRequestResponse(BaseModel):
    id: int
    description: str
    requester_id: int
    volunteer_id: Optional[int]
    address: str
    latitude: float
    longitude: float
    status: str
    created_at: datetime
    updated_at: datetime
    distance_km: Optional[float] = None


class MessageCreate(BaseModel):
    help_request_id: int
    content: Optional[str] = None


class MessageResponse(BaseModel):
    id: int
    help_request_id: int
    sender_id: int
    content: str
    read: bool
    created_at: datetime


class MessageSendResponse(MessageResponse):
    delivered: bool


class UnreadCountResponse(BaseModel):
    help_request_id: int
    count: int


class MarkReadResponse(BaseModel):
    help_request_id: int
    marked: int


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        phone_number=user.phone_number,
        address=user.address,
        latitude=user.latitude,
        longitude=user.longitude,
        available=user.available,
        roles=sorted(role.value for role in user.roles),
        created_at=user.created_at,
    )


def help_request_to_response(
    help_request: HelpRequest,
    *,
    distance_km: Optional[float] = None,
) -> HelpRequestResponse:
    return HelpRequestResponse(
        id=help_request.id,
        description=help_request.description,
        requester_id=help_request.requester_id,
        volunteer_id=help_request.volunteer_id,
        address=help_request.address,
        latitude=help_request.latitude,
        longitude=help_request.longitude,
        status=help_request.status.value,
        created_at=help_request.created_at,
        updated_at=help_request.updated_at,
        distance_km=distance_km,
    )


def nearby_to_response(match: NearbyRequest) -> HelpRequestResponse:
    return help_request_to_response(match.request, distance_km=round(match.distance_km, 3))


def message_to_response(message: Message) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        help_request_id=message.help_request_id,
        sender_id=message.sender_id,
        content=message.content,
        read=message.read,
        created_at=message.created_at,
    )


def _trusted_proxy_hosts() -> list[str] | str:
    raw = os.getenv("CROWDAID_TRUSTED_PROXIES")
    if not raw:
        return "127.0.0.1"
    hosts = [item.strip() for item in raw.split(",") if item.strip()]
    return hosts or "127.0.0.1"


def create_app(
    *,
    database: Database | None = None,
    settings: Settings | None = None,
    router: MessageRouter | None = None,
    auth: APIKeyAuth | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application and wire the core services."""

    settings = settings or load_settings()
    if database is None:
        database = Database(settings.database_path)
    database.initialize()

    if auth is None:
        auth = APIKeyAuth(database)

    message_router = router or MessageRouter()
    lifecycle = LifecycleManager(database, router=message_router)
    conversations = ConversationService(database, message_router)
    proximity = ProximityMatcher(
        database,
        default_radius_km=settings.default_radius_km,
        max_radius_km=settings.max_radius_km,
    )

    app = FastAPI(
        title="CrowdAid Coordination API",
        description="Matches people requesting help with nearby volunteers",
        version="1.0.0",
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=_trusted_proxy_hosts())
    app.state.settings = settings
    app.state.database = database
    app.state.router = message_router
    app.state.lifecycle = lifecycle
    app.state.conversations = conversations
    app.state.proximity = proximity

    def get_db() -> Database:
        return database

    async def get_identity(request: Request) -> Identity:
        return await auth(request)

    def get_current_user(
        identity: Identity = Depends(get_identity),
        db: Database = Depends(get_db),
    ) -> User:
        user = db.get_user(identity.user_id)
        if user is None:
            raise Unauthorized("Account no longer exists")
        return user

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    users = APIRouter(prefix="/users", tags=["users"])

    @users.get("/me", response_model=UserResponse)
    async def read_current_user(current_user: User = Depends(get_current_user)) -> UserResponse:
        return user_to_response(current_user)

    @users.put("/me", response_model=UserResponse)
    async def update_current_user(
        payload: UpdateProfileRequest,
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> UserResponse:
        updated = db.update_user_profile(current_user.id, **payload.model_dump(exclude_unset=True))
        if updated is None:
            raise NotFound.for_entity("User", current_user.id)
        return user_to_response(updated)

    @users.put("/me/availability", response_model=AvailabilityResponse)
    async def update_availability(
        available: bool,
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> AvailabilityResponse:
        if not current_user.is_volunteer:
            raise Forbidden("Only volunteers can change their availability")
        updated = db.set_availability(current_user.id, available)
        if updated is None:
            raise NotFound.for_entity("User", current_user.id)
        logger.info("Volunteer %s availability set to %s", updated.id, updated.available)
        return AvailabilityResponse(available=updated.available)

    @users.get("/{user_id}", response_model=UserProfileResponse)
    async def read_user_profile(
        user_id: int,
        _: Identity = Depends(get_identity),
        db: Database = Depends(get_db),
    ) -> UserProfileResponse:
        user = db.get_user(user_id)
        if user is None:
            raise NotFound.for_entity("User", user_id)
        return UserProfileResponse(
            id=user.id,
            name=user.name,
            volunteer=user.is_volunteer,
            available=user.available,
        )

    help_requests = APIRouter(prefix="/help-requests", tags=["help-requests"])

    @help_requests.post("", response_model=HelpRequestResponse, status_code=status.HTTP_201_CREATED)
    async def create_help_request(
        payload: HelpRequestCreate,
        identity: Identity = Depends(get_identity),
    ) -> HelpRequestResponse:
        created = lifecycle.create(
            identity,
            description=payload.description,
            address=payload.address,
            latitude=payload.latitude,
            longitude=payload.longitude,
        )
        return help_request_to_response(created)

    @help_requests.get("/my-requests", response_model=List[HelpRequestResponse])
    async def list_my_requests(identity: Identity = Depends(get_identity)) -> List[HelpRequestResponse]:
        return [help_request_to_response(item) for item in lifecycle.list_for_user(identity.user_id)]

    @help_requests.get("/nearby", response_model=List[HelpRequestResponse])
    async def list_nearby_requests(
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        radius: Optional[float] = None,
        identity: Identity = Depends(get_identity),
    ) -> List[HelpRequestResponse]:
        if not identity.is_volunteer:
            raise Forbidden("Only volunteers can search for nearby help requests")
        return [nearby_to_response(match) for match in proximity.find_nearby(lat, lng, radius)]

    @help_requests.get("/{request_id}", response_model=HelpRequestResponse)
    async def read_help_request(
        request_id: int,
        identity: Identity = Depends(get_identity),
    ) -> HelpRequestResponse:
        return help_request_to_response(lifecycle.get(request_id, identity))

    @help_requests.post("/{request_id}/accept", response_model=HelpRequestResponse)
    async def accept_help_request(
        request_id: int,
        identity: Identity = Depends(get_identity),
    ) -> HelpRequestResponse:
        return help_request_to_response(lifecycle.accept(request_id, identity))

    @help_requests.put("/{request_id}/status", response_model=HelpRequestResponse)
    async def update_help_request_status(
        request_id: int,
        status: Optional[str] = None,
        identity: Identity = Depends(get_identity),
    ) -> HelpRequestResponse:
        return help_request_to_response(lifecycle.transition(request_id, identity, status))

    @help_requests.delete("/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_help_request(
        request_id: int,
        identity: Identity = Depends(get_identity),
    ) -> Response:
        lifecycle.remove(request_id, identity)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    messages = APIRouter(prefix="/messages", tags=["messages"])

    @messages.post("", response_model=MessageSendResponse, status_code=status.HTTP_201_CREATED)
    async def send_message(
        payload: MessageCreate,
        identity: Identity = Depends(get_identity),
    ) -> MessageSendResponse:
        sent = conversations.send(payload.help_request_id, identity, payload.content)
        return MessageSendResponse(
            **message_to_response(sent.message).model_dump(),
            delivered=sent.delivered,
        )

    @messages.get("/{help_request_id}", response_model=List[MessageResponse])
    async def list_messages(
        help_request_id: int,
        identity: Identity = Depends(get_identity),
    ) -> List[MessageResponse]:
        return [message_to_response(item) for item in conversations.list_messages(help_request_id, identity)]

    @messages.get("/{help_request_id}/unread-count", response_model=UnreadCountResponse)
    async def unread_count(
        help_request_id: int,
        identity: Identity = Depends(get_identity),
    ) -> UnreadCountResponse:
        count = conversations.unread_count(help_request_id, identity)
        return UnreadCountResponse(help_request_id=help_request_id, count=count)

    @messages.post("/{help_request_id}/mark-as-read", response_model=MarkReadResponse)
    async def mark_as_read(
        help_request_id: int,
        identity: Identity = Depends(get_identity),
    ) -> MarkReadResponse:
        marked = conversations.mark_as_read(help_request_id, identity)
        return MarkReadResponse(help_request_id=help_request_id, marked=len(marked))

    app.include_router(users)
    app.include_router(help_requests)
    app.include_router(messages)

    @app.websocket("/ws")
    async def stream(websocket: WebSocket):
        session = WebSocketSession(
            websocket,
            loop=asyncio.get_running_loop(),
            queue_size=settings.session_queue_size,
        )
        try:
            session.authenticate(auth.authenticate_websocket(websocket))
        except Unauthorized as exc:
            logger.warning("Rejected streaming handshake: %s", exc.message)
            await websocket.close(code=_WEBSOCKET_UNAUTHORIZED)
            return

        await websocket.accept()
        await serve_session(
            session,
            router=message_router,
            lifecycle=lifecycle,
            conversations=conversations,
        )

    @app.exception_handler(CrowdAidError)
    async def handle_crowdaid_error(_: object, exc: CrowdAidError):
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(_: object, exc: RequestValidationError):
        errors = [
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Validation failed: " + ", ".join(errors), "code": "validation_error"},
        )

    return app


__all__ = ["create_app"]
