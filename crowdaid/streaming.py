"""Multiplexed WebSocket channel carrying chat, typing, read and status events."""
from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import secrets
from contextlib import suppress
from typing import Any, Dict, Optional

import anyio
from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .conversations import ConversationService, message_to_payload
from .errors import CrowdAidError, Forbidden, ValidationError
from .lifecycle import LifecycleManager, help_request_to_payload
from .models import Identity
from .router import (
    ConnectionState,
    Frame,
    MessageRouter,
    build_frame,
    parse_destination,
    parse_topic,
)

logger = logging.getLogger("crowdaid.streaming")

_OVERFLOW_CLOSE_CODE = 1013
_CROSS_THREAD_SEND_TIMEOUT = 1.0


def error_frame(exc: CrowdAidError) -> Frame:
    return {"type": "error", "code": exc.code, "message": exc.message}


class WebSocketSession:
    """Router-facing handle for one connection.

    Frames are queued and written by a single writer task, so everything
    submitted to a session reaches the client in submission order.
    """

    def __init__(
        self,
        websocket: WebSocket,
        *,
        loop: asyncio.AbstractEventLoop,
        queue_size: int = 256,
    ) -> None:
        self.session_id = secrets.token_hex(8)
        self.user_id: Optional[int] = None
        self.identity: Optional[Identity] = None
        self.state = ConnectionState.CONNECTING
        self._websocket = websocket
        self._loop = loop
        self._queue: asyncio.Queue[Optional[Frame]] = asyncio.Queue(maxsize=queue_size)

    def authenticate(self, identity: Identity) -> None:
        self.identity = identity
        self.user_id = identity.user_id
        self.state = ConnectionState.AUTHENTICATED

    def send(self, frame: Frame) -> bool:
        """Queue ``frame``; ``True`` only once it actually sits in the outbound queue.

        Callers on other threads wait briefly for the session's loop to
        enqueue the frame, so an overflow is reported to them as well.
        """

        if self.state is ConnectionState.DISCONNECTED:
            return False
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            return self._enqueue(frame)
        enqueue = self._enqueue_async(frame)
        try:
            future = asyncio.run_coroutine_threadsafe(enqueue, self._loop)
        except RuntimeError:
            enqueue.close()
            return False
        try:
            return future.result(timeout=_CROSS_THREAD_SEND_TIMEOUT)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.warning("Timed out queueing a frame for session %s", self.session_id)
            return False

    async def _enqueue_async(self, frame: Frame) -> bool:
        return self._enqueue(frame)

    def _enqueue(self, frame: Optional[Frame]) -> bool:
        if frame is not None and self.state is ConnectionState.DISCONNECTED:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(
                "Outbound queue full for session %s of user %s; closing",
                self.session_id,
                self.user_id,
            )
            self.state = ConnectionState.DISCONNECTED
            self._loop.create_task(self._close(_OVERFLOW_CLOSE_CODE))
            return False
        return True

    async def _close(self, code: int) -> None:
        with suppress(Exception):
            if self._websocket.application_state != WebSocketState.DISCONNECTED:
                await self._websocket.close(code=code)

    def close(self) -> None:
        if self.state is ConnectionState.DISCONNECTED:
            return
        self.state = ConnectionState.DISCONNECTED
        with suppress(asyncio.QueueFull):
            self._queue.put_nowait(None)

    async def pump_outbound(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            await self._websocket.send_json(frame)


class ChannelHandler:
    """Interprets client frames for one session."""

    def __init__(
        self,
        session: WebSocketSession,
        *,
        router: MessageRouter,
        lifecycle: LifecycleManager,
        conversations: ConversationService,
    ) -> None:
        self._session = session
        self._router = router
        self._lifecycle = lifecycle
        self._conversations = conversations

    @property
    def identity(self) -> Identity:
        return self._session.identity

    def handle_text(self, text: str) -> bool:
        """Process one frame; return ``False`` when the client asked to close."""

        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            self._session.send(error_frame(ValidationError("Frames must be JSON objects")))
            return True
        if not isinstance(payload, dict):
            self._session.send(error_frame(ValidationError("Frames must be JSON objects")))
            return True

        frame_type = payload.get("type")
        if frame_type == "close":
            return False

        try:
            if frame_type == "subscribe":
                self._subscribe(payload.get("topic"))
            elif frame_type == "unsubscribe":
                topic = parse_topic(payload.get("topic"))
                self._router.unsubscribe(self._session, topic.name)
                self._session.send({"type": "status", "status": "unsubscribed", "topic": topic.name})
            elif frame_type == "send":
                body = payload.get("body")
                self._dispatch(payload.get("destination"), body if isinstance(body, dict) else {})
            else:
                raise ValidationError(f"Unsupported frame type '{frame_type}'")
        except CrowdAidError as exc:
            self._session.send(error_frame(exc))
        return True

    def _subscribe(self, raw_topic: object) -> None:
        topic = parse_topic(raw_topic)
        if topic.kind == "chat":
            self._lifecycle.get(topic.entity_id, self.identity)
        elif topic.kind == "queue" and topic.entity_id != self.identity.user_id:
            raise Forbidden("You can only subscribe to your own message queue")
        self._router.subscribe(self._session, topic.name)
        self._session.send({"type": "status", "status": "subscribed", "topic": topic.name})

    def _dispatch(self, raw_destination: object, body: Dict[str, Any]) -> None:
        destination = parse_destination(raw_destination)
        request_id = destination.request_id

        if destination.action == "chat.send":
            sent = self._conversations.send(request_id, self.identity, body.get("content"))
            self._session.send(
                {
                    "type": "status",
                    "status": "sent",
                    "message": message_to_payload(sent.message),
                    "delivered": sent.delivered,
                }
            )
        elif destination.action == "chat.typing":
            self._conversations.typing(request_id, self.identity)
        elif destination.action == "chat.read":
            self._conversations.mark_as_read(request_id, self.identity)
        elif destination.action == "request.status":
            updated = self._lifecycle.transition(request_id, self.identity, body.get("status"))
            self._session.send(
                {"type": "status", "status": "updated", "help_request": help_request_to_payload(updated)}
            )
        elif destination.action == "user.online":
            self._session.send(
                build_frame(
                    "queue.online",
                    "presence",
                    {"user_id": self.identity.user_id, "status": "ONLINE"},
                )
            )


async def serve_session(
    session: WebSocketSession,
    *,
    router: MessageRouter,
    lifecycle: LifecycleManager,
    conversations: ConversationService,
) -> None:
    """Run an accepted, authenticated connection until either side closes it."""

    identity = session.identity
    if identity is None or session.state is not ConnectionState.AUTHENTICATED:
        raise RuntimeError("Session must be authenticated before it is served")
    handler = ChannelHandler(
        session,
        router=router,
        lifecycle=lifecycle,
        conversations=conversations,
    )
    cancel_exc = anyio.get_cancelled_exc_class()

    session.send(
        {
            "type": "status",
            "status": "connected",
            "user_id": identity.user_id,
            "session_id": session.session_id,
        }
    )
    session.state = ConnectionState.CONNECTED
    router.register_session(identity.user_id, session)

    async def pump_outbound(task_group) -> None:
        try:
            await session.pump_outbound()
        except (WebSocketDisconnect, cancel_exc):
            pass
        except Exception:
            logger.exception("Failed writing to session %s", session.session_id)
        finally:
            task_group.cancel_scope.cancel()

    async def pump_inbound(task_group) -> None:
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                text = message.get("text")
                if text is None:
                    continue
                if not handler.handle_text(text):
                    break
        except (WebSocketDisconnect, cancel_exc):
            pass
        except Exception:
            logger.exception("Failed handling frame for session %s", session.session_id)
        finally:
            task_group.cancel_scope.cancel()

    try:
        async with anyio.create_task_group() as task_group:
            task_group.start_soon(pump_outbound, task_group)
            task_group.start_soon(pump_inbound, task_group)
    finally:
        session.close()
        router.drop_session(session)
        with suppress(Exception):
            if websocket.application_state != WebSocketState.DISCONNECTED:
                await websocket.close()


__all__ = [
    "ChannelHandler",
    "WebSocketSession",
    "error_frame",
    "serve_session",
]
