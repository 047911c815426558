"""Presence tracking and routing of chat and status events to live sessions."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set

from .errors import ValidationError

logger = logging.getLogger("crowdaid.router")

Frame = Dict[str, Any]


class ConnectionState(str, Enum):
    """Lifecycle of a streaming connection."""

    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class SessionHandle(Protocol):
    """A live connection the router can push frames to without blocking."""

    session_id: str
    user_id: int

    def send(self, frame: Frame) -> bool: ...


def chat_topic(request_id: int) -> str:
    return f"topic.chat.{request_id}"


def status_topic(request_id: int) -> str:
    return f"topic.request.{request_id}.status"


def user_queue(user_id: int) -> str:
    return f"queue.messages.{user_id}"


def presence_topic(user_id: int) -> str:
    return f"topic.user.{user_id}.presence"


def build_frame(destination: str, event: str, body: Any) -> Frame:
    return {"type": "message", "destination": destination, "event": event, "body": body}


@dataclass(frozen=True)
class Destination:
    """Parsed client-side destination such as ``chat.12.send``."""

    action: str
    request_id: Optional[int] = None


@dataclass(frozen=True)
class Topic:
    """Parsed server-side topic such as ``topic.chat.12``."""

    kind: str
    entity_id: int
    name: str


_DESTINATION_PATTERNS = (
    (re.compile(r"^chat\.(\d+)\.send$"), "chat.send"),
    (re.compile(r"^chat\.(\d+)\.typing$"), "chat.typing"),
    (re.compile(r"^chat\.(\d+)\.read$"), "chat.read"),
    (re.compile(r"^request\.(\d+)\.status$"), "request.status"),
)

_TOPIC_PATTERNS = (
    (re.compile(r"^topic\.chat\.(\d+)$"), "chat"),
    (re.compile(r"^topic\.request\.(\d+)\.status$"), "status"),
    (re.compile(r"^topic\.user\.(\d+)\.presence$"), "presence"),
    (re.compile(r"^queue\.messages\.(\d+)$"), "queue"),
)


def parse_destination(value: object) -> Destination:
    text = str(value or "").strip()
    if text == "user.online":
        return Destination(action="user.online")
    for pattern, action in _DESTINATION_PATTERNS:
        match = pattern.fullmatch(text)
        if match:
            return Destination(action=action, request_id=int(match.group(1)))
    raise ValidationError(f"Unknown destination '{text}'")


def parse_topic(value: object) -> Topic:
    text = str(value or "").strip()
    for pattern, kind in _TOPIC_PATTERNS:
        match = pattern.fullmatch(text)
        if match:
            return Topic(kind=kind, entity_id=int(match.group(1)), name=text)
    raise ValidationError(f"Unknown topic '{text}'")


class PresenceTracker:
    """Maps user ids to their live session handles.

    The tracker never owns the handles; the connection boundary registers a
    handle when the channel is established and unregisters it when the
    channel closes.
    """

    def __init__(self) -> None:
        self._sessions: Dict[int, Dict[str, SessionHandle]] = {}
        self._lock = threading.Lock()

    def register(self, user_id: int, handle: SessionHandle) -> bool:
        """Record ``handle``; return ``True`` when it is the user's first session."""

        with self._lock:
            sessions = self._sessions.setdefault(user_id, {})
            first = not sessions
            sessions[handle.session_id] = handle
            return first

    def unregister(self, user_id: int, handle: SessionHandle) -> bool:
        """Forget ``handle``; return ``True`` when the user has no sessions left."""

        with self._lock:
            sessions = self._sessions.get(user_id)
            if not sessions or sessions.pop(handle.session_id, None) is None:
                return False
            if sessions:
                return False
            del self._sessions[user_id]
            return True

    def sessions_for(self, user_id: int) -> List[SessionHandle]:
        with self._lock:
            return list(self._sessions.get(user_id, {}).values())

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._sessions.get(user_id))

    def online_users(self) -> Set[int]:
        with self._lock:
            return {user_id for user_id, sessions in self._sessions.items() if sessions}


class MessageRouter:
    """Delivers frames to users and topic subscribers.

    Locks are only held while the maps are read or mutated; frames are
    handed to the sessions after the lock has been released.
    """

    def __init__(self, presence: PresenceTracker | None = None) -> None:
        self._presence = presence or PresenceTracker()
        self._subscriptions: Dict[str, Dict[str, SessionHandle]] = {}
        self._session_topics: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    @property
    def presence(self) -> PresenceTracker:
        return self._presence

    def register_session(self, user_id: int, handle: SessionHandle) -> None:
        first = self._presence.register(user_id, handle)
        logger.info("Session %s registered for user %s", handle.session_id, user_id)
        if first:
            self.broadcast_to_topic(
                presence_topic(user_id),
                {"user_id": user_id, "online": True},
                event="online",
            )

    def unregister_session(self, user_id: int, handle: SessionHandle) -> None:
        last = self._presence.unregister(user_id, handle)
        logger.info("Session %s unregistered for user %s", handle.session_id, user_id)
        if last:
            logger.info("User %s is now offline", user_id)
            self.broadcast_to_topic(
                presence_topic(user_id),
                {"user_id": user_id, "online": False},
                event="offline",
            )

    def drop_session(self, handle: SessionHandle) -> None:
        """Remove every trace of a closed connection."""

        with self._lock:
            topics = self._session_topics.pop(handle.session_id, set())
            for topic in topics:
                subscribers = self._subscriptions.get(topic)
                if subscribers is None:
                    continue
                subscribers.pop(handle.session_id, None)
                if not subscribers:
                    del self._subscriptions[topic]
        self.unregister_session(handle.user_id, handle)

    def subscribe(self, handle: SessionHandle, topic: str) -> None:
        with self._lock:
            self._subscriptions.setdefault(topic, {})[handle.session_id] = handle
            self._session_topics.setdefault(handle.session_id, set()).add(topic)

    def unsubscribe(self, handle: SessionHandle, topic: str) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(topic)
            if subscribers is not None:
                subscribers.pop(handle.session_id, None)
                if not subscribers:
                    del self._subscriptions[topic]
            topics = self._session_topics.get(handle.session_id)
            if topics is not None:
                topics.discard(topic)

    def subscribers(self, topic: str) -> List[SessionHandle]:
        with self._lock:
            return list(self._subscriptions.get(topic, {}).values())

    def is_online(self, user_id: int) -> bool:
        return self._presence.is_online(user_id)

    def deliver_to_user(self, user_id: int, payload: Any, *, event: str = "message") -> bool:
        """Push ``payload`` to every live session of ``user_id``.

        Returns ``False`` when no session accepted the frame; the persisted
        record is then the only copy the recipient will see.
        """

        frame = build_frame(user_queue(user_id), event, payload)
        delivered = False
        for handle in self._presence.sessions_for(user_id):
            if handle.send(frame):
                delivered = True
        if not delivered:
            logger.debug("User %s is offline; %s event not pushed", user_id, event)
        return delivered

    def broadcast_to_topic(self, topic: str, payload: Any, *, event: str = "message") -> int:
        """Fan ``payload`` out to the topic's subscribers and return how many accepted it."""

        frame = build_frame(topic, event, payload)
        return sum(1 for handle in self.subscribers(topic) if handle.send(frame))


__all__ = [
    "ConnectionState",
    "Destination",
    "Frame",
    "MessageRouter",
    "PresenceTracker",
    "SessionHandle",
    "Topic",
    "build_frame",
    "chat_topic",
    "parse_destination",
    "parse_topic",
    "presence_topic",
    "status_topic",
    "user_queue",
]
