"""Participant checks and the chat operations layered on top of them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from .errors import Forbidden, NotFound, ValidationError
from .models import HelpRequest, Identity, Message
from .router import MessageRouter, chat_topic

MAX_MESSAGE_LENGTH = 1000


class ConversationGuard:
    """Decides who may take part in the conversation attached to a help request."""

    @staticmethod
    def is_participant(help_request: HelpRequest, user_id: int) -> bool:
        if user_id == help_request.requester_id:
            return True
        return help_request.volunteer_id is not None and user_id == help_request.volunteer_id

    @staticmethod
    def other_participant(help_request: HelpRequest, caller_id: int) -> Optional[int]:
        """Return the counterpart of ``caller_id``, or ``None`` while no volunteer is assigned."""

        if caller_id == help_request.requester_id:
            return help_request.volunteer_id
        if help_request.volunteer_id is not None and caller_id == help_request.volunteer_id:
            return help_request.requester_id
        return None

    def require_participant(self, help_request: HelpRequest, user_id: int) -> None:
        if not self.is_participant(help_request, user_id):
            raise Forbidden("You are not part of this help request")


class ConversationStore(Protocol):
    def get_help_request(self, request_id: int) -> Optional[HelpRequest]: ...

    def create_message(self, help_request_id: int, sender_id: int, content: str) -> Message: ...

    def list_messages(self, help_request_id: int) -> List[Message]: ...

    def count_unread(self, help_request_id: int, reader_id: int) -> int: ...

    def mark_read(self, help_request_id: int, reader_id: int) -> List[int]: ...


def message_to_payload(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "help_request_id": message.help_request_id,
        "sender_id": message.sender_id,
        "content": message.content,
        "read": message.read,
        "created_at": message.created_at.isoformat(),
    }


@dataclass(frozen=True)
class SentMessage:
    message: Message
    recipient_id: Optional[int]
    delivered: bool


def _normalise_content(content: object) -> str:
    text = str(content or "").strip()
    if not text:
        raise ValidationError("Message content must not be empty")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message content must be {MAX_MESSAGE_LENGTH} characters or fewer")
    return text


class ConversationService:
    """Persists chat messages and notifies the other participant."""

    def __init__(
        self,
        store: ConversationStore,
        router: MessageRouter,
        *,
        guard: ConversationGuard | None = None,
    ) -> None:
        self._store = store
        self._router = router
        self._guard = guard or ConversationGuard()

    def _authorised_request(self, help_request_id: int, caller: Identity) -> HelpRequest:
        help_request = self._store.get_help_request(help_request_id)
        if help_request is None:
            raise NotFound.for_entity("HelpRequest", help_request_id)
        self._guard.require_participant(help_request, caller.user_id)
        return help_request

    def send(self, help_request_id: int, sender: Identity, content: object) -> SentMessage:
        help_request = self._authorised_request(help_request_id, sender)
        text = _normalise_content(content)

        # The durable write must succeed before anything is pushed.
        message = self._store.create_message(help_request.id, sender.user_id, text)
        payload = message_to_payload(message)

        recipient_id = self._guard.other_participant(help_request, sender.user_id)
        delivered = False
        if recipient_id is not None:
            delivered = self._router.deliver_to_user(recipient_id, payload, event="chat")
        self._router.broadcast_to_topic(chat_topic(help_request.id), payload, event="chat")
        return SentMessage(message=message, recipient_id=recipient_id, delivered=delivered)

    def list_messages(self, help_request_id: int, caller: Identity) -> List[Message]:
        """Return the conversation oldest first, marking the caller's incoming messages read."""

        self.mark_as_read(help_request_id, caller)
        return self._store.list_messages(help_request_id)

    def unread_count(self, help_request_id: int, caller: Identity) -> int:
        self._authorised_request(help_request_id, caller)
        return self._store.count_unread(help_request_id, caller.user_id)

    def mark_as_read(self, help_request_id: int, caller: Identity) -> List[int]:
        help_request = self._authorised_request(help_request_id, caller)
        message_ids = self._store.mark_read(help_request.id, caller.user_id)
        if message_ids:
            sender_id = self._guard.other_participant(help_request, caller.user_id)
            if sender_id is not None:
                self._router.deliver_to_user(
                    sender_id,
                    {
                        "help_request_id": help_request.id,
                        "reader_id": caller.user_id,
                        "message_ids": message_ids,
                    },
                    event="read",
                )
        return message_ids

    def typing(self, help_request_id: int, caller: Identity) -> None:
        help_request = self._authorised_request(help_request_id, caller)
        self._router.broadcast_to_topic(
            chat_topic(help_request.id),
            {"help_request_id": help_request.id, "user_id": caller.user_id},
            event="typing",
        )


__all__ = [
    "ConversationGuard",
    "ConversationService",
    "ConversationStore",
    "MAX_MESSAGE_LENGTH",
    "SentMessage",
    "message_to_payload",
]
