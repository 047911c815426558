"""Help-request state machine and the race-free volunteer assignment."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Hashable, Iterator, List, Mapping, Optional, Protocol

from .conversations import ConversationGuard
from .errors import Conflict, Forbidden, NotFound, ValidationError
from .models import HelpRequest, Identity, Status, User
from .router import MessageRouter, status_topic

logger = logging.getLogger("crowdaid.lifecycle")

MAX_DESCRIPTION_LENGTH = 1000

ALLOWED_TRANSITIONS: Mapping[Status, FrozenSet[Status]] = {
    # PENDING -> ACCEPTED only happens through accept().
    Status.PENDING: frozenset({Status.CANCELLED}),
    Status.ACCEPTED: frozenset({Status.IN_PROGRESS, Status.CANCELLED}),
    Status.IN_PROGRESS: frozenset({Status.COMPLETED, Status.CANCELLED}),
    Status.COMPLETED: frozenset(),
    Status.CANCELLED: frozenset(),
}


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLock:
    """One mutex per key, created on demand and discarded once idle."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _LockEntry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _LockEntry()
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class LifecycleStore(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...

    def create_help_request(
        self,
        requester_id: int,
        *,
        description: str,
        address: str,
        latitude: float,
        longitude: float,
    ) -> HelpRequest: ...

    def get_help_request(self, request_id: int) -> Optional[HelpRequest]: ...

    def claim_help_request(self, request_id: int, volunteer_id: int) -> bool: ...

    def update_help_request_status(self, request_id: int, expected: Status, new_status: Status) -> bool: ...

    def delete_help_request(self, request_id: int) -> bool: ...

    def find_by_participant(self, user_id: int) -> List[HelpRequest]: ...

    def delete_messages_for_request(self, help_request_id: int) -> int: ...


def help_request_to_payload(help_request: HelpRequest) -> Dict[str, Any]:
    return {
        "id": help_request.id,
        "description": help_request.description,
        "requester_id": help_request.requester_id,
        "volunteer_id": help_request.volunteer_id,
        "address": help_request.address,
        "latitude": help_request.latitude,
        "longitude": help_request.longitude,
        "status": help_request.status.value,
        "created_at": help_request.created_at.isoformat(),
        "updated_at": help_request.updated_at.isoformat(),
    }


def _require_text(value: object, name: str, *, max_length: Optional[int] = None) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{name} must not be blank")
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{name} must be {max_length} characters or fewer")
    return text


def _require_coordinate(value: object, name: str, limit: float) -> float:
    if value is None:
        raise ValidationError(f"{name} is required")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number") from None
    if not -limit <= number <= limit:
        raise ValidationError(f"{name} must be between -{limit:g} and {limit:g}")
    return number


class LifecycleManager:
    """Owns creation, acceptance, status changes and removal of help requests."""

    def __init__(
        self,
        store: LifecycleStore,
        *,
        router: MessageRouter | None = None,
        guard: ConversationGuard | None = None,
    ) -> None:
        self._store = store
        self._router = router
        self._guard = guard or ConversationGuard()
        self._locks = KeyedLock()

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    def _load(self, request_id: int) -> HelpRequest:
        help_request = self._store.get_help_request(request_id)
        if help_request is None:
            raise NotFound.for_entity("HelpRequest", request_id)
        return help_request

    def create(
        self,
        requester: Identity,
        *,
        description: object,
        address: object,
        latitude: object,
        longitude: object,
    ) -> HelpRequest:
        text = _require_text(description, "Description", max_length=MAX_DESCRIPTION_LENGTH)
        location = _require_text(address, "Address")
        lat = _require_coordinate(latitude, "Latitude", 90.0)
        lng = _require_coordinate(longitude, "Longitude", 180.0)

        if self._store.get_user(requester.user_id) is None:
            raise NotFound.for_entity("User", requester.user_id)

        created = self._store.create_help_request(
            requester.user_id,
            description=text,
            address=location,
            latitude=lat,
            longitude=lng,
        )
        logger.info("Help request %s created by user %s", created.id, requester.user_id)
        return created

    def accept(self, request_id: int, volunteer: Identity) -> HelpRequest:
        """Assign ``volunteer`` to a pending request; exactly one concurrent caller wins."""

        if not volunteer.is_volunteer:
            raise Forbidden("Only volunteers can accept help requests")

        with self._locks.hold(request_id):
            current = self._load(request_id)
            if current.requester_id == volunteer.user_id:
                raise Forbidden("You cannot accept your own help request")
            if current.status is not Status.PENDING:
                logger.info(
                    "User %s lost the race for help request %s (status %s)",
                    volunteer.user_id,
                    request_id,
                    current.status.value,
                )
                raise Conflict("This help request is no longer available")
            if not self._store.claim_help_request(request_id, volunteer.user_id):
                raise Conflict("This help request is no longer available")
            accepted = self._load(request_id)

        logger.info("Help request %s accepted by volunteer %s", request_id, volunteer.user_id)
        if self._router is not None:
            payload = help_request_to_payload(accepted)
            self._router.deliver_to_user(accepted.requester_id, payload, event="accepted")
            self._router.broadcast_to_topic(status_topic(accepted.id), payload, event="status")
        return accepted

    def transition(self, request_id: int, caller: Identity, new_status: object) -> HelpRequest:
        with self._locks.hold(request_id):
            current = self._load(request_id)
            if not self._guard.is_participant(current, caller.user_id):
                raise Forbidden("You don't have permission to update this help request")

            target = Status.parse(new_status)
            if current.status.is_terminal:
                raise ValidationError(
                    f"Help request is {current.status.value} and can no longer change status",
                )
            if target is Status.ACCEPTED and current.status is Status.PENDING:
                raise ValidationError("Pending help requests are accepted through the accept operation")
            if target not in ALLOWED_TRANSITIONS[current.status]:
                raise ValidationError(
                    f"Cannot change status from {current.status.value} to {target.value}",
                )
            if not self._store.update_help_request_status(request_id, current.status, target):
                raise Conflict("Help request was modified concurrently")
            updated = self._load(request_id)

        logger.info(
            "Help request %s moved from %s to %s by user %s",
            request_id,
            current.status.value,
            target.value,
            caller.user_id,
        )
        if self._router is not None:
            self._router.broadcast_to_topic(
                status_topic(updated.id),
                help_request_to_payload(updated),
                event="status",
            )
        return updated

    def remove(self, request_id: int, caller: Identity) -> None:
        with self._locks.hold(request_id):
            current = self._load(request_id)
            if current.requester_id != caller.user_id:
                raise Forbidden("You don't have permission to delete this help request")
            removed_messages = self._store.delete_messages_for_request(request_id)
            self._store.delete_help_request(request_id)
        logger.info(
            "Help request %s deleted by user %s (%s messages removed)",
            request_id,
            caller.user_id,
            removed_messages,
        )

    def get(self, request_id: int, caller: Identity) -> HelpRequest:
        current = self._load(request_id)
        if not self._guard.is_participant(current, caller.user_id):
            raise Forbidden("You don't have permission to view this help request")
        return current

    def list_for_user(self, user_id: int) -> List[HelpRequest]:
        return self._store.find_by_participant(user_id)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "KeyedLock",
    "LifecycleManager",
    "LifecycleStore",
    "help_request_to_payload",
    "MAX_DESCRIPTION_LENGTH",
]
