"""Domain models shared by the store, the core services and the API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional

from .errors import ValidationError


class Role(str, Enum):
    """Capabilities attached to an account."""

    USER = "USER"
    VOLUNTEER = "VOLUNTEER"


class Status(str, Enum):
    """Lifecycle state of a help request."""

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (Status.COMPLETED, Status.CANCELLED)

    @classmethod
    def parse(cls, value: object) -> "Status":
        """Resolve a status literal case-insensitively."""

        if isinstance(value, Status):
            return value
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            raise ValidationError(f"Invalid status: {value}") from None


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as returned by the identity resolver."""

    user_id: int
    roles: FrozenSet[Role] = field(default_factory=lambda: frozenset({Role.USER}))

    @property
    def is_volunteer(self) -> bool:
        return Role.VOLUNTEER in self.roles


@dataclass(frozen=True)
class User:
    """Represents an account stored in the coordination database."""

    id: int
    name: str
    email: Optional[str]
    roles: FrozenSet[Role]
    created_at: datetime
    phone_number: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    available: bool = False
    api_key_prefix: str = ""

    @property
    def is_volunteer(self) -> bool:
        return Role.VOLUNTEER in self.roles

    def identity(self) -> Identity:
        return Identity(user_id=self.id, roles=self.roles)


@dataclass(frozen=True)
class HelpRequest:
    """A request for assistance raised by a requester."""

    id: int
    description: str
    requester_id: int
    address: str
    latitude: float
    longitude: float
    status: Status
    created_at: datetime
    updated_at: datetime
    volunteer_id: Optional[int] = None


@dataclass(frozen=True)
class NearbyRequest:
    """A pending help request together with its distance from the search origin."""

    request: HelpRequest
    distance_km: float


@dataclass(frozen=True)
class Message:
    """A chat message exchanged between the participants of a help request."""

    id: int
    help_request_id: int
    sender_id: int
    content: str
    read: bool
    created_at: datetime


__all__ = [
    "HelpRequest",
    "Identity",
    "Message",
    "NearbyRequest",
    "Role",
    "Status",
    "User",
]
