"""SQLite-backed persistence for users, help requests and messages."""
from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple

from .errors import InternalError, NotFound, ValidationError
from .models import HelpRequest, Message, Role, Status, User

_API_KEY_PREFIX = "cak_"
_API_KEY_LOOKUP_LENGTH = 12
_API_KEY_ROUNDS = 100_000


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _generate_api_key() -> str:
    return f"{_API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


def _hash_api_key(api_key: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", api_key.encode("utf-8"), salt, _API_KEY_ROUNDS)


def _serialize_roles(roles: Iterable[Role]) -> str:
    return ",".join(sorted({Role(role).value for role in roles}))


def _parse_roles(value: str) -> frozenset[Role]:
    return frozenset(Role(item) for item in value.split(",") if item)


class Database:
    """Simple wrapper around SQLite acting as the durable store."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise InternalError(f"Database operation failed: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT UNIQUE,
                    phone_number TEXT,
                    address TEXT,
                    latitude REAL,
                    longitude REAL,
                    available INTEGER NOT NULL DEFAULT 0,
                    roles TEXT NOT NULL,
                    api_key_prefix TEXT NOT NULL,
                    api_key_hash TEXT NOT NULL,
                    api_key_salt TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS help_requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    description TEXT NOT NULL,
                    requester_id INTEGER NOT NULL REFERENCES users(id),
                    volunteer_id INTEGER REFERENCES users(id),
                    address TEXT NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    help_request_id INTEGER NOT NULL REFERENCES help_requests(id),
                    sender_id INTEGER NOT NULL REFERENCES users(id),
                    content TEXT NOT NULL,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_users_api_key_prefix ON users(api_key_prefix);
                CREATE INDEX IF NOT EXISTS idx_help_requests_status_location
                    ON help_requests(status, latitude, longitude);
                CREATE INDEX IF NOT EXISTS idx_help_requests_requester ON help_requests(requester_id);
                CREATE INDEX IF NOT EXISTS idx_help_requests_volunteer ON help_requests(volunteer_id);
                CREATE INDEX IF NOT EXISTS idx_messages_help_request ON messages(help_request_id);
                """
            )

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(
        self,
        name: str,
        email: Optional[str],
        *,
        roles: Iterable[Role] = (Role.USER,),
        phone_number: Optional[str] = None,
        address: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Tuple[User, str]:
        """Create a new user and return it along with the generated API key."""

        normalized_name = name.strip()
        if not normalized_name:
            raise ValidationError("Name must not be empty")

        role_set = set(roles) | {Role.USER}
        created_at = _current_timestamp()
        api_key = _generate_api_key()
        salt = secrets.token_bytes(16)
        hash_bytes = _hash_api_key(api_key, salt)
        prefix = api_key[:_API_KEY_LOOKUP_LENGTH]
        normalized_email = email.strip().lower() if email else None

        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO users (
                        name,
                        email,
                        phone_number,
                        address,
                        latitude,
                        longitude,
                        available,
                        roles,
                        api_key_prefix,
                        api_key_hash,
                        api_key_salt,
                        created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        normalized_name,
                        normalized_email,
                        phone_number,
                        address,
                        latitude,
                        longitude,
                        1 if Role.VOLUNTEER in role_set else 0,
                        _serialize_roles(role_set),
                        prefix,
                        base64.b64encode(hash_bytes).decode("ascii"),
                        base64.b64encode(salt).decode("ascii"),
                        _serialize_datetime(created_at),
                    ),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise ValidationError("A user with that email already exists") from exc

        user = self.get_user(int(user_id))
        if user is None:  # pragma: no cover - row was just written
            raise InternalError("Failed to read back created user")
        return user, api_key

    def get_user(self, user_id: int) -> Optional[User]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_api_key(self, api_key: str) -> Optional[User]:
        if not api_key.startswith(_API_KEY_PREFIX):
            return None
        prefix = api_key[:_API_KEY_LOOKUP_LENGTH]
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE api_key_prefix = ?",
                (prefix,),
            ).fetchall()

        for row in rows:
            salt = base64.b64decode(row["api_key_salt"])
            expected_hash = base64.b64decode(row["api_key_hash"])
            calculated = _hash_api_key(api_key, salt)
            if hmac.compare_digest(expected_hash, calculated):
                return self._row_to_user(row)
        return None

    def list_users(self) -> List[User]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_profile(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        phone_number: Optional[str] = None,
        address: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Optional[User]:
        """Update the supplied profile fields, leaving ``None`` values untouched."""

        updates = {
            "name": name,
            "phone_number": phone_number,
            "address": address,
            "latitude": latitude,
            "longitude": longitude,
        }
        assignments = {key: value for key, value in updates.items() if value is not None}
        if "name" in assignments and not str(assignments["name"]).strip():
            raise ValidationError("Name must not be empty")

        if assignments:
            columns = ", ".join(f"{column} = ?" for column in assignments)
            with self._transaction() as conn:
                conn.execute(
                    f"UPDATE users SET {columns} WHERE id = ?",
                    (*assignments.values(), user_id),
                )
        return self.get_user(user_id)

    def set_availability(self, user_id: int, available: bool) -> Optional[User]:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE users SET available = ? WHERE id = ?",
                (1 if available else 0, user_id),
            )
        return self.get_user(user_id)

    # ------------------------------------------------------------------
    # Help requests
    # ------------------------------------------------------------------
    def create_help_request(
        self,
        requester_id: int,
        *,
        description: str,
        address: str,
        latitude: float,
        longitude: float,
    ) -> HelpRequest:
        now = _serialize_datetime(_current_timestamp())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO help_requests (
                    description, requester_id, volunteer_id, address,
                    latitude, longitude, status, created_at, updated_at
                )
                VALUES (?, ?, NULL, ?, ?, ?, ?, ?, ?)
                """,
                (
                    description,
                    requester_id,
                    address,
                    latitude,
                    longitude,
                    Status.PENDING.value,
                    now,
                    now,
                ),
            )
            request_id = cursor.lastrowid

        created = self.get_help_request(int(request_id))
        if created is None:  # pragma: no cover - row was just written
            raise InternalError("Failed to read back created help request")
        return created

    def get_help_request(self, request_id: int) -> Optional[HelpRequest]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM help_requests WHERE id = ?",
                (request_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_help_request(row)

    def claim_help_request(self, request_id: int, volunteer_id: int) -> bool:
        """Assign a volunteer if, and only if, the request is still pending."""

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE help_requests
                   SET volunteer_id = ?, status = ?, updated_at = ?
                 WHERE id = ? AND status = ? AND volunteer_id IS NULL
                """,
                (
                    volunteer_id,
                    Status.ACCEPTED.value,
                    _serialize_datetime(_current_timestamp()),
                    request_id,
                    Status.PENDING.value,
                ),
            )
            return cursor.rowcount == 1

    def update_help_request_status(
        self,
        request_id: int,
        expected: Status,
        new_status: Status,
    ) -> bool:
        """Compare-and-set the status column."""

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE help_requests
                   SET status = ?, updated_at = ?
                 WHERE id = ? AND status = ?
                """,
                (
                    new_status.value,
                    _serialize_datetime(_current_timestamp()),
                    request_id,
                    expected.value,
                ),
            )
            return cursor.rowcount == 1

    def delete_help_request(self, request_id: int) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM help_requests WHERE id = ?", (request_id,))
            return cursor.rowcount > 0

    def find_pending_in_box(
        self,
        min_lat: float,
        max_lat: float,
        min_lng: float,
        max_lng: float,
    ) -> List[HelpRequest]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM help_requests
                 WHERE status = ?
                   AND latitude BETWEEN ? AND ?
                   AND longitude BETWEEN ? AND ?
                """,
                (Status.PENDING.value, min_lat, max_lat, min_lng, max_lng),
            ).fetchall()
        return [self._row_to_help_request(row) for row in rows]

    def find_by_participant(self, user_id: int) -> List[HelpRequest]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM help_requests
                 WHERE requester_id = ? OR volunteer_id = ?
                 ORDER BY created_at DESC, id DESC
                """,
                (user_id, user_id),
            ).fetchall()
        return [self._row_to_help_request(row) for row in rows]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def create_message(self, help_request_id: int, sender_id: int, content: str) -> Message:
        created_at = _current_timestamp()
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO messages (help_request_id, sender_id, content, is_read, created_at)
                    VALUES (?, ?, ?, 0, ?)
                    """,
                    (help_request_id, sender_id, content, _serialize_datetime(created_at)),
                )
                message_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            # The request was removed after the caller loaded it.
            raise NotFound.for_entity("HelpRequest", help_request_id) from exc
        return Message(
            id=int(message_id),
            help_request_id=help_request_id,
            sender_id=sender_id,
            content=content,
            read=False,
            created_at=created_at,
        )

    def list_messages(self, help_request_id: int) -> List[Message]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE help_request_id = ? ORDER BY created_at, id",
                (help_request_id,),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def delete_messages_for_request(self, help_request_id: int) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM messages WHERE help_request_id = ?",
                (help_request_id,),
            )
            return cursor.rowcount

    def count_unread(self, help_request_id: int, reader_id: int) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM messages
                 WHERE help_request_id = ? AND sender_id != ? AND is_read = 0
                """,
                (help_request_id, reader_id),
            ).fetchone()
        return int(row["total"])

    def mark_read(self, help_request_id: int, reader_id: int) -> List[int]:
        """Mark the other participant's unread messages as read and return their ids."""

        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT id FROM messages
                 WHERE help_request_id = ? AND sender_id != ? AND is_read = 0
                 ORDER BY id
                """,
                (help_request_id, reader_id),
            ).fetchall()
            message_ids = [int(row["id"]) for row in rows]
            if message_ids:
                placeholders = ", ".join("?" for _ in message_ids)
                conn.execute(
                    f"UPDATE messages SET is_read = 1 WHERE id IN ({placeholders})",
                    message_ids,
                )
        return message_ids

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            name=str(row["name"]),
            email=row["email"],
            roles=_parse_roles(str(row["roles"])),
            created_at=_parse_datetime(str(row["created_at"])),
            phone_number=row["phone_number"],
            address=row["address"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            available=bool(row["available"]),
            api_key_prefix=str(row["api_key_prefix"]),
        )

    @staticmethod
    def _row_to_help_request(row: sqlite3.Row) -> HelpRequest:
        volunteer_id = row["volunteer_id"]
        return HelpRequest(
            id=int(row["id"]),
            description=str(row["description"]),
            requester_id=int(row["requester_id"]),
            volunteer_id=int(volunteer_id) if volunteer_id is not None else None,
            address=str(row["address"]),
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            status=Status(str(row["status"])),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=int(row["id"]),
            help_request_id=int(row["help_request_id"]),
            sender_id=int(row["sender_id"]),
            content=str(row["content"]),
            read=bool(row["is_read"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )


__all__ = ["Database"]
