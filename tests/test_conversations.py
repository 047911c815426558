from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from crowdaid.conversations import MAX_MESSAGE_LENGTH, ConversationGuard, ConversationService
from crowdaid.database import Database
from crowdaid.errors import Forbidden, NotFound, ValidationError
from crowdaid.lifecycle import LifecycleManager
from crowdaid.models import HelpRequest, Identity, Role, Status
from crowdaid.router import MessageRouter, chat_topic, user_queue


class RecordingSession:
    def __init__(self, session_id: str, user_id: int) -> None:
        self.session_id = session_id
        self.user_id = user_id
        self.frames = []

    def send(self, frame) -> bool:
        self.frames.append(frame)
        return True


def _request(requester_id: int = 1, volunteer_id=None) -> HelpRequest:
    now = datetime.now(timezone.utc)
    return HelpRequest(
        id=7,
        description="Need help",
        requester_id=requester_id,
        address="Somewhere",
        latitude=0.0,
        longitude=0.0,
        status=Status.PENDING if volunteer_id is None else Status.ACCEPTED,
        created_at=now,
        updated_at=now,
        volunteer_id=volunteer_id,
    )


def test_guard_without_volunteer_only_admits_requester() -> None:
    help_request = _request(requester_id=1)

    assert ConversationGuard.is_participant(help_request, 1)
    assert not ConversationGuard.is_participant(help_request, 2)
    assert ConversationGuard.other_participant(help_request, 1) is None
    assert ConversationGuard.other_participant(help_request, 2) is None


def test_guard_with_volunteer_pairs_both_sides() -> None:
    help_request = _request(requester_id=1, volunteer_id=2)

    assert ConversationGuard.is_participant(help_request, 1)
    assert ConversationGuard.is_participant(help_request, 2)
    assert not ConversationGuard.is_participant(help_request, 3)
    assert ConversationGuard.other_participant(help_request, 1) == 2
    assert ConversationGuard.other_participant(help_request, 2) == 1
    assert ConversationGuard.other_participant(help_request, 3) is None


def test_other_participant_is_involutive() -> None:
    help_request = _request(requester_id=10, volunteer_id=20)

    for user_id in (10, 20):
        other = ConversationGuard.other_participant(help_request, user_id)
        assert ConversationGuard.other_participant(help_request, other) == user_id


def test_require_participant_raises_forbidden() -> None:
    with pytest.raises(Forbidden):
        ConversationGuard().require_participant(_request(requester_id=1, volunteer_id=2), 3)


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "crowdaid.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def router() -> MessageRouter:
    return MessageRouter()


@pytest.fixture()
def service(database: Database, router: MessageRouter) -> ConversationService:
    return ConversationService(database, router)


@pytest.fixture()
def participants(database: Database):
    requester, _ = database.create_user("Requester", "requester@example.com")
    volunteer, _ = database.create_user("Volunteer", "volunteer@example.com", roles=(Role.VOLUNTEER,))
    help_request = database.create_help_request(
        requester.id,
        description="Need help",
        address="Somewhere",
        latitude=1.0,
        longitude=2.0,
    )
    assert database.claim_help_request(help_request.id, volunteer.id)
    return help_request.id, requester.identity(), volunteer.identity()


def test_send_persists_then_delivers_to_counterpart(
    service: ConversationService,
    router: MessageRouter,
    database: Database,
    participants,
) -> None:
    request_id, requester, volunteer = participants
    session = RecordingSession("vol-1", volunteer.user_id)
    router.register_session(volunteer.user_id, session)

    sent = service.send(request_id, requester, "  On my way?  ")

    assert sent.delivered is True
    assert sent.recipient_id == volunteer.user_id
    assert sent.message.content == "On my way?"
    assert [message.id for message in database.list_messages(request_id)] == [sent.message.id]
    assert len(session.frames) == 1
    frame = session.frames[0]
    assert frame["destination"] == user_queue(volunteer.user_id)
    assert frame["event"] == "chat"
    assert frame["body"]["id"] == sent.message.id


def test_send_to_offline_counterpart_is_still_persisted(
    service: ConversationService,
    database: Database,
    participants,
) -> None:
    request_id, requester, _ = participants

    sent = service.send(request_id, requester, "hello")

    assert sent.delivered is False
    assert database.list_messages(request_id)[0].content == "hello"


def test_send_before_acceptance_has_no_recipient(
    service: ConversationService,
    database: Database,
) -> None:
    requester, _ = database.create_user("Solo", "solo@example.com")
    help_request = database.create_help_request(
        requester.id,
        description="Need help",
        address="Somewhere",
        latitude=1.0,
        longitude=2.0,
    )

    sent = service.send(help_request.id, requester.identity(), "anyone?")

    assert sent.recipient_id is None
    assert sent.delivered is False


class StaleRequestStore:
    """Serves a help request as it was read before it got removed."""

    def __init__(self, database: Database, stale: HelpRequest) -> None:
        self._database = database
        self._stale = stale

    def get_help_request(self, request_id: int):
        return self._stale if request_id == self._stale.id else self._database.get_help_request(request_id)

    def __getattr__(self, name: str):
        return getattr(self._database, name)


def test_send_racing_removal_fails_with_not_found(
    router: MessageRouter,
    database: Database,
    participants,
) -> None:
    request_id, requester, _ = participants
    stale = database.get_help_request(request_id)
    LifecycleManager(database, router=router).remove(request_id, requester)
    service = ConversationService(StaleRequestStore(database, stale), router)

    with pytest.raises(NotFound):
        service.send(request_id, requester, "still there?")

    assert database.list_messages(request_id) == []


def test_send_rejects_outsiders_and_bad_content(
    service: ConversationService,
    database: Database,
    participants,
) -> None:
    request_id, requester, _ = participants
    stranger, _ = database.create_user("Stranger", "stranger@example.com")

    with pytest.raises(Forbidden):
        service.send(request_id, stranger.identity(), "hi")
    with pytest.raises(ValidationError):
        service.send(request_id, requester, "   ")
    with pytest.raises(ValidationError):
        service.send(request_id, requester, "x" * (MAX_MESSAGE_LENGTH + 1))
    with pytest.raises(NotFound):
        service.send(9999, requester, "hi")

    assert database.list_messages(request_id) == []


def test_chat_topic_subscribers_receive_messages(
    service: ConversationService,
    router: MessageRouter,
    participants,
) -> None:
    request_id, requester, _ = participants
    watcher = RecordingSession("watch", requester.user_id)
    router.subscribe(watcher, chat_topic(request_id))

    service.send(request_id, requester, "hello")
    service.typing(request_id, requester)

    assert [frame["event"] for frame in watcher.frames] == ["chat", "typing"]


def test_unread_count_and_mark_as_read(
    service: ConversationService,
    router: MessageRouter,
    participants,
) -> None:
    request_id, requester, volunteer = participants
    requester_session = RecordingSession("req", requester.user_id)
    router.register_session(requester.user_id, requester_session)

    first = service.send(request_id, requester, "one").message
    second = service.send(request_id, requester, "two").message
    service.send(request_id, volunteer, "reply")

    assert service.unread_count(request_id, volunteer) == 2
    assert service.unread_count(request_id, requester) == 1

    assert service.mark_as_read(request_id, volunteer) == [first.id, second.id]
    assert service.unread_count(request_id, volunteer) == 0
    assert service.mark_as_read(request_id, volunteer) == []

    read_frames = [frame for frame in requester_session.frames if frame["event"] == "read"]
    assert len(read_frames) == 1
    assert read_frames[0]["body"]["message_ids"] == [first.id, second.id]


def test_list_messages_is_ordered_and_marks_read(
    service: ConversationService,
    participants,
) -> None:
    request_id, requester, volunteer = participants
    for text in ("a", "b", "c"):
        service.send(request_id, requester, text)

    messages = service.list_messages(request_id, volunteer)

    assert [message.content for message in messages] == ["a", "b", "c"]
    assert all(message.read for message in messages)
    assert service.unread_count(request_id, volunteer) == 0


def test_list_messages_requires_participation(
    service: ConversationService,
    database: Database,
    participants,
) -> None:
    request_id, _, _ = participants
    stranger, _ = database.create_user("Stranger", "stranger@example.com")

    with pytest.raises(Forbidden):
        service.list_messages(request_id, Identity(user_id=stranger.id))
