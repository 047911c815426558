import asyncio
import json
import threading
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect, WebSocketState

from crowdaid.api import create_app
from crowdaid.config import Settings
from crowdaid.database import Database
from crowdaid.models import Identity, Role
from crowdaid.router import ConnectionState, MessageRouter, chat_topic, presence_topic, status_topic, user_queue
from crowdaid.security import APIKeyAuth
from crowdaid.streaming import WebSocketSession, serve_session


def _auth_header(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"}


@pytest.fixture()
def setup(tmp_path: Path):
    database = Database(tmp_path / "crowdaid.sqlite3")
    database.initialize()

    requester, requester_key = database.create_user("Alice", "alice@example.com")
    volunteer, volunteer_key = database.create_user("Victor", "victor@example.com", roles=(Role.VOLUNTEER,))
    help_request = database.create_help_request(
        requester.id,
        description="Need a ride to the pharmacy",
        address="1 Main St",
        latitude=40.0,
        longitude=-74.0,
    )
    assert database.claim_help_request(help_request.id, volunteer.id)

    app = create_app(
        database=database,
        settings=Settings(database_path=database.path),
        auth=APIKeyAuth(database),
    )
    return {
        "app": app,
        "database": database,
        "request_id": help_request.id,
        "requester": requester,
        "requester_key": requester_key,
        "volunteer": volunteer,
        "volunteer_key": volunteer_key,
    }


def _send(websocket, destination: str, body=None) -> None:
    websocket.send_text(json.dumps({"type": "send", "destination": destination, "body": body or {}}))


def _expect_connected(websocket, user_id: int) -> None:
    message = websocket.receive_json()
    assert message["type"] == "status"
    assert message["status"] == "connected"
    assert message["user_id"] == user_id


def test_websocket_requires_authentication(setup):
    with TestClient(setup["app"]) as client:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/ws"):
                pass
        assert excinfo.value.code == 4401

        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/ws", headers=_auth_header("cak_bogus_credential")):
                pass
        assert excinfo.value.code == 4401

        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/ws", headers={"Authorization": "Token abc"}):
                pass
        assert excinfo.value.code == 4401

        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/ws?access_token=cak_wrong"):
                pass
        assert excinfo.value.code == 4401


def test_rest_messages_reach_connected_volunteer_once_and_in_order(setup):
    request_id = setup["request_id"]
    volunteer_id = setup["volunteer"].id

    with TestClient(setup["app"]) as client:
        with client.websocket_connect(f"/ws?access_token={setup['volunteer_key']}") as websocket:
            _expect_connected(websocket, volunteer_id)

            for content in ("first", "second"):
                response = client.post(
                    "/messages",
                    json={"help_request_id": request_id, "content": content},
                    headers=_auth_header(setup["requester_key"]),
                )
                assert response.status_code == 201, response.text
                assert response.json()["delivered"] is True

            received = [websocket.receive_json(), websocket.receive_json()]
            assert [frame["destination"] for frame in received] == [user_queue(volunteer_id)] * 2
            assert [frame["event"] for frame in received] == ["chat", "chat"]
            assert [frame["body"]["content"] for frame in received] == ["first", "second"]

            # The presence reply must be the very next frame, so no duplicate chat frame is queued.
            _send(websocket, "user.online")
            reply = websocket.receive_json()
            assert reply["destination"] == "queue.online"
            assert reply["body"] == {"user_id": volunteer_id, "status": "ONLINE"}

            websocket.send_text(json.dumps({"type": "close"}))

    assert [message.content for message in setup["database"].list_messages(request_id)] == ["first", "second"]


def test_chat_between_two_live_sessions(setup):
    request_id = setup["request_id"]
    requester_id = setup["requester"].id
    volunteer_id = setup["volunteer"].id

    with TestClient(setup["app"]) as client:
        with client.websocket_connect("/ws", headers=_auth_header(setup["requester_key"])) as requester_ws:
            _expect_connected(requester_ws, requester_id)
            with client.websocket_connect("/ws", headers=_auth_header(setup["volunteer_key"])) as volunteer_ws:
                _expect_connected(volunteer_ws, volunteer_id)

                _send(requester_ws, f"chat.{request_id}.send", {"content": "Are you close?"})
                ack = requester_ws.receive_json()
                assert ack["status"] == "sent"
                assert ack["delivered"] is True
                assert ack["message"]["content"] == "Are you close?"

                incoming = volunteer_ws.receive_json()
                assert incoming["event"] == "chat"
                assert incoming["body"]["sender_id"] == requester_id

                _send(volunteer_ws, f"chat.{request_id}.read")
                read_receipt = requester_ws.receive_json()
                assert read_receipt["event"] == "read"
                assert read_receipt["body"]["message_ids"] == [ack["message"]["id"]]


def test_status_updates_and_presence_over_websocket(setup):
    request_id = setup["request_id"]
    requester_id = setup["requester"].id
    volunteer_id = setup["volunteer"].id

    with TestClient(setup["app"]) as client:
        with client.websocket_connect("/ws", headers=_auth_header(setup["requester_key"])) as requester_ws:
            _expect_connected(requester_ws, requester_id)

            for topic in (status_topic(request_id), presence_topic(volunteer_id), chat_topic(request_id)):
                requester_ws.send_text(json.dumps({"type": "subscribe", "topic": topic}))
                confirmation = requester_ws.receive_json()
                assert confirmation == {"type": "status", "status": "subscribed", "topic": topic}

            with client.websocket_connect("/ws", headers=_auth_header(setup["volunteer_key"])) as volunteer_ws:
                _expect_connected(volunteer_ws, volunteer_id)

                online = requester_ws.receive_json()
                assert online["destination"] == presence_topic(volunteer_id)
                assert online["event"] == "online"

                _send(volunteer_ws, f"chat.{request_id}.typing")
                typing = requester_ws.receive_json()
                assert typing["event"] == "typing"
                assert typing["body"]["user_id"] == volunteer_id

                _send(volunteer_ws, f"request.{request_id}.status", {"status": "IN_PROGRESS"})
                updated = volunteer_ws.receive_json()
                assert updated["status"] == "updated"
                assert updated["help_request"]["status"] == "IN_PROGRESS"

                broadcast = requester_ws.receive_json()
                assert broadcast["destination"] == status_topic(request_id)
                assert broadcast["body"]["status"] == "IN_PROGRESS"

                _send(volunteer_ws, f"request.{request_id}.status", {"status": "PENDING"})
                error = volunteer_ws.receive_json()
                assert error["type"] == "error"
                assert error["code"] == "validation_error"

                volunteer_ws.send_text(json.dumps({"type": "close"}))

            offline = requester_ws.receive_json()
            assert offline["event"] == "offline"
            assert offline["body"] == {"user_id": volunteer_id, "online": False}


def test_invalid_frames_produce_error_frames(setup):
    request_id = setup["request_id"]
    database = setup["database"]
    stranger, stranger_key = database.create_user("Sam", "sam@example.com")

    with TestClient(setup["app"]) as client:
        with client.websocket_connect("/ws", headers=_auth_header(stranger_key)) as websocket:
            _expect_connected(websocket, stranger.id)

            websocket.send_text("not json")
            assert websocket.receive_json()["code"] == "validation_error"

            websocket.send_text(json.dumps({"type": "dance"}))
            assert websocket.receive_json()["code"] == "validation_error"

            websocket.send_text(json.dumps({"type": "subscribe", "topic": chat_topic(request_id)}))
            assert websocket.receive_json()["code"] == "forbidden"

            websocket.send_text(json.dumps({"type": "subscribe", "topic": user_queue(setup["volunteer"].id)}))
            assert websocket.receive_json()["code"] == "forbidden"

            _send(websocket, f"chat.{request_id}.send", {"content": "let me in"})
            assert websocket.receive_json()["code"] == "forbidden"

            _send(websocket, "chat.999.send", {"content": "hello?"})
            assert websocket.receive_json()["code"] == "not_found"

            _send(websocket, "nowhere")
            assert websocket.receive_json()["code"] == "validation_error"

            websocket.send_text(json.dumps({"type": "close"}))
            with pytest.raises(WebSocketDisconnect):
                websocket.receive_json()

    assert database.list_messages(request_id) == []


class RecordingWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.close_codes: list[int] = []
        self.closed = threading.Event()

    async def close(self, code: int = 1000) -> None:
        self.close_codes.append(code)
        self.application_state = WebSocketState.DISCONNECTED
        self.closed.set()


def test_session_moves_from_connecting_to_authenticated():
    loop = asyncio.new_event_loop()
    try:
        session = WebSocketSession(RecordingWebSocket(), loop=loop)
        assert session.state is ConnectionState.CONNECTING
        assert session.identity is None

        session.authenticate(Identity(user_id=7))
        assert session.state is ConnectionState.AUTHENTICATED
        assert session.user_id == 7
    finally:
        loop.close()


def test_serving_an_unauthenticated_session_is_refused():
    async def run() -> None:
        session = WebSocketSession(RecordingWebSocket(), loop=asyncio.get_running_loop())
        await serve_session(session, router=MessageRouter(), lifecycle=None, conversations=None)

    with pytest.raises(RuntimeError):
        asyncio.run(run())


def test_cross_thread_send_reports_queue_overflow():
    loop = asyncio.new_event_loop()
    worker = threading.Thread(target=loop.run_forever, daemon=True)
    worker.start()
    websocket = RecordingWebSocket()
    try:
        session = WebSocketSession(websocket, loop=loop, queue_size=1)
        session.authenticate(Identity(user_id=1))

        assert session.send({"type": "message", "n": 1}) is True
        assert session.send({"type": "message", "n": 2}) is False
        assert session.send({"type": "message", "n": 3}) is False

        assert websocket.closed.wait(timeout=2.0)
        assert websocket.close_codes == [1013]
        assert session.state is ConnectionState.DISCONNECTED
    finally:
        loop.call_soon_threadsafe(loop.stop)
        worker.join(timeout=2.0)
        loop.close()
