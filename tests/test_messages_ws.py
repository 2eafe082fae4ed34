import asyncio
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.database import Base, get_db, get_session_factory
from app.main import app
from tests.conftest import test_async_session_maker, test_engine
from tests.utils import auth_headers


async def _create_tables():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def _drop_tables():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def ws_client():
    """Synchronous client; every request gets its own database session."""
    asyncio.run(_create_tables())

    async def override_get_db():
        async with test_async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: test_async_session_maker

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    asyncio.run(_drop_tables())


def _register(client: TestClient, email: str, name: str, role: str = "client") -> tuple[str, str]:
    user_id = client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": "password123", "name": name, "role": role},
    ).json()["id"]
    token = client.post(
        "/api/v1/auth/login",
        data={"username": email, "password": "password123"},
    ).json()["access_token"]
    return token, user_id


def test_socket_rejects_invalid_token(ws_client: TestClient):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with ws_client.websocket_connect("/api/v1/messages/ws?token=not-a-token"):
            pass

    assert exc_info.value.code == 4401


def test_socket_rejects_missing_token(ws_client: TestClient):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with ws_client.websocket_connect("/api/v1/messages/ws"):
            pass

    assert exc_info.value.code == 4401


def test_socket_pushes_initial_state(ws_client: TestClient):
    token, user_id = _register(ws_client, "coach@example.com", "Coach", "trainer")

    with ws_client.websocket_connect(f"/api/v1/messages/ws?token={token}") as ws:
        state = ws.receive_json()

    assert state["type"] == "state"
    assert state["viewer_id"] == user_id
    assert state["conversations"] == []
    assert state["unread_total"] == 0
    assert state["initial_load_failed"] is False
    assert state["realtime_connected"] is True
    assert state["thread"]["status"] == "idle"


def test_incoming_message_pushes_new_state(ws_client: TestClient):
    coach_token, coach_id = _register(ws_client, "coach@example.com", "Coach", "trainer")
    bob_token, bob_id = _register(ws_client, "bob@example.com", "Bob")

    with ws_client.websocket_connect(f"/api/v1/messages/ws?token={coach_token}") as ws:
        ws.receive_json()

        response = ws_client.post(
            f"/api/v1/messages/{coach_id}",
            json={"content": "Can we move Tuesday's session?"},
            headers=auth_headers(bob_token),
        )
        assert response.status_code == 201

        state = ws.receive_json()

    assert state["unread_total"] == 1
    assert len(state["conversations"]) == 1
    conversation = state["conversations"][0]
    assert conversation["counterparty_id"] == bob_id
    assert conversation["display_name"] == "Bob"
    assert conversation["last_message"] == "Can we move Tuesday's session?"


def test_open_thread_and_send(ws_client: TestClient):
    coach_token, coach_id = _register(ws_client, "coach@example.com", "Coach", "trainer")
    bob_token, bob_id = _register(ws_client, "bob@example.com", "Bob")
    ws_client.post(
        f"/api/v1/messages/{coach_id}",
        json={"content": "hello coach"},
        headers=auth_headers(bob_token),
    )

    with ws_client.websocket_connect(f"/api/v1/messages/ws?token={coach_token}") as ws:
        initial = ws.receive_json()
        assert initial["unread_total"] == 1

        ws.send_json({"type": "open", "counterparty_id": bob_id})
        opened = ws.receive_json()
        assert opened["thread"]["status"] == "ready"
        assert opened["thread"]["counterparty"]["display_name"] == "Bob"
        assert [m["content"] for m in opened["thread"]["messages"]] == ["hello coach"]
        assert opened["unread_total"] == 0

        ws.send_json({"type": "send", "content": "hi Bob"})
        sent = ws.receive_json()

    messages = sent["thread"]["messages"]
    assert [m["content"] for m in messages] == ["hello coach", "hi Bob"]
    assert messages[-1]["status"] == "sent"
    assert messages[-1]["id"] is not None
    assert sent["conversations"][0]["last_message"] == "hi Bob"


def test_blank_send_returns_error_frame(ws_client: TestClient):
    coach_token, _ = _register(ws_client, "coach@example.com", "Coach", "trainer")
    _, bob_id = _register(ws_client, "bob@example.com", "Bob")

    with ws_client.websocket_connect(f"/api/v1/messages/ws?token={coach_token}") as ws:
        ws.receive_json()
        ws.send_json({"type": "open", "counterparty_id": bob_id})
        ws.receive_json()

        ws.send_json({"type": "send", "content": "   "})
        error = ws.receive_json()

    assert error["type"] == "error"
    assert error["code"] == "VALIDATION_REQUIRED_FIELD"
    assert error["field"] == "content"


def test_unknown_command_returns_error_frame(ws_client: TestClient):
    coach_token, _ = _register(ws_client, "coach@example.com", "Coach", "trainer")

    with ws_client.websocket_connect(f"/api/v1/messages/ws?token={coach_token}") as ws:
        ws.receive_json()
        ws.send_json({"type": "shout"})
        error = ws.receive_json()

    assert error["type"] == "error"
    assert error["code"] == "VALIDATION_ERROR"


def test_open_rejects_self_and_unknown_counterparty(ws_client: TestClient):
    coach_token, coach_id = _register(ws_client, "coach@example.com", "Coach", "trainer")

    with ws_client.websocket_connect(f"/api/v1/messages/ws?token={coach_token}") as ws:
        ws.receive_json()

        ws.send_json({"type": "open", "counterparty_id": coach_id})
        self_error = ws.receive_json()

        ws.send_json({"type": "open", "counterparty_id": str(uuid4())})
        unknown_error = ws.receive_json()

        ws.send_json({"type": "send", "content": "hello?"})
        send_error = ws.receive_json()

    assert self_error["type"] == "error"
    assert self_error["code"] == "VALIDATION_ERROR"
    assert self_error["field"] == "counterparty_id"
    assert unknown_error["code"] == "RESOURCE_NOT_FOUND"
    assert send_error["code"] == "VALIDATION_ERROR"
