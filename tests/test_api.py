"""
Tests for the HTTP surface.
The remote platform is mocked at the XanoClient method level; the app runs
its real lifespan with an in-memory local store.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from toschat import config as cfg_mod
from toschat import main
from toschat.backends.base import WriteResult
from toschat.backends.xano import XanoClient

CREDS = {"xano_token": "xt", "workspace_id": "7", "instance_domain": "x.xano.io/"}

VALID = {
    "success": True,
    "user_info": {"instance_domain": "x.xano.io", "workspace_id": 7, "tables_count": 3},
}


@pytest.fixture
def api(monkeypatch):
    monkeypatch.delenv("SESSION_TIMEOUT_MS", raising=False)
    cfg_mod._config = {
        "environment": "development",
        "queue": {"storage": "memory", "interval_seconds": 3600},
        "remote": {"base_url": "https://remote.test/api"},
        "logging": {"level": "WARNING"},
    }
    remote = SimpleNamespace(
        validate_credentials=AsyncMock(return_value=VALID),
        get_conversation=AsyncMock(return_value=WriteResult(ok=True, data={"id": 1, "message_count": 0})),
        get_messages=AsyncMock(return_value=WriteResult(ok=True, data=[])),
        create_conversation=AsyncMock(return_value=WriteResult(ok=True, data={"id": 500})),
        delete_conversation=AsyncMock(return_value=WriteResult(ok=True)),
        write_message=AsyncMock(return_value=WriteResult(ok=True, data={"id": 77})),
        update_conversation=AsyncMock(return_value=WriteResult(ok=True)),
    )
    with patch.multiple(XanoClient, **vars(remote)):
        with TestClient(main.app) as client:
            yield SimpleNamespace(client=client, remote=remote)
    cfg_mod.reset_config()


def _login(api) -> dict:
    resp = api.client.post("/api/session", json=CREDS)
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['session_id']}"}


# ---------------------------------------------------------------------------
# Health / sessions
# ---------------------------------------------------------------------------

def test_health(api):
    resp = api.client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_create_session(api):
    resp = api.client.post("/api/session", json=CREDS)
    data = resp.json()
    assert data["success"] is True
    assert data["session_id"].startswith("tos_")
    assert data["user_info"]["tables_count"] == 3
    api.remote.validate_credentials.assert_awaited_once_with("xt", 7, "x.xano.io")


def test_create_session_missing_fields(api):
    resp = api.client.post("/api/session", json={"xano_token": "xt"})
    assert resp.status_code == 400
    api.remote.validate_credentials.assert_not_awaited()


def test_create_session_bad_workspace_id(api):
    resp = api.client.post("/api/session", json={**CREDS, "workspace_id": "seven"})
    assert resp.status_code == 400


def test_create_session_invalid_credentials(api):
    api.remote.validate_credentials.return_value = {"success": False, "error": "Invalid credentials: HTTP 401"}
    resp = api.client.post("/api/session", json=CREDS)
    assert resp.status_code == 401
    assert resp.json()["error"].startswith("Invalid credentials")


def test_session_required(api):
    resp = api.client.get("/api/session")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Session ID required"}


def test_unknown_session(api):
    resp = api.client.get("/api/session", headers={"Authorization": "Bearer tos_nope"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid or expired session"}


def test_session_id_sources(api):
    sid = _login(api)["Authorization"].split(" ", 1)[1]
    assert api.client.get("/api/session", headers={"Authorization": f"Bearer {sid}"}).status_code == 200
    assert api.client.get("/api/session", headers={"x-session-id": sid}).status_code == 200
    assert api.client.get(f"/api/session?session_id={sid}").status_code == 200


def test_session_summary_hides_token(api):
    headers = _login(api)
    data = api.client.get("/api/session", headers=headers).json()
    assert "xano_token" not in data
    assert data["workspace_id"] == 7


def test_delete_session(api):
    headers = _login(api)
    sid = headers["Authorization"].split(" ", 1)[1]
    assert api.client.delete(f"/api/session/{sid}", headers=headers).json() == {"success": True}
    assert api.client.delete(f"/api/session/{sid}", headers=headers).status_code == 401
    assert api.client.get("/api/session", headers={"x-session-id": sid}).status_code == 401


def test_debug_sessions(api):
    _login(api)
    data = api.client.get("/debug/sessions").json()
    assert data["total_sessions"] == 1
    assert "xano_token" not in data["sessions"][0]


def test_debug_sessions_hidden_in_production(api):
    cfg_mod._config["environment"] = "production"
    assert api.client.get("/debug/sessions").status_code == 404


# ---------------------------------------------------------------------------
# Conversations / messages
# ---------------------------------------------------------------------------

def test_new_conversation(api):
    headers = _login(api)
    data = api.client.post("/api/v1/conversations", headers=headers).json()
    assert data["success"] is True
    assert data["conversation_id"] == 500
    assert len(data["messages"]) == 2


def test_open_conversation(api):
    headers = _login(api)
    api.remote.get_messages.return_value = WriteResult(
        ok=True, data=[{"id": 3, "sender": "assistant", "content": "hello"}]
    )
    resp = api.client.post("/api/v1/conversations/1/open", headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["conversation_id"] == 1
    assert data["messages"][0]["sender"] == "tos"


def test_open_missing_conversation(api):
    headers = _login(api)
    api.remote.get_conversation.return_value = WriteResult(ok=False, status_code=404, error="HTTP 404")
    resp = api.client.post("/api/v1/conversations/9/open", headers=headers)
    assert resp.status_code == 404
    assert resp.json()["conversation_id"] is None
    assert resp.json()["messages"] == []


def test_post_first_user_message_queues_title(api):
    headers = _login(api)
    api.client.post("/api/v1/conversations", headers=headers)

    resp = api.client.post("/api/v1/messages", headers=headers,
                           json={"sender": "user", "content": "please create a users table"})
    assert resp.status_code == 200
    assert resp.json()["message_id"] == 77

    updates = [(u.conversation_id, u.updates) for u in main.message_queue.conversations]
    assert (500, {"title": "A users table"}) in updates
    assert any(conv == 500 and u.get("message_count") == 1 for conv, u in updates)

    transcript = api.client.get("/api/v1/transcript", headers=headers).json()
    assert [m["content"] for m in transcript["messages"]][-1] == "please create a users table"


def test_existing_conversation_keeps_its_title(api):
    headers = _login(api)
    api.client.post("/api/v1/conversations/1/open", headers=headers)
    api.client.post("/api/v1/messages", headers=headers,
                    json={"sender": "user", "content": "add an index on email"})

    updates = [u.updates for u in main.message_queue.conversations]
    assert not any("title" in u for u in updates)


def test_new_login_continues_remote_count(api):
    """A second session restores conversation 1 by id and must not reset its count."""
    api.remote.get_conversation.return_value = WriteResult(ok=True, data={"id": 1, "message_count": 30})
    first = _login(api)
    api.client.post("/api/v1/conversations/1/open", headers=first)

    second = _login(api)
    resp = api.client.post("/api/v1/messages", headers=second,
                           json={"sender": "user", "content": "add an index on email"})
    assert resp.status_code == 200
    api.client.post("/api/v1/queue/flush", headers=second)

    sent = [c.args[1] for c in api.remote.update_conversation.await_args_list]
    assert sent
    assert all("title" not in u for u in sent)
    assert [u["message_count"] for u in sent if "message_count" in u] == [31]


def test_post_message_failure(api):
    headers = _login(api)
    api.client.post("/api/v1/conversations/1/open", headers=headers)
    api.remote.write_message.return_value = WriteResult(ok=False, status_code=401, error="HTTP 401")

    resp = api.client.post("/api/v1/messages", headers=headers, json={"sender": "user", "content": "hi"})
    assert resp.status_code == 502
    transcript = api.client.get("/api/v1/transcript", headers=headers).json()
    assert transcript["messages"] == []


def test_post_message_bad_sender(api):
    headers = _login(api)
    resp = api.client.post("/api/v1/messages", headers=headers, json={"sender": "system", "content": "x"})
    assert resp.status_code == 400


def test_delete_active_conversation(api):
    headers = _login(api)
    api.client.post("/api/v1/conversations/1/open", headers=headers)
    data = api.client.delete("/api/v1/conversations/1", headers=headers).json()
    assert data == {"success": True, "cleared_active": True}
    assert api.client.get("/api/v1/transcript", headers=headers).json()["conversation_id"] is None


def test_delete_conversation_remote_failure(api):
    headers = _login(api)
    api.remote.delete_conversation.return_value = WriteResult(ok=False, status_code=500, error="HTTP 500")
    resp = api.client.delete("/api/v1/conversations/1", headers=headers)
    assert resp.status_code == 502


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

def test_queue_status_and_flush(api):
    headers = _login(api)
    main.message_queue.enqueue_conversation_update(1, {"title": "x"}, "xt")
    status = api.client.get("/api/v1/queue", headers=headers).json()
    assert status["conversations"] == 1
    assert status["is_online"] is True

    report = api.client.post("/api/v1/queue/flush", headers=headers).json()
    assert report["updates_sent"] == 1
    assert api.client.get("/api/v1/queue", headers=headers).json()["conversations"] == 0


def test_queue_online_toggle(api):
    headers = _login(api)
    data = api.client.post("/api/v1/queue/online", headers=headers, json={"online": False}).json()
    assert data["is_online"] is False
    report = api.client.post("/api/v1/queue/flush", headers=headers).json()
    assert report["skipped"] is True


def test_queue_clear_failed(api):
    headers = _login(api)
    assert api.client.delete("/api/v1/queue/failed", headers=headers).json() == {"cleared": 0}


@pytest.mark.parametrize("method,path", [
    ("GET", "/api/v1/queue"),
    ("POST", "/api/v1/queue/flush"),
    ("POST", "/api/v1/queue/online"),
    ("DELETE", "/api/v1/queue/failed"),
    ("DELETE", "/api/session/tos_someone"),
])
def test_queue_and_logout_require_session(api, method, path):
    main.message_queue.enqueue_conversation_update(1, {"title": "x"}, "xt")
    resp = api.client.request(method, path, json={"online": False})
    assert resp.status_code == 401
    assert main.message_queue.online is True
    assert len(main.message_queue.conversations) == 1
    api.remote.update_conversation.assert_not_awaited()


def test_cannot_delete_another_session(api):
    mine = _login(api)
    other = _login(api)["Authorization"].split(" ", 1)[1]
    resp = api.client.delete(f"/api/session/{other}", headers=mine)
    assert resp.status_code == 403
    assert api.client.get("/api/session", headers={"x-session-id": other}).status_code == 200
