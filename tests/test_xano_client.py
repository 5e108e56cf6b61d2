"""
Tests for the Xano HTTP client.
httpx.AsyncClient is patched; no network.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from toschat.backends.xano import XanoClient
from toschat.storage.models import MessageData, ToolData

BASE = "https://api.example.test/api:chat"
META = "https://api.example.test/api:meta"


def _resp(status: int = 200, payload=None):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = payload if payload is not None else {}
    r.content = b"x" if payload is not None else b""
    r.text = json.dumps(payload) if payload is not None else ""
    return r


def _patched_client(response=None, side_effect=None):
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.request.side_effect = side_effect
    else:
        mock_client.request.return_value = response
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


@pytest.fixture
def client():
    return XanoClient(base_url=BASE + "/", meta_url=META, timeout=5)


def test_init_strips_trailing_slash(client):
    assert client.base_url == BASE


# ---------------------------------------------------------------------------
# write_message
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_write_message_posts_expected_body(client):
    mc = _patched_client(_resp(200, {"id": 99}))
    msg = MessageData(
        conversation_id=12,
        sender="assistant",
        content="done",
        message_type="tool_execution",
        tool_data=ToolData("create_table", {"name": "users"}, {"ok": True}, 120),
    )
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc):
        result = await client.write_message(msg, "tok-1")

    assert result.ok
    assert result.record_id == 99

    method, url = mc.request.call_args.args
    kwargs = mc.request.call_args.kwargs
    assert method == "POST"
    assert url == f"{BASE}/message"
    assert kwargs["headers"]["Authorization"] == "Bearer tok-1"

    body = kwargs["json"]
    assert body["conversation_id"] == 12
    assert body["sender"] == "assistant"
    assert body["parent_message_id"] is None
    assert body["response_time_ms"] == 0
    assert json.loads(body["tool_data"])["tool_name"] == "create_table"
    assert "timestamp" in json.loads(body["metadata"])


@pytest.mark.asyncio
@pytest.mark.parametrize("conv_id", [None, 0, -3])
async def test_write_message_rejects_bad_conversation_id(client, conv_id):
    with patch("toschat.backends.xano.httpx.AsyncClient") as mock_cls:
        result = await client.write_message(MessageData(conversation_id=conv_id, content="x"), "tok")
        mock_cls.assert_not_called()
    assert not result.ok
    assert not result.sent
    assert result.error == "Invalid conversation_id"


@pytest.mark.asyncio
@pytest.mark.parametrize("sender,message_type", [("tos", "text"), ("user", "image")])
async def test_write_message_rejects_unknown_sender_or_type(client, sender, message_type):
    msg = MessageData(conversation_id=4, sender=sender, message_type=message_type, content="x")
    with patch("toschat.backends.xano.httpx.AsyncClient") as mock_cls:
        result = await client.write_message(msg, "tok")
        mock_cls.assert_not_called()
    assert not result.ok
    assert not result.sent
    assert result.error.startswith("Unknown")


@pytest.mark.asyncio
async def test_write_message_http_error(client):
    mc = _patched_client(_resp(500, {"message": "boom"}))
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc):
        result = await client.write_message(MessageData(conversation_id=1, content="x"), "tok")
    assert not result.ok
    assert result.status_code == 500
    assert "HTTP 500" in result.error


@pytest.mark.asyncio
async def test_write_message_timeout(client):
    mc = _patched_client(side_effect=httpx.TimeoutException("timed out"))
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc):
        result = await client.write_message(MessageData(conversation_id=1, content="x"), "tok")
    assert not result.ok
    assert result.sent
    assert "Timeout" in result.error


@pytest.mark.asyncio
async def test_write_message_connection_error(client):
    mc = _patched_client(side_effect=httpx.ConnectError("refused"))
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc):
        result = await client.write_message(MessageData(conversation_id=1, content="x"), "tok")
    assert not result.ok
    assert "refused" in result.error


# ---------------------------------------------------------------------------
# Reads / conversation CRUD
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    [{"id": 1, "content": "a"}, {"id": 2, "content": "b"}],
    {"items": [{"id": 1, "content": "a"}, {"id": 2, "content": "b"}]},
])
async def test_get_messages_accepts_list_or_envelope(client, payload):
    mc = _patched_client(_resp(200, payload))
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc):
        result = await client.get_messages(12, "tok")
    assert result.ok
    assert [m["id"] for m in result.data] == [1, 2]
    assert mc.request.call_args.args == ("GET", f"{BASE}/message/all/12")


@pytest.mark.asyncio
async def test_create_conversation_defaults(client):
    mc = _patched_client(_resp(200, {"id": 5, "title": "New Chat"}))
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc):
        result = await client.create_conversation({"workspace_id": 7}, "tok")
    body = mc.request.call_args.kwargs["json"]
    assert result.record_id == 5
    assert body["status"] == "active"
    assert body["title"]
    assert body["workspace_id"] == 7


@pytest.mark.asyncio
async def test_update_conversation_patches(client):
    mc = _patched_client(_resp(200, {"id": 5}))
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc):
        result = await client.update_conversation(5, {"message_count": 3}, "tok")
    assert result.ok
    assert mc.request.call_args.args == ("PATCH", f"{BASE}/conversation/5")
    assert mc.request.call_args.kwargs["json"] == {"message_count": 3}


@pytest.mark.asyncio
async def test_get_and_delete_conversation_urls(client):
    mc = _patched_client(_resp(200, {"id": 5}))
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc):
        await client.get_conversation(5, "tok")
        assert mc.request.call_args.args == ("GET", f"{BASE}/conversation/get/5")
        await client.delete_conversation(5, "tok")
        assert mc.request.call_args.args == ("DELETE", f"{BASE}/conversation/5")
        await client.archive_conversation(5, "tok")
        assert mc.request.call_args.kwargs["json"] == {"status": "archived"}


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_validate_credentials_ok(client):
    mc = _patched_client(_resp(200, [{"id": 1}, {"id": 2}, {"id": 3}]))
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc) as mock_cls:
        result = await client.validate_credentials("xt", 7, "x.xano.io")
        assert mock_cls.call_args.kwargs["timeout"] == client.validation_timeout

    assert result["success"] is True
    assert result["user_info"]["tables_count"] == 3
    assert result["user_info"]["workspace_id"] == 7
    assert mc.request.call_args.args == ("GET", f"{META}/workspace/7/table")


@pytest.mark.asyncio
async def test_validate_credentials_rejected(client):
    mc = _patched_client(_resp(401, {"message": "bad token"}))
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc):
        result = await client.validate_credentials("bad", 7, "x.xano.io")
    assert result["success"] is False
    assert result["error"].startswith("Invalid credentials")


@pytest.mark.asyncio
async def test_validate_credentials_unreachable(client):
    mc = _patched_client(side_effect=httpx.ConnectError("dns"))
    with patch("toschat.backends.xano.httpx.AsyncClient", return_value=mc):
        result = await client.validate_credentials("xt", 7, "x.xano.io")
    assert result["success"] is False
    assert result["error"].startswith("Credential validation failed")


def test_from_config():
    c = XanoClient.from_config({"base_url": BASE, "meta_url": META, "timeout": 12})
    assert c.timeout == 12
    assert c.meta_url == META
