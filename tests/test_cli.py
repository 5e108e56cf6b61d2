"""
Tests for the toschat CLI (queue inspection commands and parser wiring).
"""

import asyncio
import json

import pytest

from toschat import cli
from toschat import config as cfg_mod
from toschat.backends.base import RemoteWriter, WriteResult
from toschat.message_queue import DurableQueue
from toschat.storage import SQLiteKVStore
from toschat.storage.models import MessageData


class DeadWriter(RemoteWriter):
    async def write_message(self, message, auth_token):
        return WriteResult(ok=False, status_code=503, error="down")

    async def update_conversation(self, conversation_id, updates, auth_token):
        return WriteResult(ok=False, status_code=503, error="down")


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "queue.db"
    cfg_mod._config = {"queue": {"storage_path": str(path)}}
    yield path
    cfg_mod.reset_config()


@pytest.fixture
def seeded(db_path):
    """One failed message, one pending message, one conversation update."""
    q = DurableQueue(DeadWriter(), SQLiteKVStore(str(db_path)), max_retries=0, eager=False)
    q.enqueue_message(MessageData(conversation_id=1, content="doomed"), "tok")
    asyncio.run(q.drain())
    q.enqueue_message(MessageData(conversation_id=1, content="waiting"), "tok")
    q.enqueue_conversation_update(1, {"title": "t"}, "tok")
    return db_path


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_version(capsys):
    with pytest.raises(SystemExit):
        cli.main(["--version"])
    assert "toschat 1.0.0" in capsys.readouterr().out


def test_aliases_resolve():
    parser = cli.build_parser()
    assert parser.parse_args(["start"]).func is cli.cmd_serve
    assert parser.parse_args(["status"]).func is cli.cmd_queue
    assert parser.parse_args(["serve", "--port", "9000"]).port == 9000


def test_queue_json(seeded, capsys):
    assert cli.main(["queue", "--json", "--failed"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["messages"] == {"pending": 1, "processing": 0, "failed": 1}
    assert out["conversations"] == 1
    assert "is_online" not in out
    assert out["failed_items"][0]["message_data"]["content"] == "doomed"


def test_queue_text(seeded, capsys):
    cli.main(["status", "--failed"])
    out = capsys.readouterr().out
    assert "1 pending" in out
    assert "doomed" in out


def test_clear_failed(seeded, capsys):
    cli.main(["clear-failed"])
    assert "Cleared 1" in capsys.readouterr().out

    cli.main(["queue", "--json"])
    out = json.loads(capsys.readouterr().out)
    assert out["messages"]["failed"] == 0
    assert out["messages"]["pending"] == 1
