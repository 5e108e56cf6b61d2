"""
Data models for chat persistence.
These define the shape of data flowing from the controller, through the
durable queue, to the remote writer. Everything the queue holds must survive
to_dict() -> JSON -> from_dict() unchanged, since that's how it outlives a restart.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from toschat.errors import ValidationError

SENDERS = ("user", "assistant", "system")
MESSAGE_TYPES = ("text", "tool_execution", "error")
PRIORITIES = ("high", "medium", "low")
STATUSES = ("pending", "processing", "completed", "failed")

_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_id() -> str:
    """Time-based id with a random suffix: base36(ms) + 11 base36 chars."""
    n = int(time.time() * 1000)
    head = ""
    while n:
        n, r = divmod(n, 36)
        head = _B36[r] + head
    return head + "".join(random.choice(_B36) for _ in range(11))


@dataclass
class ToolData:
    """Structured record of a tool invocation attached to a message."""
    tool_name: str
    parameters: dict = field(default_factory=dict)
    result: object = None
    execution_time_ms: float | None = None

    def to_dict(self) -> dict:
        d = {"tool_name": self.tool_name, "parameters": self.parameters, "result": self.result}
        if self.execution_time_ms is not None:
            d["execution_time_ms"] = self.execution_time_ms
        return d

    @classmethod
    def from_dict(cls, d: dict | None) -> ToolData | None:
        if not d:
            return None
        return cls(
            tool_name=d.get("tool_name", "unknown"),
            parameters=d.get("parameters") or {},
            result=d.get("result"),
            execution_time_ms=d.get("execution_time_ms"),
        )


@dataclass
class MessageData:
    """A message as written to the remote store."""
    conversation_id: int | None
    sender: str = "user"              # "user", "assistant", "system"
    content: str = ""
    message_type: str = "text"        # "text", "tool_execution", "error"
    tool_data: ToolData | None = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "sender": self.sender,
            "content": self.content,
            "message_type": self.message_type,
            "tool_data": self.tool_data.to_dict() if self.tool_data else None,
            "metadata": dict(self.metadata),
        }

    def validate(self):
        """Raise ValidationError for a sender or message_type the remote won't accept."""
        if self.sender not in SENDERS:
            raise ValidationError(f"Unknown sender: {self.sender!r}", {"allowed": list(SENDERS)})
        if self.message_type not in MESSAGE_TYPES:
            raise ValidationError(
                f"Unknown message_type: {self.message_type!r}", {"allowed": list(MESSAGE_TYPES)}
            )

    @classmethod
    def from_dict(cls, d: dict) -> MessageData:
        return cls(
            conversation_id=d.get("conversation_id"),
            sender=d.get("sender", "user"),
            content=d.get("content", ""),
            message_type=d.get("message_type", "text"),
            tool_data=ToolData.from_dict(d.get("tool_data")),
            metadata=dict(d.get("metadata") or {}),
        )


@dataclass
class QueuedMessage:
    """A message write waiting in the durable queue."""
    message_data: MessageData
    auth_token: str
    id: str = field(default_factory=generate_id)
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    retry_count: int = 0
    priority: str = "medium"
    status: str = "pending"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "message_data": self.message_data.to_dict(),
            "auth_token": self.auth_token,
            "timestamp": self.timestamp,
            "retry_count": self.retry_count,
            "priority": self.priority,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, d: dict) -> QueuedMessage:
        return cls(
            id=d["id"],
            message_data=MessageData.from_dict(d.get("message_data") or {}),
            auth_token=d.get("auth_token", ""),
            timestamp=d.get("timestamp", 0),
            retry_count=int(d.get("retry_count", 0)),
            priority=d.get("priority", "medium"),
            status=d.get("status", "pending"),
        )


@dataclass
class QueuedConversationUpdate:
    """A partial conversation update waiting in the durable queue. No status."""
    conversation_id: int
    updates: dict
    auth_token: str
    id: str = field(default_factory=generate_id)
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    retry_count: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "updates": dict(self.updates),
            "auth_token": self.auth_token,
            "timestamp": self.timestamp,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, d: dict) -> QueuedConversationUpdate:
        return cls(
            id=d["id"],
            conversation_id=d.get("conversation_id"),
            updates=dict(d.get("updates") or {}),
            auth_token=d.get("auth_token", ""),
            timestamp=d.get("timestamp", 0),
            retry_count=int(d.get("retry_count", 0)),
        )


@dataclass
class ChatMessage:
    """A transcript entry as the chat UI shows it. Remote "assistant" displays as "tos"."""
    id: int
    sender: str
    content: str
    timestamp: str = field(default_factory=now_iso)
    tool_data: dict | None = None

    @classmethod
    def from_remote(cls, d: dict) -> ChatMessage:
        sender = d.get("sender", "system")
        return cls(
            id=d.get("id", 0),
            sender="tos" if sender == "assistant" else sender,
            content=d.get("content", ""),
            timestamp=str(d.get("created_at") or d.get("timestamp") or ""),
            tool_data=d.get("tool_data"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender": self.sender,
            "content": self.content,
            "timestamp": self.timestamp,
            "tool_data": self.tool_data,
        }


@dataclass
class ConversationContext:
    """
    The controller's view of the active conversation.
    message_count is an optimistic mirror of the remote count; the remote
    record wins whenever it is re-read.
    """
    conversation_id: int | None = None
    is_new_conversation: bool = True
    message_count: int = 0
