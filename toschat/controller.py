"""
Conversation controller. Keeps the on-screen transcript honest.

Owns the active conversation id and the in-memory transcript, and guarantees
the transcript either belongs to the active conversation or is empty:

  switch    clear first, fetch metadata + history, then publish id and
            transcript together. Any failure leaves id=None and no messages.
  new       clear, show local welcome text at once, create the remote record
            in the background of the call; creation failure keeps the welcome.
  persist   append optimistically, write through the direct (backoff) path,
            roll the append back if the write ultimately fails.

There is no switch lock: if two switches overlap, the last fetch to resolve
wins. The local message counter is a cache; every switch re-reads the remote
count.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable

from toschat.backends.base import RemoteWriter, WriteResult
from toschat.errors import RemoteError
from toschat.message_queue import DurableQueue
from toschat.storage.local_store import KeyValueStore
from toschat.storage.models import (
    ChatMessage,
    ConversationContext,
    MessageData,
    ToolData,
    now_iso,
)
from toschat.titles import generate_title_from_message

logger = logging.getLogger(__name__)

ACTIVE_CONVERSATION_KEY = "tos_active_conversation_id"


def _remote_count(data, fallback: int) -> int:
    """message_count from a conversation record. Raises ValueError on garbage."""
    value = data.get("message_count") if isinstance(data, dict) else None
    if not value:
        return fallback
    return int(value)


@dataclass
class OperationResult:
    ok: bool
    error: str = ""
    value: object = None


class ConversationController:
    """
    Mediates between the transient transcript and the durable record.

    Args:
        client:  remote conversation API (get/create conversation, get messages)
        writer:  direct-write path, normally a RetryingWriter around the client
        queue:   durable queue for deferred writes (counts, titles, tool runs)
        store:   local store, remembers the active conversation across restarts
    """

    def __init__(
        self,
        client,
        writer: RemoteWriter,
        queue: DurableQueue,
        store: KeyValueStore,
        auth_token: str | None = None,
        workspace: dict | None = None,
        user: dict | None = None,
        on_message_persisted: Callable[[], None] | None = None,
        store_key: str = ACTIVE_CONVERSATION_KEY,
    ):
        self.client = client
        self.writer = writer
        self.queue = queue
        self.store = store
        self.auth_token = auth_token
        self.workspace = workspace or {}
        self.user = user or {}
        self.on_message_persisted = on_message_persisted
        self.store_key = store_key

        self.context = ConversationContext()
        self.messages: list[ChatMessage] = []
        self.is_loading = False
        self.error: str | None = None
        self._ids = itertools.count(int(time.time() * 1000))
        # False while message_count has not been read from the remote record.
        self._count_synced = True

        self._restore()

    @property
    def active_conversation_id(self) -> int | None:
        return self.context.conversation_id

    # ------------------------------------------------------------------
    # Local state
    # ------------------------------------------------------------------

    def _restore(self):
        saved = self.store.get(self.store_key)
        if saved and saved.strip().isdigit() and int(saved) > 0:
            self.context = ConversationContext(int(saved), False, 0)
            self._count_synced = False
            logger.info("Restored active conversation %s", saved)

    def _set_active(self, conversation_id: int | None, is_new: bool = False, count: int = 0):
        self.context = ConversationContext(conversation_id, is_new, count)
        self._count_synced = True
        if conversation_id:
            self.store.set(self.store_key, str(conversation_id))
        else:
            self.store.delete(self.store_key)

    def _local_id(self) -> int:
        return next(self._ids)

    def clear_messages(self):
        self.messages = []
        self.error = None

    def reset(self):
        """Logout: forget the conversation, transcript and token."""
        self._set_active(None, is_new=True)
        self.clear_messages()
        self.auth_token = None

    def set_auth_token(self, token: str):
        """Adopt a new token and move anything already queued onto it."""
        old = self.auth_token
        self.auth_token = token
        self.queue.update_auth_tokens(old, token)

    def _welcome_messages(self) -> list[ChatMessage]:
        ws = self.workspace
        return [
            ChatMessage(
                id=self._local_id(),
                sender="tos",
                content=(
                    "Welcome to Tos! I'm your AI backend developer assistant.\n\n"
                    "I can help you build Xano backends: authentication, database "
                    "tables and schemas, API endpoints and logic."
                ),
            ),
            ChatMessage(
                id=self._local_id(),
                sender="tos",
                content=(
                    "Connected to your Xano workspace.\n\n"
                    f"Configuration: {ws.get('config_name') or 'Unknown'}\n"
                    f"- Instance: {ws.get('instance_domain') or 'Unknown'}\n"
                    f"- Workspace ID: {ws.get('target_workspace_id') or 'Unknown'}\n\n"
                    "What would you like to create first?"
                ),
            ),
        ]

    # ------------------------------------------------------------------
    # Conversation lifecycle
    # ------------------------------------------------------------------

    async def switch_to_conversation(self, conversation_id: int) -> OperationResult:
        if not self.auth_token:
            logger.error("Cannot switch conversation - not authenticated")
            return OperationResult(False, "Not authenticated")

        logger.info("Switching to conversation %s (from %s)", conversation_id, self.active_conversation_id)
        self.clear_messages()
        self.is_loading = True

        try:
            conv = await self.client.get_conversation(conversation_id, self.auth_token)
            if not conv.ok:
                raise RemoteError(conv.error or "Conversation not found", conv.status_code)

            history = await self.client.get_messages(conversation_id, self.auth_token)
            if not history.ok:
                raise RemoteError(history.error or "Failed to load messages", history.status_code)

            try:
                transcript = [ChatMessage.from_remote(m) for m in history.data]
                count = _remote_count(conv.data, len(transcript))
            except (AttributeError, TypeError, ValueError) as e:
                raise RemoteError(f"Malformed conversation data: {e}") from e

            # Publish id and transcript together.
            self._set_active(conversation_id, count=count)
            self.messages = transcript
            logger.info("Switched to conversation %s (%d messages)", conversation_id, len(transcript))
            return OperationResult(True, value=transcript)

        except RemoteError as e:
            logger.error("Failed to switch to conversation %s: %s", conversation_id, e.message)
            self.error = e.message
            self._set_active(None)
            self.messages = []
            return OperationResult(False, e.message)
        finally:
            self.is_loading = False

    async def refresh_current_conversation(self) -> OperationResult:
        if not self.active_conversation_id:
            return OperationResult(False, "No active conversation")
        return await self.switch_to_conversation(self.active_conversation_id)

    async def start_new_conversation(self) -> OperationResult:
        if not self.auth_token or not self.workspace:
            logger.error("Cannot start new conversation - missing auth token or workspace")
            return OperationResult(False, "Missing auth token or workspace")

        self.clear_messages()
        self._set_active(None, is_new=True)
        welcome = self._welcome_messages()
        self.messages = list(welcome)
        self.is_loading = True

        try:
            raw_workspace_id = self.workspace.get("target_workspace_id")
            try:
                workspace_id = int(raw_workspace_id) if raw_workspace_id else None
            except (TypeError, ValueError):
                self.error = f"Invalid workspace id: {raw_workspace_id!r}"
                logger.error("Failed to start new conversation: %s", self.error)
                return OperationResult(False, self.error)

            result = await self.client.create_conversation(
                {
                    "workspace_id": workspace_id,
                    "instance_domain": self.workspace.get("instance_domain"),
                    "status": "active",
                    "user_id": self.user.get("id"),
                },
                self.auth_token,
            )
            if not result.ok or not result.record_id:
                self.error = result.error or "Failed to create conversation"
                logger.error("Failed to start new conversation: %s", self.error)
                return OperationResult(False, self.error)

            self._set_active(result.record_id, is_new=True)
            self.messages = list(welcome)
            logger.info("New conversation created: %s", result.record_id)
            return OperationResult(True, value=result.record_id)
        finally:
            self.is_loading = False

    def handle_conversation_deleted(self, conversation_id: int) -> bool:
        """Clear everything if the deleted conversation is the active one."""
        if conversation_id != self.active_conversation_id:
            return False
        logger.info("Active conversation %s deleted, clearing chat", conversation_id)
        self._set_active(None, is_new=True)
        self.clear_messages()
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _message_data(self, sender: str, content: str, message_type: str = "text",
                      tool_data: ToolData | None = None, **metadata) -> MessageData:
        metadata["timestamp"] = now_iso()
        if self.workspace.get("target_workspace_id"):
            metadata.setdefault("workspace_id", self.workspace["target_workspace_id"])
        return MessageData(
            conversation_id=self.active_conversation_id,
            sender=sender,
            content=content,
            message_type=message_type,
            tool_data=tool_data,
            metadata=metadata,
        )

    async def _sync_count(self):
        """A restored conversation only knows its id; read the count before adding to it."""
        conversation_id = self.active_conversation_id
        conv = await self.client.get_conversation(conversation_id, self.auth_token)
        if not conv.ok or conversation_id != self.active_conversation_id:
            return
        try:
            self.context.message_count = _remote_count(conv.data, 0)
        except (TypeError, ValueError):
            logger.warning("Conversation %s has an unreadable message_count", conversation_id)
            return
        self._count_synced = True

    def _after_persist(self, conversation_id: int):
        # Switched away mid-write: our counter belongs to another conversation.
        # Unsynced means the remote count is unknown, so it is left alone.
        if conversation_id == self.active_conversation_id and self._count_synced:
            self.context.message_count += 1
            self.context.is_new_conversation = False
            self.queue.enqueue_conversation_update(
                conversation_id,
                {"message_count": self.context.message_count, "last_message_at": now_iso()},
                self.auth_token,
            )
        if self.on_message_persisted:
            self.on_message_persisted()

    async def _persist_turn(self, local: ChatMessage, data: MessageData) -> OperationResult:
        if not self.auth_token or not data.conversation_id:
            logger.error("Cannot persist %s message - no auth token or active conversation", data.sender)
            return OperationResult(False, "No active conversation")

        self.messages.append(local)
        if not self._count_synced:
            await self._sync_count()
        result: WriteResult = await self.writer.write_message(data, self.auth_token)

        if not result.ok:
            self.messages = [m for m in self.messages if m.id != local.id]
            self.error = result.error or "Failed to save message"
            logger.error("Failed to persist %s message: %s", data.sender, self.error)
            return OperationResult(False, self.error)

        self._after_persist(data.conversation_id)
        return OperationResult(True, value=result.record_id)

    async def persist_user_message(self, content: str) -> OperationResult:
        data = self._message_data("user", content, session_type="authenticated")
        local = ChatMessage(id=self._local_id(), sender="user", content=content)
        return await self._persist_turn(local, data)

    async def persist_assistant_message(self, content: str, tool_data: ToolData | dict | None = None) -> OperationResult:
        if isinstance(tool_data, dict):
            tool_data = ToolData.from_dict(tool_data)
        data = self._message_data("assistant", content, tool_data=tool_data, has_tool_data=bool(tool_data))
        local = ChatMessage(
            id=self._local_id(),
            sender="tos",
            content=content,
            tool_data=tool_data.to_dict() if tool_data else None,
        )
        return await self._persist_turn(local, data)

    async def persist_error(self, error: str) -> OperationResult:
        """Record a system error message remotely. Not shown in the transcript."""
        data = self._message_data("system", error, message_type="error")
        if not self.auth_token or not data.conversation_id:
            return OperationResult(False, "No active conversation")
        result = await self.writer.write_message(data, self.auth_token)
        return OperationResult(result.ok, result.error, result.record_id)

    def persist_tool_execution(self, tool_name: str, parameters: dict, result,
                               execution_time_ms: float | None = None) -> OperationResult:
        """Tool runs are not interactive; they go through the queue."""
        if not self.auth_token or not self.active_conversation_id:
            logger.warning("Cannot queue tool execution %s - no active conversation", tool_name)
            return OperationResult(False, "No active conversation")
        data = self._message_data(
            "assistant",
            f"Tool executed: {tool_name}",
            message_type="tool_execution",
            tool_data=ToolData(tool_name, parameters, result, execution_time_ms),
        )
        queue_id = self.queue.enqueue_message(data, self.auth_token)
        return OperationResult(True, value=queue_id)

    def update_conversation_title(self, first_message: str) -> OperationResult:
        if not self.auth_token or not self.active_conversation_id:
            return OperationResult(False, "No active conversation")
        title = generate_title_from_message(first_message)
        self.queue.enqueue_conversation_update(
            self.active_conversation_id, {"title": title}, self.auth_token
        )
        return OperationResult(True, value=title)
