"""
Durable queue: at-least-once delivery of chat writes.

Two ordered lists, both mirrored to the local store after every mutation:
  messages       QueuedMessage, FIFO except "high" priority goes to the head
  conversations  QueuedConversationUpdate, strict FIFO

A drain pass handles up to batch_size conversation updates first (cheap
metadata, keeps counts fresh), then up to batch_size pending messages. Each
item gets one write attempt per pass. A failed item is retried on a later pass
until retry_count reaches max_retries; after that a message is marked
"failed" (kept for inspection until cleared) and an update is dropped with a
warning.

Passes never overlap: a boolean flag, released in `finally`, turns a second
drain() into a no-op. Everything runs on one event loop so no lock is needed.
The flag would have to become an asyncio.Lock if drains were ever
started from other threads.

Scheduling:
  - enqueue_message() starts a pass right away when online and idle
  - a timer starts one every interval_seconds when there is work
  - going offline -> online starts one immediately
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

from toschat.backends.base import RemoteWriter
from toschat.errors import ValidationError
from toschat.storage.local_store import KeyValueStore
from toschat.storage.models import (
    PRIORITIES,
    STATUSES,
    MessageData,
    QueuedConversationUpdate,
    QueuedMessage,
)

logger = logging.getLogger(__name__)

QUEUE_KEY = "tos_message_queue"


@dataclass
class DrainReport:
    """What one drain pass did."""
    skipped: bool = False
    updates_sent: int = 0
    updates_retried: int = 0
    updates_dropped: int = 0
    messages_sent: int = 0
    messages_retried: int = 0
    messages_failed: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class DurableQueue:
    """
    Persisted, priority-aware write queue in front of a RemoteWriter.

    Constructed explicitly by the application with its writer and store;
    there is no module-level instance.
    """

    def __init__(
        self,
        writer: RemoteWriter,
        store: KeyValueStore,
        max_retries: int = 3,
        batch_size: int = 5,
        interval: float = 2.0,
        probe_interval: float = 0,
        online: bool = True,
        eager: bool = True,
    ):
        self.writer = writer
        self.store = store
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.interval = interval
        self.probe_interval = probe_interval
        self.online = online
        # eager: kick off a pass straight from enqueue_message()
        self.eager = eager

        self.messages: list[QueuedMessage] = []
        self.conversations: list[QueuedConversationUpdate] = []
        self._draining = False
        self._tick_task: asyncio.Task | None = None
        self._probe_task: asyncio.Task | None = None
        self._drain_tasks: set[asyncio.Task] = set()

        self._load()

    @classmethod
    def from_config(cls, writer: RemoteWriter, store: KeyValueStore, cfg: dict) -> DurableQueue:
        return cls(
            writer,
            store,
            max_retries=int(cfg.get("max_retries", 3)),
            batch_size=int(cfg.get("batch_size", 5)),
            interval=float(cfg.get("interval_seconds", 2.0)),
            probe_interval=float(cfg.get("probe_interval_seconds", 0) or 0),
        )

    @property
    def draining(self) -> bool:
        return self._draining

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self):
        try:
            self.store.set(QUEUE_KEY, json.dumps({
                "messages": [m.to_dict() for m in self.messages],
                "conversations": [u.to_dict() for u in self.conversations],
            }))
        except Exception as e:
            logger.error("Failed to save message queue to storage: %s", e)

    def _load(self):
        try:
            raw = self.store.get(QUEUE_KEY)
        except Exception as e:
            logger.error("Failed to read message queue from storage: %s", e)
            return
        if not raw:
            return

        try:
            data = json.loads(raw)
            messages = [QueuedMessage.from_dict(m) for m in data.get("messages", [])]
            conversations = [
                QueuedConversationUpdate.from_dict(u) for u in data.get("conversations", [])
            ]
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Failed to load message queue from storage: %s", e)
            return

        # A pass that died mid-flight leaves items in "processing"; retry them.
        for m in messages:
            if m.status == "processing":
                m.status = "pending"

        self.messages = messages
        self.conversations = conversations
        logger.info(
            "Loaded %d messages and %d conversation updates from storage",
            len(messages), len(conversations),
        )

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue_message(
        self,
        message_data: MessageData | dict,
        auth_token: str,
        priority: str = "medium",
    ) -> str:
        """Queue a message write. Returns the queue item id."""
        if priority not in PRIORITIES:
            raise ValidationError(f"Unknown priority: {priority!r}", {"allowed": list(PRIORITIES)})
        if isinstance(message_data, dict):
            message_data = MessageData.from_dict(message_data)
        message_data.validate()

        item = QueuedMessage(message_data=message_data, auth_token=auth_token, priority=priority)
        if priority == "high":
            self.messages.insert(0, item)
        else:
            self.messages.append(item)
        self._save()

        logger.debug(
            "Queued message %s priority=%s sender=%s type=%s",
            item.id, priority, message_data.sender, message_data.message_type,
        )

        if self.eager and self.online and not self._draining:
            self._spawn_drain()
        return item.id

    def enqueue_conversation_update(
        self, conversation_id: int, updates: dict, auth_token: str
    ) -> str:
        """Queue a partial conversation update. Picked up by the next pass."""
        item = QueuedConversationUpdate(
            conversation_id=conversation_id, updates=dict(updates), auth_token=auth_token
        )
        self.conversations.append(item)
        self._save()
        logger.debug(
            "Queued conversation update %s conv=%s fields=%s",
            item.id, conversation_id, sorted(updates),
        )
        return item.id

    def batch_enqueue(self, messages: list, auth_token: str) -> list[str]:
        return [self.enqueue_message(m, auth_token, "medium") for m in messages]

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    def has_queued_items(self) -> bool:
        return bool(self.conversations) or any(m.status == "pending" for m in self.messages)

    async def drain(self) -> DrainReport:
        """One serialized pass. A no-op while offline or while another pass runs."""
        if self._draining or not self.online:
            return DrainReport(skipped=True)

        self._draining = True
        report = DrainReport()
        try:
            await self._process_conversation_updates(report)
            await self._process_messages(report)
        except Exception as e:
            logger.error("Error processing queue: %s", e)
        finally:
            self._draining = False
            self._save()

        if report.messages_sent or report.updates_sent or report.messages_failed:
            logger.info(
                "Drain: %d messages sent, %d retried, %d failed; %d updates sent, %d dropped",
                report.messages_sent, report.messages_retried, report.messages_failed,
                report.updates_sent, report.updates_dropped,
            )
        return report

    async def _process_conversation_updates(self, report: DrainReport):
        batch = self.conversations[: self.batch_size]
        del self.conversations[: self.batch_size]

        for update in batch:
            try:
                result = await self.writer.update_conversation(
                    update.conversation_id, update.updates, update.auth_token
                )
                error = "" if result.ok else (result.error or "Unknown error")
            except Exception as e:
                error = str(e) or e.__class__.__name__

            if not error:
                report.updates_sent += 1
                logger.debug("Processed conversation update %s", update.id)
                continue

            logger.warning("Failed to process conversation update %s: %s", update.id, error)
            if update.retry_count < self.max_retries:
                update.retry_count += 1
                self.conversations.append(update)
                report.updates_retried += 1
            else:
                report.updates_dropped += 1
                logger.warning(
                    "Giving up on conversation update %s (conv=%s) after %d retries",
                    update.id, update.conversation_id, self.max_retries,
                )

    async def _process_messages(self, report: DrainReport):
        batch = [m for m in self.messages if m.status == "pending"][: self.batch_size]

        for message in batch:
            message.status = "processing"
            try:
                result = await self.writer.write_message(message.message_data, message.auth_token)
                error = "" if result.ok else (result.error or "Unknown error")
            except Exception as e:
                error = str(e) or e.__class__.__name__

            if not error:
                message.status = "completed"
                report.messages_sent += 1
                logger.debug("Processed queued message %s", message.id)
                continue

            logger.warning(
                "Failed to process queued message %s (attempt %d): %s",
                message.id, message.retry_count + 1, error,
            )
            if message.retry_count < self.max_retries:
                message.retry_count += 1
                message.status = "pending"
                report.messages_retried += 1
            else:
                message.status = "failed"
                report.messages_failed += 1
                logger.error(
                    "Giving up on message %s after %d retries", message.id, self.max_retries
                )

        # Rebuild from the live list: enqueues made while we awaited are kept.
        self.messages = [m for m in self.messages if m.status != "completed"]

    def _spawn_drain(self) -> asyncio.Task | None:
        """Schedule drain() on the running loop. Without a loop the timer picks it up."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        task = loop.create_task(self.drain())
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)
        return task

    async def force_process(self) -> DrainReport:
        logger.info("Force processing message queue")
        return await self.drain()

    # ------------------------------------------------------------------
    # Connectivity / auth
    # ------------------------------------------------------------------

    def set_online(self, online: bool):
        """Record connectivity. Coming back online starts a pass immediately."""
        was_online = self.online
        self.online = online
        if online and not was_online:
            logger.info("Back online - resuming message queue processing")
            self._spawn_drain()
        elif was_online and not online:
            logger.info("Gone offline - queuing messages for later")

    def update_auth_tokens(self, old_token: str | None, new_token: str) -> int:
        """
        Point queued items at a new token. old_token=None rewrites every item
        (items queued before the user signed in). Returns the count rewritten.
        """
        updated = 0
        for item in [*self.messages, *self.conversations]:
            if old_token is None or item.auth_token == old_token:
                item.auth_token = new_token
                updated += 1

        if updated:
            logger.info("Updated %d queued items with new auth token", updated)
            self._save()
            if self.online:
                self._spawn_drain()
        return updated

    # ------------------------------------------------------------------
    # Inspection / maintenance
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        counts = dict.fromkeys(STATUSES, 0)
        for m in self.messages:
            counts[m.status] = counts.get(m.status, 0) + 1
        return {
            "messages": {
                "pending": counts["pending"],
                "processing": counts["processing"],
                "failed": counts["failed"],
            },
            "conversations": len(self.conversations),
            "is_online": self.online,
            "is_processing": self._draining,
        }

    def failed_messages(self) -> list[QueuedMessage]:
        return [m for m in self.messages if m.status == "failed"]

    def clear_failed_messages(self) -> int:
        failed = len(self.failed_messages())
        self.messages = [m for m in self.messages if m.status != "failed"]
        self._save()
        logger.info("Cleared %d failed messages from queue", failed)
        return failed

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _tick_loop(self):
        while True:
            await asyncio.sleep(self.interval)
            if self.online and not self._draining and self.has_queued_items():
                self._spawn_drain()

    async def _probe_loop(self):
        while True:
            await asyncio.sleep(self.probe_interval)
            try:
                reachable = await self.writer.health_check()
            except Exception as e:
                logger.debug("Connectivity probe failed: %s", e)
                reachable = False
            self.set_online(reachable)

    def start(self):
        """Start the drain timer (and the connectivity probe, if configured)."""
        loop = asyncio.get_running_loop()
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = loop.create_task(self._tick_loop())
        if self.probe_interval > 0 and (self._probe_task is None or self._probe_task.done()):
            self._probe_task = loop.create_task(self._probe_loop())
        logger.info(
            "Message queue started: every %.1fs, batch %d, max retries %d",
            self.interval, self.batch_size, self.max_retries,
        )
        if self.online and self.has_queued_items():
            self._spawn_drain()

    async def stop(self):
        """Stop timers and let any in-flight pass finish."""
        for task in (self._tick_task, self._probe_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tick_task = None
        self._probe_task = None
        if self._drain_tasks:
            await asyncio.gather(*list(self._drain_tasks), return_exceptions=True)
        self._save()
