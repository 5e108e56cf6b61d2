"""
Retry wrapper for remote writers with exponential backoff.

This is the direct-write path: interactive turns are written immediately and
retried in place (1s, 2s, 4s) so the caller gets a prompt yes/no instead of
waiting for the queue's next tick.

Retried (transient):
- no response at all (timeout, connection error)
- 404, 408, 429, 5xx

Not retried (permanent):
- local validation rejections (nothing was sent)
- 400, 401, 403, 422
"""

from __future__ import annotations

import asyncio
import logging

from toschat.backends.base import RemoteWriter, WriteResult
from toschat.storage.models import MessageData

logger = logging.getLogger(__name__)

PERMANENT_STATUS = (400, 401, 403, 422)


class RetryingWriter(RemoteWriter):
    """
    Wraps any RemoteWriter with exponential backoff retry logic.
    At most 1 + max_retries attempts per call.
    """

    def __init__(
        self,
        writer: RemoteWriter,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        sleep=asyncio.sleep,
    ):
        self.writer = writer
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    @classmethod
    def from_config(cls, writer: RemoteWriter, cfg: dict) -> RetryingWriter:
        return cls(
            writer,
            max_retries=int(cfg.get("max_retries", 3)),
            retry_delay=float(cfg.get("retry_delay", 1.0)),
        )

    def _is_retryable(self, result: WriteResult) -> bool:
        if not result.sent:
            return False
        return result.status_code not in PERMANENT_STATUS

    def _backoff_seconds(self, attempt: int) -> float:
        """Delay before retry N (0-based): retry_delay * 2**N."""
        return self.retry_delay * (2 ** attempt)

    async def _with_retry(self, label: str, call) -> WriteResult:
        for attempt in range(self.max_retries + 1):
            result = await call()

            if result.ok:
                return result

            if not self._is_retryable(result):
                logger.debug("%s not retryable (%d): %s", label, result.status_code, result.error)
                return result

            if attempt < self.max_retries:
                backoff = self._backoff_seconds(attempt)
                logger.warning(
                    "%s failed (attempt %d), retry in %.1fs: %s",
                    label, attempt + 1, backoff, result.error,
                )
                await self._sleep(backoff)
                continue

            logger.error("%s exhausted retries (last: %s)", label, result.error)
            return result

        return result

    async def write_message(self, message: MessageData, auth_token: str) -> WriteResult:
        label = f"Message write (conv={message.conversation_id}, sender={message.sender})"
        return await self._with_retry(
            label, lambda: self.writer.write_message(message, auth_token)
        )

    async def update_conversation(
        self, conversation_id: int, updates: dict, auth_token: str
    ) -> WriteResult:
        return await self._with_retry(
            f"Conversation update {conversation_id}",
            lambda: self.writer.update_conversation(conversation_id, updates, auth_token),
        )

    async def health_check(self) -> bool:
        """Delegate to wrapped writer."""
        return await self.writer.health_check()
