"""
Remote writer abstraction.
The queue and the controller only know this interface; the concrete client
for the remote platform lives in xano.py and tests substitute fakes.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field

from toschat.storage.models import MessageData

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Standardized outcome of one remote call. sent=False means no request was made."""
    ok: bool
    status_code: int = 200
    data: dict | list = field(default_factory=dict)
    error: str = ""
    latency_ms: float = 0.0
    sent: bool = True

    @property
    def record_id(self):
        """Id assigned by the remote store, if any."""
        if isinstance(self.data, dict):
            return self.data.get("id")
        return None

    @classmethod
    def rejected(cls, error: str) -> WriteResult:
        """A local validation failure: no request was made."""
        return cls(ok=False, status_code=0, error=error, sent=False)


class RemoteWriter(abc.ABC):
    """
    Performs exactly one network write per call and reports the outcome.
    Calls are not assumed idempotent: a retried write may duplicate a record.
    """

    @abc.abstractmethod
    async def write_message(self, message: MessageData, auth_token: str) -> WriteResult:
        """Persist one chat message. On success data["id"] is the new message id."""
        ...

    @abc.abstractmethod
    async def update_conversation(
        self, conversation_id: int, updates: dict, auth_token: str
    ) -> WriteResult:
        """Apply a partial update (title, last_message_at, message_count, status)."""
        ...

    async def health_check(self) -> bool:
        """Whether the remote is reachable. Writers without a probe say yes."""
        return True

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
