"""
Session store: who may talk to the remote platform, and for how long.

In-memory registry of authorization sessions keyed by an opaque id. A session
is valid while now < expires_at; every authorized use slides expires_at to
now + timeout. Expired records are evicted lazily on lookup and by an hourly
background sweep, so abandoned sessions don't pile up.

No session is ever repaired: missing or expired means Unauthorized and the
caller has to validate credentials again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from toschat.errors import Unauthorized

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 24 * 60 * 60
DEFAULT_SWEEP_INTERVAL = 60 * 60

_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Session:
    """One authorization session. Timestamps are POSIX seconds."""
    session_id: str
    xano_token: str = ""
    workspace_id: int | None = None
    instance_domain: str = ""
    user_info: dict = field(default_factory=dict)
    created_at: float = 0.0
    last_accessed: float = 0.0
    expires_at: float = 0.0

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at

    def summary(self) -> dict:
        """Redacted view, safe to return over the wire (no upstream token)."""
        return {
            "session_id": self.session_id,
            "instance_domain": self.instance_domain,
            "workspace_id": self.workspace_id,
            "created_at": _iso(self.created_at),
            "last_accessed": _iso(self.last_accessed),
            "expires_at": _iso(self.expires_at),
        }

    def to_dict(self) -> dict:
        return asdict(self)


class SessionStore:
    """
    Issues, validates and expires sessions.

    Callers only ever get copies of the records; the store keeps the originals.
    The clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.timeout = timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._sweep_task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, cfg: dict, clock: Callable[[], float] = time.time) -> "SessionStore":
        return cls(
            timeout=float(cfg.get("timeout_seconds", DEFAULT_TIMEOUT)),
            sweep_interval=float(cfg.get("sweep_interval_seconds", DEFAULT_SWEEP_INTERVAL)),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def create_session(self, credentials: dict) -> Session:
        """Store a new session for already-validated credentials."""
        now = self._clock()
        session = Session(
            session_id=self.generate_session_id(),
            xano_token=credentials.get("xano_token", ""),
            workspace_id=credentials.get("workspace_id"),
            instance_domain=credentials.get("instance_domain", ""),
            user_info=dict(credentials.get("user_info") or {}),
            created_at=now,
            last_accessed=now,
            expires_at=now + self.timeout,
        )
        self._sessions[session.session_id] = session
        logger.info("Session created: %s for instance: %s", session.session_id, session.instance_domain)
        return replace(session)

    def get_session(self, session_id: str) -> Session | None:
        """Return the session if it hasn't expired. Expired records are evicted."""
        session = self._sessions.get(session_id)
        if session is None:
            return None

        if not session.is_valid(self._clock()):
            del self._sessions[session_id]
            logger.info("Expired session removed: %s", session_id)
            return None

        return replace(session)

    def update_last_accessed(self, session_id: str) -> bool:
        """Stamp last_accessed and slide expiration forward. False if unknown or expired."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        now = self._clock()
        if not session.is_valid(now):
            # Expired is terminal; never slide it back to life.
            del self._sessions[session_id]
            logger.info("Expired session removed: %s", session_id)
            return False
        session.last_accessed = now
        # Sliding only ever moves forward, even if the clock steps back.
        session.expires_at = max(session.expires_at, now + self.timeout)
        return True

    def delete_session(self, session_id: str) -> bool:
        deleted = self._sessions.pop(session_id, None) is not None
        if deleted:
            logger.info("Session deleted: %s", session_id)
        return deleted

    def require(self, session_id: str | None) -> Session:
        """
        get_session + update_last_accessed in one step, for authorized calls.
        Raises Unauthorized when the id is missing, unknown or expired.
        """
        if not session_id:
            raise Unauthorized("Session ID required")
        if not self.update_last_accessed(session_id):
            raise Unauthorized("Invalid or expired session", {"session_id": session_id})
        return replace(self._sessions[session_id])

    def cleanup_expired_sessions(self) -> int:
        """Delete every expired session regardless of access. Returns count."""
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if not s.is_valid(now)]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Cleaned up %d expired sessions", len(expired))
        return len(expired)

    @staticmethod
    def generate_session_id() -> str:
        timestamp = _base36(int(time.time() * 1000))
        return f"tos_{timestamp}_{uuid4().hex[:13]}"

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def all_session_ids(self) -> list[str]:
        return list(self._sessions)

    def list_sessions(self) -> list[dict]:
        return [s.summary() for s in self._sessions.values()]

    def debug_info(self, session_id: str) -> dict:
        session = self._sessions.get(session_id)
        info = {
            "session_id": session_id,
            "exists": session is not None,
            "total_sessions": len(self._sessions),
            "session_data": None,
        }
        if session is not None:
            data = session.summary()
            data["time_until_expiry"] = max(0.0, session.expires_at - self._clock())
            info["session_data"] = data
        return info

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.cleanup_expired_sessions()
            except Exception as e:
                logger.error("Session sweep failed: %s", e)

    def start(self):
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.debug("Session sweep every %.0fs", self.sweep_interval)

    async def stop(self):
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
