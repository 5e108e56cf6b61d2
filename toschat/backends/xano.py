"""
Xano client, the concrete remote writer.

Talks to two APIs on the remote platform:
  - the conversation/message API (base_url): message write + fetch, conversation CRUD
  - the workspace metadata API (meta_url): credential validation

Every method makes at most one HTTP request and returns a WriteResult.
Transport errors never escape; they come back as ok=False with the reason.
"""

from __future__ import annotations

import json
import logging
import time

import httpx

from toschat.backends.base import RemoteWriter, WriteResult
from toschat.errors import ValidationError
from toschat.storage.models import MessageData, now_iso
from toschat.titles import generate_default_title

logger = logging.getLogger(__name__)


class XanoClient(RemoteWriter):
    """httpx-based client for the remote conversation store."""

    def __init__(
        self,
        base_url: str,
        meta_url: str = "",
        timeout: float = 30,
        validation_timeout: float = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.meta_url = meta_url.rstrip("/")
        self.timeout = timeout
        self.validation_timeout = validation_timeout

    @classmethod
    def from_config(cls, cfg: dict) -> XanoClient:
        return cls(
            base_url=cfg.get("base_url", ""),
            meta_url=cfg.get("meta_url", ""),
            timeout=cfg.get("timeout", 30),
            validation_timeout=cfg.get("validation_timeout", 10),
        )

    async def _request(
        self,
        method: str,
        url: str,
        auth_token: str,
        body: dict | None = None,
        timeout: float | None = None,
    ) -> WriteResult:
        t0 = time.monotonic()
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"

        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
                resp = await client.request(method, url, json=body, headers=headers)
                latency = (time.monotonic() - t0) * 1000

                if resp.status_code >= 400:
                    return WriteResult(
                        ok=False,
                        status_code=resp.status_code,
                        latency_ms=latency,
                        error=f"HTTP {resp.status_code}: {resp.text[:200]}",
                    )

                data = resp.json() if resp.content else {}
                return WriteResult(
                    ok=True,
                    status_code=resp.status_code,
                    data=data if data is not None else {},
                    latency_ms=latency,
                )
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("%s %s timed out after %.0fms", method, url, latency)
            return WriteResult(
                ok=False,
                status_code=0,
                latency_ms=latency,
                error=f"Timeout after {timeout or self.timeout}s",
            )
        except Exception as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("%s %s failed: %s", method, url, e)
            return WriteResult(ok=False, status_code=0, latency_ms=latency, error=str(e))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def write_message(self, message: MessageData, auth_token: str) -> WriteResult:
        """POST one message. Rejected locally if the conversation id is unusable."""
        if not message.conversation_id or message.conversation_id <= 0:
            logger.warning(
                "Invalid conversation_id, skipping message persistence: %s",
                message.conversation_id,
            )
            return WriteResult.rejected("Invalid conversation_id")
        try:
            message.validate()
        except ValidationError as e:
            logger.warning("Rejected message for conversation %s: %s", message.conversation_id, e.message)
            return WriteResult.rejected(e.message)

        if not message.metadata.get("timestamp"):
            message.metadata["timestamp"] = now_iso()

        body = {
            "sender": message.sender,
            "content": message.content,
            "message_type": message.message_type,
            "tool_data": json.dumps(message.tool_data.to_dict()) if message.tool_data else None,
            "response_time_ms": 0,
            "metadata": json.dumps(message.metadata) if message.metadata else None,
            "conversation_id": message.conversation_id,
            "parent_message_id": None,
        }

        result = await self._request("POST", f"{self.base_url}/message", auth_token, body)
        if result.ok:
            logger.debug(
                "Message persisted: id=%s conv=%s sender=%s type=%s",
                result.record_id, message.conversation_id, message.sender, message.message_type,
            )
        return result

    async def get_messages(self, conversation_id: int, auth_token: str) -> WriteResult:
        """Fetch a conversation's messages. data is always a list on success."""
        result = await self._request(
            "GET", f"{self.base_url}/message/all/{conversation_id}", auth_token
        )
        if result.ok:
            data = result.data
            result.data = data if isinstance(data, list) else (data.get("items") or [])
        return result

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, data: dict, auth_token: str) -> WriteResult:
        body = {
            "title": data.get("title") or generate_default_title(),
            "workspace_id": data.get("workspace_id"),
            "instance_domain": data.get("instance_domain"),
            "status": data.get("status") or "active",
            "user_id": data.get("user_id"),
        }
        result = await self._request("POST", f"{self.base_url}/conversation", auth_token, body)
        if result.ok:
            logger.info("Conversation created: id=%s title=%r", result.record_id, body["title"])
        return result

    async def get_conversation(self, conversation_id: int, auth_token: str) -> WriteResult:
        return await self._request(
            "GET", f"{self.base_url}/conversation/get/{conversation_id}", auth_token
        )

    async def update_conversation(
        self, conversation_id: int, updates: dict, auth_token: str
    ) -> WriteResult:
        return await self._request(
            "PATCH", f"{self.base_url}/conversation/{conversation_id}", auth_token, updates
        )

    async def delete_conversation(self, conversation_id: int, auth_token: str) -> WriteResult:
        result = await self._request(
            "DELETE", f"{self.base_url}/conversation/{conversation_id}", auth_token
        )
        if result.ok:
            logger.info("Conversation %s deleted", conversation_id)
        return result

    async def archive_conversation(self, conversation_id: int, auth_token: str) -> WriteResult:
        return await self.update_conversation(conversation_id, {"status": "archived"}, auth_token)

    # ------------------------------------------------------------------
    # Workspace / connectivity
    # ------------------------------------------------------------------

    async def validate_credentials(
        self, xano_token: str, workspace_id: int, instance_domain: str
    ) -> dict:
        """
        Check a platform token by listing the workspace's tables.

        Returns {"success": True, "user_info": {...}} or
        {"success": False, "error": "..."}.
        """
        result = await self._request(
            "GET",
            f"{self.meta_url}/workspace/{workspace_id}/table",
            xano_token,
            timeout=self.validation_timeout,
        )
        if not result.ok:
            if result.status_code:
                return {"success": False, "error": f"Invalid credentials: {result.error}"}
            return {"success": False, "error": f"Credential validation failed: {result.error}"}

        tables = result.data if isinstance(result.data, list) else result.data.get("items", [])
        return {
            "success": True,
            "user_info": {
                "instance_domain": instance_domain,
                "workspace_id": workspace_id,
                "tables_count": len(tables),
                "validated_at": now_iso(),
            },
        }

    async def health_check(self) -> bool:
        """Any HTTP answer from the base URL counts as reachable."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                await client.get(self.base_url)
                return True
        except Exception:
            return False

    def __repr__(self) -> str:
        return f"<XanoClient base_url={self.base_url!r}>"
