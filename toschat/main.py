"""
FastAPI application: the toschat entry point.

Wires the pieces together at startup (there are no module-level singletons in
the components themselves; this module is the composition root):
  - SessionStore with its hourly sweep
  - XanoClient + RetryingWriter for the direct-write path
  - SQLite-backed DurableQueue with its 2s drain timer
  - one ConversationController per session, created on first use
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from toschat.backends.retry_wrapper import RetryingWriter
from toschat.backends.xano import XanoClient
from toschat.cli import __version__
from toschat.config import get_config, get_section
from toschat.controller import ACTIVE_CONVERSATION_KEY, ConversationController
from toschat.errors import Unauthorized
from toschat.message_queue import DurableQueue
from toschat.sessions import Session, SessionStore
from toschat.storage import KeyValueStore, make_store

# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
session_store: SessionStore | None = None
xano_client: XanoClient | None = None
direct_writer: RetryingWriter | None = None
local_store: KeyValueStore | None = None
message_queue: DurableQueue | None = None
controllers: dict[str, ConversationController] = {}
_started_at = time.monotonic()

logger = logging.getLogger(__name__)


def _setup_logging(cfg: dict):
    level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global session_store, xano_client, direct_writer, local_store, message_queue

    _setup_logging(get_section("logging"))

    session_store = SessionStore.from_config(get_section("sessions"))
    xano_client = XanoClient.from_config(get_section("remote"))
    direct_writer = RetryingWriter.from_config(xano_client, get_section("direct_write"))

    queue_cfg = get_section("queue")
    store_type = queue_cfg.get("storage", "sqlite")
    store_kwargs = {"db_path": queue_cfg["storage_path"]} if store_type == "sqlite" else {}
    local_store = make_store(store_type, **store_kwargs)
    message_queue = DurableQueue.from_config(xano_client, local_store, queue_cfg)
    controllers.clear()

    session_store.start()
    message_queue.start()

    logger.info(
        "toschat started: sessions expire after %.0fs, queue batch %d every %.1fs, remote %s",
        session_store.timeout, message_queue.batch_size, message_queue.interval, xano_client.base_url,
    )

    yield

    logger.info("toschat shutting down")
    await message_queue.stop()
    await session_store.stop()


app = FastAPI(
    title="toschat",
    description="Session and chat persistence service for the Tos assistant.",
    version=__version__,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def _session_id_from(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer "):].strip() or None
    return request.headers.get("x-session-id") or request.query_params.get("session_id")


def _authenticate(request: Request) -> Session:
    """Validate and slide the caller's session. Raises Unauthorized."""
    return session_store.require(_session_id_from(request))


@app.exception_handler(Unauthorized)
async def _unauthorized(request: Request, exc: Unauthorized):
    return JSONResponse({"error": exc.message}, status_code=401)


def _controller_for(session: Session) -> ConversationController:
    ctl = controllers.get(session.session_id)
    if ctl is None:
        ctl = ConversationController(
            client=xano_client,
            writer=direct_writer,
            queue=message_queue,
            store=local_store,
            auth_token=session.xano_token,
            workspace={
                "target_workspace_id": session.workspace_id,
                "instance_domain": session.instance_domain,
            },
            user=session.user_info,
            store_key=f"{ACTIVE_CONVERSATION_KEY}:{session.workspace_id}",
        )
        controllers[session.session_id] = ctl
    return ctl


def _transcript(ctl: ConversationController) -> dict:
    return {
        "conversation_id": ctl.active_conversation_id,
        "is_new_conversation": ctl.context.is_new_conversation,
        "message_count": ctl.context.message_count,
        "messages": [m.to_dict() for m in ctl.messages],
        "is_loading": ctl.is_loading,
        "error": ctl.error,
    }


# ---------------------------------------------------------------------------
# Health / sessions
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return JSONResponse({
        "status": "healthy",
        "app": "toschat",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - _started_at, 1),
    })


@app.post("/api/session")
async def create_session(request: Request):
    """Validate platform credentials upstream and open a session for them."""
    body = await request.json()
    xano_token = body.get("xano_token")
    workspace_id = body.get("workspace_id")
    instance_domain = body.get("instance_domain")

    if not xano_token or not workspace_id or not instance_domain:
        return JSONResponse(
            {"success": False, "error": "Missing required fields: xano_token, workspace_id, instance_domain"},
            status_code=400,
        )

    try:
        workspace_id = int(workspace_id)
    except (TypeError, ValueError):
        return JSONResponse({"success": False, "error": "workspace_id must be an integer"}, status_code=400)
    instance_domain = str(instance_domain).rstrip("/")

    validation = await xano_client.validate_credentials(xano_token, workspace_id, instance_domain)
    if not validation.get("success"):
        return JSONResponse(validation, status_code=401)

    session = session_store.create_session({
        "xano_token": xano_token,
        "workspace_id": workspace_id,
        "instance_domain": instance_domain,
        "user_info": validation.get("user_info", {}),
    })
    return JSONResponse({
        "success": True,
        "session_id": session.session_id,
        "user_info": session.user_info,
    })


@app.get("/api/session")
async def get_session(request: Request):
    session = _authenticate(request)
    return JSONResponse(session.summary())


@app.delete("/api/session/{session_id}")
async def delete_session(session_id: str, request: Request):
    """Logout. A session may only end itself."""
    caller = _authenticate(request)
    if caller.session_id != session_id:
        return JSONResponse({"success": False, "error": "Cannot delete another session"}, status_code=403)
    deleted = session_store.delete_session(session_id)
    controllers.pop(session_id, None)
    return JSONResponse({"success": deleted})


@app.get("/debug/sessions")
async def debug_sessions():
    if get_config().get("environment", "development") == "production":
        return JSONResponse({"error": "Not found"}, status_code=404)
    return JSONResponse({
        "total_sessions": session_store.session_count,
        "sessions": session_store.list_sessions(),
    })


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@app.post("/api/v1/conversations")
async def new_conversation(request: Request):
    ctl = _controller_for(_authenticate(request))
    result = await ctl.start_new_conversation()
    return JSONResponse({"success": result.ok, "error": result.error or None, **_transcript(ctl)})


@app.post("/api/v1/conversations/{conversation_id}/open")
async def open_conversation(conversation_id: int, request: Request):
    ctl = _controller_for(_authenticate(request))
    result = await ctl.switch_to_conversation(conversation_id)
    status = 200 if result.ok else 404
    return JSONResponse({"success": result.ok, "error": result.error or None, **_transcript(ctl)}, status_code=status)


@app.delete("/api/v1/conversations/{conversation_id}")
async def delete_conversation(conversation_id: int, request: Request):
    session = _authenticate(request)
    ctl = _controller_for(session)
    result = await xano_client.delete_conversation(conversation_id, session.xano_token)
    if not result.ok:
        return JSONResponse({"success": False, "error": result.error}, status_code=502)
    cleared = ctl.handle_conversation_deleted(conversation_id)
    return JSONResponse({"success": True, "cleared_active": cleared})


@app.get("/api/v1/transcript")
async def transcript(request: Request):
    ctl = _controller_for(_authenticate(request))
    return JSONResponse(_transcript(ctl))


@app.post("/api/v1/messages")
async def post_message(request: Request):
    """
    Persist one chat turn for the active conversation.
    Body: {"sender": "user"|"assistant", "content": "...", "tool_data": {...}?}
    """
    ctl = _controller_for(_authenticate(request))
    body = await request.json()
    sender = body.get("sender", "user")
    content = body.get("content", "")
    # Only a conversation started here gets a title from its first message.
    was_new = ctl.context.is_new_conversation

    if sender == "assistant":
        result = await ctl.persist_assistant_message(content, body.get("tool_data"))
    elif sender == "user":
        result = await ctl.persist_user_message(content)
    else:
        return JSONResponse({"success": False, "error": f"Unsupported sender: {sender}"}, status_code=400)

    if result.ok and sender == "user" and was_new:
        ctl.update_conversation_title(content)

    status = 200 if result.ok else 502
    return JSONResponse({"success": result.ok, "message_id": result.value, "error": result.error or None},
                        status_code=status)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

@app.get("/api/v1/queue")
async def queue_status(request: Request):
    _authenticate(request)
    return JSONResponse(message_queue.get_status())


@app.post("/api/v1/queue/flush")
async def queue_flush(request: Request):
    _authenticate(request)
    report = await message_queue.force_process()
    return JSONResponse(report.to_dict())


@app.post("/api/v1/queue/online")
async def queue_online(request: Request):
    _authenticate(request)
    body = await request.json()
    message_queue.set_online(bool(body.get("online", True)))
    return JSONResponse(message_queue.get_status())


@app.delete("/api/v1/queue/failed")
async def queue_clear_failed(request: Request):
    _authenticate(request)
    return JSONResponse({"cleared": message_queue.clear_failed_messages()})
