#!/usr/bin/env python3
"""
toschat CLI.

    COMMAND         ALIAS       WHAT IT DOES
    -------         -----       ----------------------------------
    serve           start       Start the toschat HTTP service
    queue           status      Show what is waiting in the local queue
    clear-failed                Drop permanently failed messages from the queue
"""

import argparse
import json
import sys

__version__ = "1.0.0"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the toschat service."""
    import uvicorn
    from toschat.config import get_section

    cfg = get_section("server")
    host = args.host or cfg["host"]
    port = args.port or cfg["port"]

    print(f"  toschat v{__version__} on {host}:{port}")
    print(f"  Remote: {get_section('remote')['base_url']}")
    print()

    uvicorn.run(
        "toschat.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def _open_queue():
    """Load the persisted queue without starting timers or draining."""
    from toschat.backends.xano import XanoClient
    from toschat.config import get_section
    from toschat.message_queue import DurableQueue
    from toschat.storage import SQLiteKVStore

    cfg = get_section("queue")
    store = SQLiteKVStore(cfg["storage_path"])
    return DurableQueue(
        XanoClient.from_config(get_section("remote")),
        store,
        max_retries=int(cfg["max_retries"]),
        batch_size=int(cfg["batch_size"]),
        online=False,
        eager=False,
    )


def cmd_queue(args):
    """Print queue status (and the failed items with --failed)."""
    queue = _open_queue()
    status = queue.get_status()
    del status["is_online"], status["is_processing"]

    if args.json:
        out = dict(status)
        if args.failed:
            out["failed_items"] = [m.to_dict() for m in queue.failed_messages()]
        print(json.dumps(out, indent=2))
        return

    msgs = status["messages"]
    print(f"  Messages:  {msgs['pending']} pending, {msgs['processing']} processing, {msgs['failed']} failed")
    print(f"  Updates:   {status['conversations']} conversation updates")
    if args.failed:
        for m in queue.failed_messages():
            data = m.message_data
            print(f"    {m.id}  conv={data.conversation_id}  {data.sender}: {data.content[:60]!r}")


def cmd_clear_failed(args):
    """Remove failed messages from the persisted queue."""
    queue = _open_queue()
    cleared = queue.clear_failed_messages()
    print(f"  Cleared {cleared} failed message(s)")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_command(sub, names: list[str], handler, help_text: str):
    primary = names[0]
    p = sub.add_parser(primary, aliases=names[1:], help=help_text)
    p.set_defaults(func=handler)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toschat",
        description="Session and chat persistence service for the Tos assistant",
    )
    parser.add_argument("--version", action="version", version=f"toschat {__version__}")
    sub = parser.add_subparsers(dest="command")

    p = _add_command(sub, ["serve", "start"], cmd_serve, "Start the toschat service")
    p.add_argument("--host", default=None, help="Bind address (default from config)")
    p.add_argument("--port", type=int, default=None, help="Port (default from config)")
    p.add_argument("--reload", action="store_true", help="Auto-reload on code changes")

    p = _add_command(sub, ["queue", "status"], cmd_queue, "Show the local queue")
    p.add_argument("--failed", action="store_true", help="List failed messages")
    p.add_argument("--json", action="store_true", help="Machine-readable output")

    _add_command(sub, ["clear-failed"], cmd_clear_failed, "Drop failed messages")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    args.func(args)
    return 0


if __name__ == "__main__":
    sys.exit(main())
