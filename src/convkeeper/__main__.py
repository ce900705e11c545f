"""Entry point: python -m convkeeper"""

from __future__ import annotations

import argparse
import asyncio
import sys

import httpx

from .config import AppConfig
from .logging_config import setup_logging


async def _with_store(config: AppConfig, fn):
    from .store.db import SessionStore

    store = SessionStore(config.db_path)
    await store.connect()
    try:
        return await fn(store)
    finally:
        await store.close()


async def _info(config: AppConfig, user_id: str) -> str:
    from .rotation.history import format_session_info

    async def run(store):
        return format_session_info(await store.read_active(user_id))

    return await _with_store(config, run)


async def _sessions(config: AppConfig, user_id: str) -> str:
    from .rotation.history import format_session_list

    async def run(store):
        return format_session_list(
            await store.read_active(user_id), await store.list_archived(user_id),
        )

    return await _with_store(config, run)


async def _history(config: AppConfig, user_id: str) -> str:
    from .rotation.history import render_session_history

    async def run(store):
        text = await render_session_history(store, user_id, config.max_recent_sessions)
        return text or "No session history."

    return await _with_store(config, run)


async def _rotate(config: AppConfig, user_id: str) -> str:
    from .rotation.engine import RotationEngine, RotationReason
    from .server import build_summarizer

    async def run(store):
        current = await store.read_active(user_id)
        if current is None or not current.external_session_id:
            return "No active session to rotate. A new session will be created on the next message."
        async with httpx.AsyncClient(base_url=config.summary_api_url) as http_client:
            engine = RotationEngine(store, build_summarizer(config, http_client), config)
            new_session = await engine.rotate_session(
                user_id, RotationReason.MANUAL, expected_local_id=current.local_id,
            )
        if new_session is None:
            return "Session changed while rotating. Nothing was archived."
        return (
            "Session rotated.\n"
            f"  Old session: {current.local_id} ({current.message_count} messages, "
            f"{current.total_turns} turns)\n"
            f"  New session: {new_session.local_id}"
        )

    return await _with_store(config, run)


_COMMANDS = {
    "info": _info,
    "sessions": _sessions,
    "history": _history,
    "rotate": _rotate,
}


def main() -> None:
    parser = argparse.ArgumentParser(description="Conversation session keeper")
    parser.add_argument("--db-path", default=None, help="SQLite path (default: data/convkeeper.sqlite)")
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the admin HTTP server")
    serve.add_argument("--host", default=None, help="Bind host (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: 8765)")

    for name, help_text in (
        ("info", "Show the active session"),
        ("sessions", "List active and archived sessions"),
        ("history", "Render the session history given to the agent"),
        ("rotate", "Archive the active session and start a new one"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("user_id", help="User id")

    args = parser.parse_args()

    config = AppConfig()
    if args.db_path:
        config.db_path = args.db_path
    if args.log_level:
        config.log_level = args.log_level

    setup_logging(config.log_dir, config.log_level, console=args.command == "serve")

    if args.command == "serve":
        if args.host:
            config.host = args.host
        if args.port:
            config.port = args.port
        from .server import run_server
        run_server(config)
        return

    output = asyncio.run(_COMMANDS[args.command](config, args.user_id))
    print(output)
    sys.exit(0)


if __name__ == "__main__":
    main()
