import argparse
import asyncio
import json
import secrets
import sys
from pathlib import Path
from typing import List, Optional

import httpx

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .schemas import ChatMessage, ChatRequest, ToolEndEvent, ToolStartEvent
from .stream import ChatStreamClient, StreamCallbacks


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_tool_event(event) -> None:
    if isinstance(event, ToolStartEvent):
        print(f"[{event.tool}] {json.dumps(event.input, ensure_ascii=False)}", file=sys.stderr)
    elif isinstance(event, ToolEndEvent):
        print(f"[{event.tool}] -> {event.output}", file=sys.stderr)


async def _stream_chat(args: argparse.Namespace) -> int:
    request = ChatRequest(
        messages=[ChatMessage(role="user", content=" ".join(args.prompt), images=args.image or None)],
        mode=args.mode,
        workspace_id=args.workspace,
        enable_tools=False if args.no_tools else None,
    )
    failures: List[str] = []

    def on_error(message: str) -> None:
        failures.append(message)
        print(f"\nError: {message}", file=sys.stderr)

    callbacks = StreamCallbacks(
        on_tool_event=_print_tool_event,
        on_delta=lambda text: print(text, end="", flush=True),
        on_done=lambda: print(),
        on_error=on_error,
    )
    client = ChatStreamClient(args.base_url or DEFAULT_API_BASE, token=args.token)
    try:
        await client.stream(request, callbacks)
    finally:
        await client.close()
    return 1 if failures else 0


def run_chat(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_stream_chat(args))
    except KeyboardInterrupt:
        print("\nStopped.")
        return 130


def run_tool(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    try:
        tool_input = json.loads(args.input) if args.input else {}
    except json.JSONDecodeError as exc:
        print(f"Invalid --input JSON: {exc}", file=sys.stderr)
        return 1
    headers = {"Authorization": f"Bearer {args.token}"} if args.token else {}
    with httpx.Client() as client:
        resp = client.post(
            _join_url(base, "/api/tools/execute"),
            json={"tool_name": args.name, "input": tool_input},
            headers=headers,
            timeout=120,
        )
        if resp.status_code >= 400:
            print(f"Tool call failed: HTTP {resp.status_code}", file=sys.stderr)
            return 1
        data = resp.json()
    print(data.get("result", ""))
    print(f"({data.get('duration_ms', 0)} ms)", file=sys.stderr)
    return 0


async def _issue_token(database_path: str, user_id: str) -> str:
    db = Database(database_path)
    await db.init()
    token = secrets.token_urlsafe(24)
    await db.add_auth_token(token, user_id)
    return token


def run_issue_token(args: argparse.Namespace) -> int:
    settings = load_settings()
    token = asyncio.run(_issue_token(args.db or settings.database_path, args.user))
    print(token)
    return 0


def run_write_config(args: argparse.Namespace) -> int:
    settings = load_settings()
    path = Path(args.path) if args.path else CONFIG_PATH
    # The key stays in the environment; load_settings() resolves the mask back to it.
    save_settings(AppSettings(**settings.to_safe_dict()), path)
    print(f"Wrote {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="NeonChat CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--token", help="Bearer token identifying the user")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send one message and stream the reply")
    chat.add_argument("prompt", nargs="+", help="Message text")
    chat.add_argument("--mode", help="Built-in mode key (default, study, agent, plan, ask)")
    chat.add_argument("--workspace", help="Workspace id for semantic recall")
    chat.add_argument("--image", action="append", help="Image URL or data URL (repeatable)")
    chat.add_argument("--no-tools", action="store_true", help="Skip the tool probe")

    tool = subparsers.add_parser("tool", help="Run a single tool on the server")
    tool.add_argument("name", help="Tool name (math, web_search)")
    tool.add_argument("--input", help="Tool input as a JSON object")

    token = subparsers.add_parser("issue-token", help="Create a bearer token for a user")
    token.add_argument("--user", required=True, help="User id")
    token.add_argument("--db", help="SQLite database path (defaults to the configured one)")

    config = subparsers.add_parser("write-config", help="Write the effective settings to config.json")
    config.add_argument("--path", help="Destination file")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "tool":
        return run_tool(args)
    if args.command == "issue-token":
        return run_issue_token(args)
    if args.command == "write-config":
        return run_write_config(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
