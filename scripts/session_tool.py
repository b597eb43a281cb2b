#!/usr/bin/env python3
"""Issue, inspect, refresh and revoke session tokens from the command line.

Usage:
    # Stateless tokens (JWT_SECRET from the environment or .env):
    python scripts/session_tool.py issue --subject 6f1c... --field role=admin
    python scripts/session_tool.py inspect <token>

    # Revocable tokens tracked in Redis:
    STORAGE_BACKEND=redis REDIS_URL=redis://localhost:6379/0 \
        python scripts/session_tool.py revoke <token>

Environment Variables:
    JWT_SECRET: Signing secret shared with the services validating tokens
    SESSION_TTL_MINUTES: Token lifetime (default 60)
    STORAGE_BACKEND: none, memory or redis (default none)
    REDIS_URL: Redis connection string when STORAGE_BACKEND=redis
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def parse_fields(pairs: List[str]) -> Dict[str, Any]:
    """Turn ``key=value`` pairs into session data; values are JSON when they parse."""
    data: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"expected key=value, got {pair!r}")
        try:
            data[key] = json.loads(raw)
        except json.JSONDecodeError:
            data[key] = raw
    return data


def _jsonable(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: str(v) if isinstance(v, uuid.UUID) else v for k, v in data.items()}


async def run_command(args: argparse.Namespace) -> Dict[str, Any]:
    # Import here so settings are read after argument parsing
    from gatekeeper.logging import set_correlation_id
    from gatekeeper.service.runtime import Runtime

    # One correlation id per invocation ties its log lines together
    set_correlation_id()
    runtime = Runtime()
    sessions = runtime.sessions
    try:
        if args.command == "issue":
            data = parse_fields(args.field)
            if args.subject:
                data["uuid"] = uuid.UUID(args.subject)
            if args.source:
                data["source"] = args.source
            return {"token": await sessions.create(data)}
        if args.command == "inspect":
            return {"data": _jsonable(await sessions.get(args.token))}
        if args.command == "refresh":
            return {"token": await sessions.refresh_token(args.token)}
        if args.command == "revoke":
            await sessions.delete(args.token)
            return {"revoked": True}
        if args.command == "list":
            return {"sessions": await sessions.list_sessions(args.subject)}
        if args.command == "ping":
            if runtime.storage is None:
                return {"storage": "none"}
            return {"storage": await runtime.storage.ping()}
        raise ValueError(f"unknown command {args.command}")
    finally:
        await runtime.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage gatekeeper session tokens")
    sub = parser.add_subparsers(dest="command", required=True)

    issue = sub.add_parser("issue", help="Create a new token")
    issue.add_argument("--subject", help="Subject UUID (required with storage)")
    issue.add_argument("--source", help="Trusted source name; the token never expires")
    issue.add_argument(
        "--field",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra application field, repeatable",
    )

    for name, help_text in (
        ("inspect", "Validate a token and print its data"),
        ("refresh", "Exchange a token for a new one"),
        ("revoke", "Revoke a token (needs storage)"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("token")

    list_cmd = sub.add_parser("list", help="List live session ids of a subject")
    list_cmd.add_argument("subject")

    sub.add_parser("ping", help="Check the storage backend")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    from gatekeeper.service.errors import SessionError
    from gatekeeper.storage.errors import StorageError

    try:
        result = asyncio.run(run_command(args))
    except SessionError as exc:
        print(json.dumps({"error": exc.error_code, "message": exc.message}))
        return 1
    except (StorageError, ValueError) as exc:
        print(json.dumps({"error": type(exc).__name__, "message": str(exc)}))
        return 1

    print(json.dumps(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
