"""Pairing and credential diagnostics for relay sessions.

    # Show effective configuration and stored credentials
    relay-session check

    # Forget a session's credential (forces a new pairing)
    relay-session clear ops

    # Connect through a bridge, print the pairing challenge, wait for ready
    relay-session connect --url ws://127.0.0.1:8765/session --session ops
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Any, Sequence

from ._version import __version__
from .bridge import BridgeTransport
from .controller import SessionController
from .credentials import FileCredentialStore
from .errors import RelaySessionError
from .types import Session, SessionConfig


def _print_config(config: SessionConfig) -> None:
    print("Configuration (RELAY_* environment):")
    print(f"  ready_timeout:          {config.ready_timeout:.0f}s")
    print(f"  pairing_timeout:        {config.pairing_timeout:.0f}s")
    print(f"  max_init_retries:       {config.max_init_retries}")
    print(f"  max_reconnect_attempts: {config.max_reconnect_attempts}")
    interval = (
        f"{config.health_check_interval:.0f}s"
        if config.health_check_enabled
        else "disabled"
    )
    print(f"  health_check_interval:  {interval}")
    print(f"  clear_credentials_on_reinit: {config.clear_credentials_on_reinit}")
    rl = config.rate_limit
    print(
        f"  rate_limit:             {rl.capacity} per {rl.window:.0f}s, "
        f"min spacing {rl.min_spacing * 1000:.0f}ms"
    )


def cmd_check(args: argparse.Namespace) -> int:
    try:
        config = SessionConfig.from_env()
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    _print_config(config)
    print()

    store = FileCredentialStore(args.auth_dir)
    root = store.root
    print("Credential storage:")
    print(f"  path:   {root}")
    print(f"  exists: {'yes' if root.is_dir() else 'no'}")
    sessions = store.list_sessions()
    print(f"  stored sessions: {len(sessions)}")
    for session_id in sessions:
        path = store.path_for(session_id)
        print(f"    - {session_id} ({path.stat().st_size} bytes)")
    if not sessions:
        print("  No stored credentials: every session will need pairing.")
    return 0


def cmd_clear(args: argparse.Namespace) -> int:
    store = FileCredentialStore(args.auth_dir)
    removed = asyncio.run(store.clear(args.session))
    if removed:
        print(f"Cleared credential for {args.session!r}; next start will require pairing.")
        return 0
    print(f"No stored credential for {args.session!r} under {store.root}")
    return 1


async def _connect(args: argparse.Namespace) -> int:
    config = SessionConfig.from_env()
    controller = SessionController(
        args.session,
        BridgeTransport.factory(args.url),
        config=config,
        credential_store=FileCredentialStore(args.auth_dir),
    )

    def on_pairing(session: Session, payload: Any) -> None:
        print(f"Pairing challenge for {session.id!r}:")
        print(payload)

    def on_state(session: Session, old: Any, new: Any) -> None:
        print(f"  state: {old.value} -> {new.value}")

    controller.on("pairing_challenge", on_pairing)
    controller.on("state_changed", on_state)
    try:
        try:
            await controller.initialize()
            await controller.wait_until_ready(args.timeout)
        except RelaySessionError as exc:
            print(f"Session not ready: {exc}", file=sys.stderr)
            return 1

        print(f"Session {args.session!r} is ready.")
        if args.keep_open:
            print("Listening for messages... (Ctrl+C to stop)")
            controller.on("message", lambda _s, event: print(f"[message] {event}"))
            await asyncio.Event().wait()
        return 0
    finally:
        print(f"Final state: {controller.state.value}")
        await controller.destroy()


def cmd_connect(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_connect(args))
    except KeyboardInterrupt:
        return 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relay-session", description="Relay session diagnostics"
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--auth-dir",
        default=os.environ.get("RELAY_AUTH_DIR") or None,
        help="Credential directory (default: ~/.relay_session/auth)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_check = sub.add_parser("check", help="Show configuration and stored credentials")
    p_check.set_defaults(func=cmd_check)

    p_clear = sub.add_parser("clear", help="Delete a session's stored credential")
    p_clear.add_argument("session")
    p_clear.set_defaults(func=cmd_clear)

    p_connect = sub.add_parser("connect", help="Connect through a bridge and wait for ready")
    p_connect.add_argument("--url", required=True, help="Bridge WebSocket URL")
    p_connect.add_argument("--session", required=True, help="Session id")
    p_connect.add_argument(
        "--timeout", type=float, default=None, help="Seconds to wait for ready"
    )
    p_connect.add_argument(
        "--keep-open", action="store_true", help="Stay connected and print messages"
    )
    p_connect.set_defaults(func=cmd_connect)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
