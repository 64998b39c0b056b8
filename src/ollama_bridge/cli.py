"""Command-line interface for ollama-bridge.

Provides the main entry point for running the bridge and for managing
the stored managed-tunnel credential.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="ollama-bridge",
        description="Expose a local Ollama server through an authenticated public tunnel",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/ollama-bridge.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Start the bridge")
    run_parser.add_argument(
        "--ollama-url", type=str, default=None,
        help="Ollama server URL (default: http://localhost:11434)",
    )
    run_parser.add_argument(
        "--port", type=int, default=None,
        help="Preferred local port (default: 3535, next free port is used)",
    )
    run_parser.add_argument(
        "--subdomain", type=str, default=None,
        help="Requested relay subdomain",
    )
    run_parser.add_argument(
        "--tunnel", choices=["relay", "managed"], default=None,
        help="Tunnel provider",
    )
    run_parser.add_argument(
        "--domain", type=str, default=None,
        help="Reserved domain for the managed tunnel",
    )
    run_parser.add_argument(
        "--qr", action="store_true", default=None,
        help="Print a QR code with the connection details",
    )

    cred_parser = subparsers.add_parser(
        "credential", help="Manage the stored managed-tunnel authtoken",
    )
    cred_sub = cred_parser.add_subparsers(dest="action", required=True)
    set_parser = cred_sub.add_parser("set", help="Store an authtoken")
    set_parser.add_argument("token", help="ngrok authtoken")
    cred_sub.add_parser("show", help="Show whether an authtoken is stored")
    cred_sub.add_parser("clear", help="Remove the stored authtoken")

    return parser.parse_args(argv)


def apply_run_overrides(settings, args: argparse.Namespace) -> None:
    """Command-line flags win over every other configuration source."""
    if args.ollama_url:
        settings.upstream.url = args.ollama_url
    if args.port is not None:
        settings.server.port = args.port
    if args.subdomain:
        settings.relay.subdomain = args.subdomain
    if args.tunnel:
        settings.tunnel.provider = args.tunnel
    if args.domain:
        settings.managed.domain = args.domain
    if args.qr:
        settings.display.qr = True


def _mask(token: str) -> str:
    if len(token) <= 8:
        return "*" * len(token)
    return f"{token[:4]}...{token[-4:]}"


def _credential(store, args: argparse.Namespace) -> int:
    if args.action == "set":
        try:
            store.set(args.token)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(f"Authtoken saved to {store.path}")
    elif args.action == "show":
        token = store.get()
        if token:
            print(f"Authtoken {_mask(token)} stored in {store.path}")
        else:
            print("No authtoken stored")
    elif args.action == "clear":
        if store.clear():
            print("Authtoken removed")
        else:
            print("No authtoken stored")
    return 0


async def _run_bridge(settings, store) -> int:
    """Build the tunnel manager and run one bridge session."""
    from ollama_bridge.domain.errors import BridgeError
    from ollama_bridge.lifecycle.controller import LifecycleController
    from ollama_bridge.tunnel import create_tunnel_manager
    from ollama_bridge.utils.display import ConsoleDisplay

    display = ConsoleDisplay(show_qr=settings.display.qr)
    try:
        tunnel_manager = create_tunnel_manager(settings, store)
    except BridgeError as e:
        logger.error("Tunnel setup failed: %s", e)
        display.error(str(e))
        return e.exit_code

    controller = LifecycleController(settings, tunnel_manager, display=display)
    return await controller.run()


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the ollama-bridge CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from ollama_bridge.config.settings import load_settings
    from ollama_bridge.config.store import CredentialStore
    from ollama_bridge.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)
    store = CredentialStore(settings.store.path)

    if args.command == "credential":
        sys.exit(_credential(store, args))

    elif args.command == "run":
        apply_run_overrides(settings, args)
        logger.info("Starting bridge for %s", settings.upstream.url)
        sys.exit(asyncio.run(_run_bridge(settings, store)))


if __name__ == "__main__":
    main()
