import argparse
import asyncio
import logging
from pathlib import Path
from typing import Tuple

from cryptography.exceptions import InvalidKey, UnsupportedAlgorithm

from . import crypto
from .config import ServerConfig
from .errors import ConfigError
from .node import GatewayError, GatewayServer, HchatClient, build_handler
from .protocol import MAX_TOKEN_AGE_MS
from .substrate import ReplayGuard

"""
run_node.py — single entry point for the hchat gateway.

What you can do here:
- server:  run the gateway with the in-process pubsub + access manager
- cli:     one-shot client commands (publish, subscribe) against a gateway
"""

logger = logging.getLogger(__name__)


# -------------------------
# Process runners
# -------------------------

async def run_server(config: ServerConfig, single_use: bool) -> None:
    """Serve forever on the configured host:port."""
    guard = ReplayGuard(ttl_ms=MAX_TOKEN_AGE_MS) if single_use else None
    server = GatewayServer(build_handler(config, replay_guard=guard), config.host, config.port)
    await server.serve_forever()


def load_sender_key(path: str) -> Tuple[str, object]:
    """Key file holds the base64 PKCS#8 body printed by generate_keys.py."""
    priv = crypto.load_private_key_b64(Path(path).expanduser().read_text())
    return crypto.export_public_key_b64(priv.public_key()), priv


async def run_cli(args: argparse.Namespace, host: str, port: int, public_key_b64: str, priv) -> None:
    """
    One-shot client:
      - publish:    sign and publish a message on one channel
      - subscribe:  obtain a read grant for a list of channels
    """
    async with HchatClient(host, port, public_key_b64, priv) as client:
        try:
            if args.command == "publish":
                await client.publish(args.channel, args.message)
                print(f"Published to {args.channel}")
            elif args.command == "subscribe":
                grant = await client.subscribe(args.channels)
                print(f"subscribe key: {grant.subscribe_key}")
                print(f"read token:    {grant.token}")
        except GatewayError as exc:
            raise SystemExit(f"Gateway rejected request: {exc}")


# -------------------------
# CLI parsing
# -------------------------

def parse_addr(value: str) -> Tuple[str, int]:
    """'host:port' -> (host, port); ValueError if it isn't one."""
    host, sep, port_str = value.rpartition(":")
    if not sep or not host:
        raise ValueError(f"expected host:port, got {value!r}")
    port = int(port_str)
    if not 0 < port < 65536:
        raise ValueError(f"port out of range: {port}")
    return host, port


def parse_args(argv=None) -> argparse.Namespace:
    """
    Modes:
      --mode server
      --mode cli --gateway host:port --key-file PATH publish --channel C words...
      --mode cli --gateway host:port --key-file PATH subscribe --channels a b
    """
    p = argparse.ArgumentParser(prog="hchat")
    p.add_argument("--mode", choices=["server", "cli"], required=True)
    p.add_argument("--gateway", help="host:port of a running gateway (cli mode)")
    p.add_argument("--key-file", help="file with the sender's base64 private key (cli mode)")
    p.add_argument("--single-use", action="store_true",
                   help="server: reject a second redemption of the same token")

    sub = p.add_subparsers(dest="command")
    sub.required = False

    sp = sub.add_parser("publish")
    sp.add_argument("--channel", required=True)
    sp.add_argument("message", nargs=argparse.REMAINDER)

    sp = sub.add_parser("subscribe")
    sp.add_argument("--channels", nargs="+", required=True)

    return p.parse_args(argv)


# -------------------------
# Main entrypoint
# -------------------------

def main(argv=None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    if args.mode == "server":
        try:
            config = ServerConfig.from_env()
        except ConfigError as exc:
            raise SystemExit(f"Configuration error: {exc}")
        logging.basicConfig(level=config.log.level, format=config.log.format)
        asyncio.run(run_server(config, args.single_use))

    elif args.mode == "cli":
        if not args.gateway or not args.key_file or not args.command:
            raise SystemExit("--gateway, --key-file and a command are required for cli mode")
        try:
            host, port = parse_addr(args.gateway)
        except ValueError as exc:
            raise SystemExit(f"Bad --gateway: {exc}")
        try:
            public_key_b64, priv = load_sender_key(args.key_file)
        except OSError as exc:
            raise SystemExit(f"Cannot read --key-file: {exc}")
        except (ValueError, TypeError, InvalidKey, UnsupportedAlgorithm) as exc:
            raise SystemExit(f"--key-file does not hold a usable RSA private key: {exc}")
        logging.basicConfig(level=logging.WARNING)
        if args.command == "publish":
            args.message = " ".join(args.message or [])
        asyncio.run(run_cli(args, host, port, public_key_b64, priv))


if __name__ == "__main__":
    main()
