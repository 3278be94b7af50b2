"""CLI entry points for the status client and the status mirror server."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path

from mcprobe.address import Address, AddressError
from mcprobe.client import PongMismatchError, SlpClient
from mcprobe.config import (
    CONFIG_FILE,
    AppConfig,
    ConfigError,
    ProbeDefaults,
    ServerConfig,
    load_config,
)
from mcprobe.fingerprint import Fingerprinter, FingerprintResult, fingerprint_with_protocol
from mcprobe.formatting import format_status_report
from mcprobe.protocol import ProbeError
from mcprobe.response import StatusResponse
from mcprobe.server import StatusServer, default_status

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the client."""
    parser = argparse.ArgumentParser(
        prog="mcprobe",
        description="Query, ping and fingerprint Minecraft servers",
    )
    parser.add_argument(
        "server",
        nargs="?",
        help="Server name (from config), host, or host:port (e.g., mc.example.com:25565)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Socket timeout in seconds (default: 5)",
    )
    parser.add_argument(
        "--protocol",
        type=int,
        help="Protocol version announced in the status handshake (default: 760)",
    )
    parser.add_argument(
        "--no-srv",
        dest="srv",
        action="store_false",
        default=None,
        help="Do not look up SRV records",
    )
    parser.add_argument(
        "--no-fingerprint",
        dest="fingerprint",
        action="store_false",
        default=None,
        help="Skip the software fingerprint",
    )
    parser.add_argument(
        "--no-color",
        dest="color",
        action="store_false",
        default=None,
        help="Strip formatting codes instead of converting to ANSI colors",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Print the status document as JSON",
    )
    parser.add_argument(
        "-i",
        "--interactive",
        action="store_true",
        default=False,
        help="Start an interactive shell",
    )
    _add_common_arguments(parser)
    return parser


def build_server_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the status mirror server."""
    parser = argparse.ArgumentParser(
        prog="mcprobe-server",
        description="Answer Minecraft status, ping and login requests",
    )
    parser.add_argument("--host", help="Address to listen on (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: 25565)")
    parser.add_argument(
        "--timeout",
        type=float,
        help="Per-connection read timeout in seconds (default: 5)",
    )
    _add_common_arguments(parser)
    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_FILE,
        help=f"Config file (default: {CONFIG_FILE})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Enable debug logging",
    )


def configure_logging(*, verbose: bool, default: int = logging.WARNING) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else default,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def apply_overrides(defaults: ProbeDefaults, args: argparse.Namespace) -> ProbeDefaults:
    """Return the probe settings with any command line flags applied."""
    overrides = {
        name: getattr(args, name)
        for name in ("timeout", "protocol", "srv", "fingerprint", "color")
        if getattr(args, name, None) is not None
    }
    return dataclasses.replace(defaults, **overrides)


def select_server(config: AppConfig) -> tuple[str, ServerConfig]:
    """Prompt the user to select from configured servers.

    Returns (key, ServerConfig).
    """
    servers = list(config.servers.items())
    if not servers:
        print("No servers configured.", file=sys.stderr)
        sys.exit(1)

    print("Available servers:")
    for i, (_key, srv) in enumerate(servers, 1):
        print(f"  {i}. {srv.name} ({srv.address})")

    while True:
        try:
            choice = input(f"\nSelect server [1-{len(servers)}]: ").strip()
            idx = int(choice) - 1
            if 0 <= idx < len(servers):
                return servers[idx]
        except (ValueError, EOFError):
            pass
        print(f"Please enter a number between 1 and {len(servers)}")


def resolve_server(server_arg: str | None, config: AppConfig) -> tuple[str, Address]:
    """Resolve the target server from CLI arg or interactive selection.

    Returns (display_name, Address). Raises AddressError for an invalid
    address.
    """
    if server_arg is not None:
        # Configured names take precedence over host parsing
        if server_arg in config.servers:
            server = config.servers[server_arg]
            return server.name, Address.parse(server.address)
        return server_arg, Address.parse(server_arg)

    if config.default_server and config.default_server in config.servers:
        server = config.servers[config.default_server]
        return server.name, Address.parse(server.address)

    _key, server = select_server(config)
    return server.name, Address.parse(server.address)


def query_status(address: Address, options: ProbeDefaults) -> StatusResponse:
    """Query the status and latency of a server over one connection.

    A pong with the wrong payload still yields a latency, which is used with
    a warning.
    """
    with SlpClient(
        address, timeout=options.timeout, protocol=options.protocol, srv=options.srv
    ) as client:
        response = client.status()
        try:
            latency = client.ping()
        except PongMismatchError as e:
            log.warning("%s", e)
            latency = e.latency
    return response.with_latency(latency)


def probe(
    address: Address,
    options: ProbeDefaults,
    fingerprinter: Fingerprinter,
) -> tuple[StatusResponse, FingerprintResult | None]:
    """Query status and latency, then fingerprint if enabled.

    The fingerprint uses the protocol version the server reported so the
    probe is not rejected as a version mismatch.
    """
    response = query_status(address, options)
    if not options.fingerprint:
        return response, None

    result = fingerprint_with_protocol(
        address,
        response.version.protocol,
        timeout=options.timeout,
        srv=options.srv and not address.srv_resolved,
        fingerprinter=fingerprinter,
    )
    return response, result


def render(
    response: StatusResponse,
    result: FingerprintResult | None,
    *,
    as_json: bool,
    color: bool,
) -> str:
    """Render a probe result for printing."""
    if not as_json:
        return format_status_report(response, result, color=color)

    data = response.to_dict()
    if result is not None:
        data["fingerprint"] = str(result.label)
        if result.reason is not None:
            data["fingerprintError"] = str(result.reason)
    return json.dumps(data, indent=2, ensure_ascii=False)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the client CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    options = apply_overrides(config.defaults, args)
    fingerprinter = Fingerprinter(extra_patterns=config.patterns)

    if args.interactive:
        # Imported lazily so one-shot queries do not load prompt_toolkit
        from mcprobe.repl import run_repl

        run_repl(config, options, fingerprinter)
        return

    try:
        display_name, address = resolve_server(args.server, config)
    except AddressError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        response, result = probe(address, options, fingerprinter)
    except ProbeError as e:
        print(f"Probe of {display_name} failed: {e}", file=sys.stderr)
        sys.exit(1)

    print(render(response, result, as_json=args.json, color=options.color))


def serve_main(argv: list[str] | None = None) -> None:
    """Main entry point for the status mirror server."""
    parser = build_server_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, default=logging.INFO)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    mirror = config.mirror
    server = StatusServer(
        args.host or mirror.host,
        args.port if args.port is not None else mirror.port,
        timeout=args.timeout if args.timeout is not None else mirror.timeout,
        status=default_status(
            description=mirror.description,
            version_name=mirror.version_name,
            protocol=mirror.protocol,
            max_players=mirror.max_players,
            online_players=mirror.online_players,
        ),
    )
    try:
        server.serve_forever()
    except OSError as e:
        print(f"Server failed: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nShutting down.")
    finally:
        server.shutdown()
