"""CLI entry point for the MusicBot registry."""

import argparse
import json
import logging
import sys

from .config import ConfigError, RegistryConfig, load_config, merge_cli_args, validate_config
from .pruner import start_pruner
from .registry import (
    InstanceRegistry,
    RegistryClient,
    RegistryError,
    create_registry_server,
)


def _add_serve_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags for the serve subcommand."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--host", type=str, help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Bind port (default: 8000)")
    parser.add_argument(
        "--ttl-seconds", type=int, dest="ttl_seconds",
        help="Expire instances not refreshed within this many seconds (default: never)",
    )
    parser.add_argument(
        "--prune-interval", type=int, dest="prune_interval",
        help="Seconds between expiry sweeps when a TTL is set (default: 60)",
    )
    parser.add_argument(
        "--capacity", type=int,
        help="Maximum number of distinct client addresses (default: unbounded)",
    )
    parser.add_argument(
        "--no-trust-forwarded-for", action="store_false", dest="trust_forwarded_for",
        default=None,
        help="Ignore X-Forwarded-For and register callers under the socket peer address",
    )
    parser.add_argument(
        "--log-level", type=str.upper, dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def _build_config(args) -> RegistryConfig:
    """Build a RegistryConfig from a config file + CLI overrides."""
    if args.config:
        config = load_config(args.config)
    else:
        config = RegistryConfig()
    merge_cli_args(config, args)
    validate_config(config)
    return config


def cmd_serve(args) -> None:
    """Serve the registry HTTP API until interrupted."""
    try:
        config = _build_config(args)
    except (ConfigError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    registry = InstanceRegistry(
        ttl_seconds=config.ttl_seconds,
        capacity=config.capacity,
    )
    server = create_registry_server(
        registry,
        host=config.host,
        port=config.port,
        trust_forwarded_for=config.trust_forwarded_for,
    )

    stop_event = None
    if config.expiry_enabled:
        _, stop_event = start_pruner(registry, interval=config.prune_interval)

    print(f"Registry server listening on {config.host}:{config.port}", file=sys.stderr)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("Shutting down", file=sys.stderr)
    finally:
        if stop_event is not None:
            stop_event.set()
        server.server_close()


# ---------------------------------------------------------------------------
# client subcommands
# ---------------------------------------------------------------------------

def _format_instances(instances, fmt: str) -> str:
    """Format a list of Instance objects for output."""
    if fmt == "json":
        return json.dumps([i.to_dict() for i in instances], indent=2)
    lines = [f"{i.domain}:{i.port}  updated={i.updated}" for i in instances]
    return "\n".join(lines) if lines else "(no instances)"


def cmd_list(args) -> None:
    client = RegistryClient(host=args.registry_host, port=args.registry_port)
    print(_format_instances(client.list_instances(), args.format))


def cmd_register(args) -> None:
    client = RegistryClient(host=args.registry_host, port=args.registry_port)
    try:
        ok = client.register(args.domain, args.port)
    except RegistryError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    if not ok:
        print(
            f"Error: could not reach registry at {args.registry_host}:{args.registry_port}",
            file=sys.stderr,
        )
        sys.exit(1)
    print(f"Registered {args.domain}:{args.port}")


def _add_client_args(parser: argparse.ArgumentParser) -> None:
    """Add --registry-host and --registry-port to a client sub-parser."""
    parser.add_argument(
        "--registry-host", type=str, default="localhost",
        help="Hostname of the registry server (default: localhost)",
    )
    parser.add_argument(
        "--registry-port", type=int, default=8000,
        help="Port of the registry HTTP API (default: 8000)",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="musicbot-registry",
        description="Keeps a registry of active musicbots on your public IP",
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the registry HTTP server")
    _add_serve_args(serve_parser)
    serve_parser.set_defaults(func=cmd_serve)

    # list
    list_parser = subparsers.add_parser(
        "list", help="List instances registered from this machine's public IP",
    )
    _add_client_args(list_parser)
    list_parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    list_parser.set_defaults(func=cmd_list)

    # register
    register_parser = subparsers.add_parser("register", help="Register or refresh an instance")
    _add_client_args(register_parser)
    register_parser.add_argument("domain", type=str, help="Domain the musicbot is reachable at")
    register_parser.add_argument("port", type=int, help="Port the musicbot listens on")
    register_parser.set_defaults(func=cmd_register)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)
