"""Command-line interface for the pulse namespace service."""

from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

import anyio

from pulse.application import Components, build_components
from pulse.config import ConfigurationError, PulseConfig, load_config, resolve_config_path
from pulse.database import PermissionConflict
from pulse.rabbit import RabbitError
from pulse.scheduler import RepeatedTickFailure

logger = logging.getLogger("pulse.main")

KNOWN_COMMANDS = {"serve", "run", "scan", "rotate", "init-db"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration file (default: $PULSE_CONFIG or ./config.yml)",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Configuration profile merged over 'defaults' (default: $PULSE_PROFILE)",
    )

    parser = argparse.ArgumentParser(description="Pulse namespace credential rotation service")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", parents=[common], help="Initialise the namespace database")

    serve_parser = subparsers.add_parser(
        "serve", parents=[common], help="Start the HTTP API together with the rotation scheduler"
    )
    serve_parser.add_argument("--host", default=None, help="Bind address (default: server.host)")
    serve_parser.add_argument("--port", type=int, default=None, help="Listen port (default: server.port)")
    serve_parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Serve the API without running rotation and queue supervision",
    )

    run_parser = subparsers.add_parser("run", parents=[common], help="Run the rotation scheduler without the API")
    run_parser.add_argument("--once", action="store_true", help="Run a single tick and print its report")

    subparsers.add_parser(
        "scan", parents=[common], help="Classify managed queues and exchanges without acting on them"
    )

    rotate_parser = subparsers.add_parser(
        "rotate", parents=[common], help="Claim a namespace (or renew it) and print fresh credentials"
    )
    rotate_parser.add_argument("name", help="Namespace name")
    rotate_parser.add_argument("--contact", default=None, help="Contact notified about queue alerts")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _load(args: argparse.Namespace) -> PulseConfig:
    path = resolve_config_path(args.config or os.getenv("PULSE_CONFIG"))
    config = load_config(path, args.profile or os.getenv("PULSE_PROFILE"))
    logger.info("Loaded configuration from %s", path)
    return config


def _serve(components: Components, *, host: str, port: int, run_scheduler: bool) -> None:
    from pulse.security import ApiAuth
    from pulse.service import create_app
    import uvicorn

    server = components.config.server
    app = create_app(
        database=components.database,
        manager=components.manager,
        scheduler=components.scheduler,
        auth=ApiAuth.load(server.api_tokens, server.read_tokens),
        run_scheduler=run_scheduler,
    )
    logger.info("Starting namespace API on http://%s:%s", host, port)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _run_scheduler(components: Components, *, once: bool) -> None:
    scheduler = components.scheduler
    if once:
        report = anyio.run(scheduler.tick)
        print(json.dumps(report.to_dict(), indent=2))
        if report.failed:
            raise SystemExit(1)
        return

    try:
        anyio.run(scheduler.run)
    except RepeatedTickFailure as exc:
        raise SystemExit(str(exc)) from exc
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping scheduler")


def _scan(components: Components) -> None:
    try:
        verdicts = components.monitor.scan()
    except RabbitError as exc:
        raise SystemExit(f"Failed to read broker state: {exc}") from exc
    if not verdicts:
        print("No managed queues or exchanges found.")
        return

    print(f"{'Kind':<9}  {'Classification':<14}  {'Messages':>8}  {'Namespace':<24}  Name")
    print("-" * 80)
    for verdict in verdicts:
        marker = " (orphaned)" if verdict.orphaned else ""
        print(
            f"{verdict.kind:<9}  {verdict.classification.value:<14}  {verdict.message_count:>8}  "
            f"{verdict.namespace:<24}  {verdict.name}{marker}"
        )


def _rotate(components: Components, name: str, contact: str | None) -> None:
    try:
        credentials = components.manager.claim(name, contact)
    except ValueError as exc:
        raise SystemExit(f"Invalid namespace: {exc}") from exc
    except PermissionConflict as exc:
        raise SystemExit(f"Namespace was rotated concurrently, try again: {exc}") from exc
    except RabbitError as exc:
        raise SystemExit(f"Broker rejected the rotation: {exc}") from exc

    print(
        json.dumps(
            {
                "namespace": credentials.namespace,
                "username": credentials.username,
                "password": credentials.password,
                "vhost": credentials.vhost,
                "expires": credentials.expires.isoformat(),
                "connection_string": credentials.connection_string,
            },
            indent=2,
        )
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    try:
        config = _load(args)
    except ConfigurationError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    components = build_components(config)
    try:
        if args.command == "serve":
            _serve(
                components,
                host=args.host or config.server.host,
                port=args.port or config.server.port,
                run_scheduler=not args.no_scheduler,
            )
        elif args.command == "run":
            _run_scheduler(components, once=args.once)
        elif args.command == "scan":
            _scan(components)
        elif args.command == "rotate":
            _rotate(components, args.name, args.contact)
        elif args.command == "init-db":
            print(f"Database initialisation complete at {Path(components.database.path)}.")
    finally:
        components.close()


if __name__ == "__main__":
    main()
