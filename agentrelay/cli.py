"""agentrelay CLI entry point.

Usage:
    agentrelay run [--config relay.yaml] [--host 0.0.0.0] [--port 3000]
    agentrelay init [--output relay.yaml]
    agentrelay check [--url http://localhost:3000]
    agentrelay call +15551234567 [--url https://relay.example.com] [--endpoint /voice]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path

import aiohttp
from dotenv import load_dotenv
from loguru import logger
from twilio.base.exceptions import TwilioRestException


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def cmd_run(args: argparse.Namespace) -> None:
    """Run the relay server."""
    from agentrelay.config import load_config
    from agentrelay.relay import AgentRelay

    if args.config and not Path(args.config).exists():
        logger.error(f"Config file not found: {args.config}")
        sys.exit(1)

    config = load_config(args.config)
    if args.host:
        config.listen.host = args.host
    if args.port:
        config.listen.port = args.port

    configure_logging(config.logging.level)

    logger.info(f"Agent ID: {config.agent.agent_id}")
    logger.info(f"API key: {'Set' if config.api_key_configured else 'Missing!'}")
    logger.info(f"Listening on: {config.listen.host}:{config.listen.port}{config.listen.path}")
    for warning in config.warnings():
        logger.warning(warning)

    AgentRelay(config).run()


def cmd_init(args: argparse.Namespace) -> None:
    """Generate a starter configuration file."""
    output = Path(args.output)

    if output.exists() and not args.force:
        logger.error(f"File already exists: {output}. Use --force to overwrite.")
        sys.exit(1)

    from agentrelay.config import DEFAULT_CONFIG_YAML

    output.write_text(DEFAULT_CONFIG_YAML)
    print(f"Configuration written to: {output}")
    print(f"\nEdit the file and run: agentrelay run --config {output}")


def cmd_check(args: argparse.Namespace) -> None:
    """Probe a running relay's status endpoint."""
    from agentrelay.dialer import check_status

    try:
        status = asyncio.run(check_status(args.url))
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Relay at {args.url} is not healthy: {e}")
        sys.exit(1)

    print(json.dumps(status, indent=2))
    if status.get("api_key") != "Configured":
        logger.warning("Relay is running but has no agent API key")


def cmd_call(args: argparse.Namespace) -> None:
    """Place outbound test calls against a deployed relay."""
    from agentrelay.dialer import TestDialer

    try:
        dialer = TestDialer.from_env()
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    base_url = args.url.rstrip("/")
    for endpoint in args.endpoint:
        webhook_url = f"{base_url}{endpoint}"
        print(f"\nCalling {args.to} via {webhook_url}")
        try:
            call_sid = dialer.place_call(args.to, webhook_url)
            if args.wait > 0:
                time.sleep(args.wait)
            status = dialer.call_status(call_sid)
        except TwilioRestException as e:
            logger.error(f"Test call via {endpoint} failed: {e.msg} (HTTP {e.status})")
            continue

        print(f"  SID:       {status.sid}")
        print(f"  Status:    {status.status}")
        print(f"  Duration:  {status.duration} seconds")
        print(f"  Direction: {status.direction}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="agentrelay - Twilio Media Streams to conversational AI agent relay",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # `agentrelay run`
    run_parser = subparsers.add_parser("run", help="Run the relay server")
    run_parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to a YAML config file (default: environment only)",
    )
    run_parser.add_argument("--host", default=None, help="Override the listen host")
    run_parser.add_argument("--port", "-p", type=int, default=None, help="Override the listen port")

    # `agentrelay init`
    init_parser = subparsers.add_parser("init", help="Generate a starter config file")
    init_parser.add_argument(
        "--output", "-o",
        default="relay.yaml",
        help="Output file path (default: relay.yaml)",
    )
    init_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite existing file",
    )

    # `agentrelay check`
    check_parser = subparsers.add_parser("check", help="Probe a running relay's status endpoint")
    check_parser.add_argument("--url", default="http://localhost:3000", help="Relay base URL")

    # `agentrelay call`
    call_parser = subparsers.add_parser("call", help="Place an outbound test call through Twilio")
    call_parser.add_argument("to", help="Number to call, E.164 format")
    call_parser.add_argument("--url", default="http://localhost:3000", help="Public relay base URL")
    call_parser.add_argument(
        "--endpoint", "-e",
        action="append",
        default=None,
        help="Webhook path to exercise; repeatable (default: /voice)",
    )
    call_parser.add_argument("--wait", type=float, default=5.0, help="Seconds to wait before checking status")

    args = parser.parse_args(argv)

    if args.command == "run":
        cmd_run(args)
    elif args.command == "init":
        cmd_init(args)
    elif args.command == "check":
        cmd_check(args)
    elif args.command == "call":
        if not args.endpoint:
            args.endpoint = ["/voice"]
        cmd_call(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
