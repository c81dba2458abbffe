#!/usr/bin/env python3
"""
Vault risk engine startup script

Usage:
    python run.py [--env ENV] [--log-level LEVEL] [--events FILE] [--follow-blocks]

``--events`` feeds a JSON-lines file of raw decoded events (``-`` for stdin)
through the engine and exits once everything queued has been processed.
``--follow-blocks`` polls the RPC endpoint and emits a block tick for every new
block, which drives the L1 reads and metrics cycles.

Environment Variables:
    VAULT_ADDRESSES: comma separated vaults, optionally suffixed ``:share``
    MONGODB_URI: optional; without it nothing is persisted
    LOG_LEVEL: Logging level (DEBUG/INFO/WARNING/ERROR)
"""

import argparse
import asyncio
import json
import os
import sys

import structlog

from vault_risk.background_tasks import BlockPoller
from vault_risk.config import Settings
from vault_risk.main import build_service, configure_logging, service_lifespan

logger = structlog.get_logger()


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description="Vault risk and position aggregation engine")

    parser.add_argument(
        "--env", "-e",
        type=str,
        choices=["development", "production", "test"],
        default=None,
        help="Environment mode (default: ENV setting)"
    )
    parser.add_argument(
        "--log-level", "-l",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (default: LOG_LEVEL setting)"
    )
    parser.add_argument(
        "--events",
        type=str,
        default=None,
        help="JSON-lines file of raw events to process, '-' for stdin"
    )
    parser.add_argument(
        "--follow-blocks",
        action="store_true",
        help="Poll the RPC endpoint for new blocks and emit block ticks"
    )
    parser.add_argument(
        "--poll-seconds",
        type=float,
        default=2.0,
        help="Block polling interval (default: 2.0)"
    )

    return parser.parse_args(argv)


def validate_environment(settings: Settings) -> bool:
    """Validate environment setup"""
    errors = []

    if not settings.vault_addresses:
        errors.append("VAULT_ADDRESSES is empty - no vault would be monitored")
    if settings.MONGODB_URI and not settings.MONGODB_URI.startswith("mongodb"):
        errors.append("Invalid MONGODB_URI format")
    if settings.ALERT_EMISSION_POLICY not in ("on_transition", "every_cycle"):
        errors.append(f"Invalid ALERT_EMISSION_POLICY: {settings.ALERT_EMISSION_POLICY}")

    if errors:
        print("Environment validation failed:")
        for error in errors:
            print(f"   - {error}")
        return False
    return True


def read_events(path: str):
    stream = sys.stdin if path == "-" else open(path, encoding="utf-8")
    try:
        for line_number, line in enumerate(stream, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("Skipping malformed event line", line=line_number, error=str(e))
    finally:
        if stream is not sys.stdin:
            stream.close()


async def follow_blocks(service, poll_seconds: float):
    poller = BlockPoller(service.rpc, service.caller, service.tasks.submit)
    await poller.run(poll_seconds)


async def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)
    if args.env:
        os.environ["ENV"] = args.env
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level

    settings = Settings()
    configure_logging(settings)

    if not validate_environment(settings):
        sys.exit(1)

    service = build_service(settings)
    async with service_lifespan(service):
        if args.events:
            submitted = 0
            for raw_event in read_events(args.events):
                service.tasks.submit(raw_event)
                submitted += 1
            await service.tasks.drain()
            logger.info("Event file processed", events=submitted)
            return

        if args.follow_blocks:
            await follow_blocks(service, args.poll_seconds)
        else:
            # Events arrive from the indexer through service.tasks.submit
            await asyncio.Event().wait()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nVault risk engine stopped by user")
