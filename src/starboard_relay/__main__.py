"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

from .app import StarboardApp
from .rotation import parse_endpoints
from .utils import parse_rate, parse_snowflake


def main() -> None:
    parser = argparse.ArgumentParser(description="Repost popular Discord messages to a starboard")
    parser.add_argument(
        "--db-path",
        default=os.getenv("STARBOARD_DB_PATH", "starboard.db"),
        help="Path to the SQLite database (STARBOARD_DB_PATH)",
    )
    parser.add_argument(
        "--token",
        help="Discord bot token. Can also be passed via STARBOARD_DISCORD_TOKEN",
    )
    parser.add_argument(
        "--application-id",
        help="Application id used to register commands (STARBOARD_APPLICATION_ID)",
    )
    parser.add_argument(
        "--webhook",
        action="append",
        default=[],
        metavar="ID:TOKEN",
        help="Webhook used for reposts; repeat for round-robin delivery (STARBOARD_WEBHOOKS)",
    )
    parser.add_argument(
        "--rate",
        help="Discord REST requests per second, 0 disables pacing (STARBOARD_RATE)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args()

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    token = args.token or os.getenv("STARBOARD_DISCORD_TOKEN")
    if not token:
        parser.error("Pass --token or set STARBOARD_DISCORD_TOKEN")

    try:
        endpoints = parse_endpoints([*args.webhook, os.getenv("STARBOARD_WEBHOOKS", "")])
    except ValueError as exc:
        parser.error(str(exc))
    if not endpoints:
        parser.error("Pass at least one --webhook or set STARBOARD_WEBHOOKS")

    application_id = parse_snowflake(
        args.application_id or os.getenv("STARBOARD_APPLICATION_ID")
    )
    rate = parse_rate(args.rate or os.getenv("STARBOARD_RATE"), 5.0)

    app = StarboardApp(
        db_path=Path(args.db_path),
        token=token,
        endpoints=endpoints,
        application_id=application_id,
        rate_per_second=rate,
    )
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Stopped by user")


if __name__ == "__main__":
    main()
