"""Command-line sync agent for a jobledger workspace."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path

from jobledger.const import (
    CONF_SYNC_API_KEY,
    CONF_SYNC_BASE_URL,
    CONF_SYNC_INTERVAL,
    CONF_SYNC_TIMEOUT,
    DEFAULT_SYNC_INTERVAL,
    DEFAULT_SYNC_TIMEOUT,
    ENV_SYNC_API_KEY,
    ENV_SYNC_BASE_URL,
)
from jobledger.sync import ConfigError, IdentityError, SyncConfig, SyncManager

_LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the jobledger sync agent")
    parser.add_argument("--db", type=Path, default=Path(".jobledger.db"), help="SQLite path for local state")
    parser.add_argument(
        "--base-url",
        default=os.environ.get(ENV_SYNC_BASE_URL, ""),
        help=f"Sync backend base URL (default: ${ENV_SYNC_BASE_URL}); omit for local-only mode",
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get(ENV_SYNC_API_KEY, ""),
        help=f"Backend API key (default: ${ENV_SYNC_API_KEY})",
    )
    parser.add_argument("--user-id", help="Sign in as this user before syncing")
    parser.add_argument("--email", help="Email for the signed-in user")
    parser.add_argument("--workspace-id", help="Workspace to link after signing in")
    parser.add_argument("--interval", type=int, default=DEFAULT_SYNC_INTERVAL, help="Sync interval in seconds")
    parser.add_argument("--timeout", type=float, default=DEFAULT_SYNC_TIMEOUT, help="HTTP timeout in seconds")
    parser.add_argument("--once", action="store_true", help="Run a single cycle, print the status and exit")
    parser.add_argument("--full", action="store_true", help="With --once, pull the workspace history from the start")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> SyncConfig:
    return SyncConfig.from_options(
        {
            CONF_SYNC_BASE_URL: args.base_url,
            CONF_SYNC_API_KEY: args.api_key,
            CONF_SYNC_INTERVAL: args.interval,
            CONF_SYNC_TIMEOUT: args.timeout,
        }
    )


async def main_async(args: argparse.Namespace) -> dict:
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    manager = SyncManager(args.db, config=build_config(args))
    if args.user_id:
        manager.identity.sign_in(args.user_id, email=args.email, workspace_id=args.workspace_id)
    elif args.workspace_id:
        manager.identity.link_workspace(args.workspace_id)
    await manager.async_start(schedule=not args.once)
    try:
        if args.once:
            result = await manager.async_sync_now(full=args.full)
            return {"result": result.as_dict(), "status": manager.status()}
        _LOGGER.info("Starting sync loop (interval=%ss)", args.interval)
        await asyncio.Event().wait()
        return manager.status()
    finally:
        await manager.async_stop()
        manager.store.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        summary = asyncio.run(main_async(args))
    except (ConfigError, IdentityError) as err:
        _LOGGER.error("%s", err)
        return 2
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        _LOGGER.info("Sync agent stopped")
        return 0
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
