"""Run the reference action endpoint locally.

Serves the users/tasks action endpoint from a SQLite file so the sync
engine can be exercised without the production deployment. Runs the
daily TTL sweep in the background.

Usage:
    python scripts/run_reference_server.py --db ./tasks.sqlite --port 8888 --seed-admin
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp import web

from dispatch_task_storage.logging_utils import configure_structured_logging
from dispatch_task_storage.protocol import User, UserRole, avatar_url_for
from dispatch_task_storage.remote.server import (
    DEFAULT_TTL_DAYS,
    CleanupScheduler,
    ReferenceStore,
    create_app,
)
from dispatch_task_storage.service import DEFAULT_PASSWORD

logger = logging.getLogger(__name__)


async def seed_admin(store: ReferenceStore) -> None:
    """Create the initial manager account (ignored if it already exists)."""
    admin = User(
        id="u_admin",
        username="admin",
        full_name="Administrator",
        role=UserRole.MANAGER,
        password=DEFAULT_PASSWORD,
        is_first_login=True,
        avatar_url=avatar_url_for("Administrator", UserRole.MANAGER),
    )
    await store.add_user(admin.to_dict())
    logger.info(f"Seeded admin account (password {DEFAULT_PASSWORD})")


async def run(db_path: Path, host: str, port: int, ttl_days: int, seed: bool) -> None:
    store = await ReferenceStore.open(db_path, ttl_days=ttl_days)
    if seed:
        await seed_admin(store)

    scheduler = CleanupScheduler(store)
    runner = web.AppRunner(create_app(store))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    scheduler.start()
    logger.info(f"Reference endpoint listening on http://{host}:{port}/ (TTL {ttl_days} days)")

    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await runner.cleanup()
        await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the reference users/tasks action endpoint",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # In-memory database, data lost on exit
    python scripts/run_reference_server.py

    # Persistent database with a 1-day TTL
    python scripts/run_reference_server.py --db ./tasks.sqlite --ttl-days 1
        """,
    )
    parser.add_argument("--db", type=Path, default=Path(":memory:"), help="SQLite database file")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8888, help="Port to listen on")
    parser.add_argument("--ttl-days", type=int, default=DEFAULT_TTL_DAYS, help="Task TTL in days")
    parser.add_argument("--seed-admin", action="store_true", help="Create an admin account")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    configure_structured_logging(logging.DEBUG if args.verbose else logging.INFO, logger_name=None)

    try:
        asyncio.run(run(args.db, args.host, args.port, args.ttl_days, args.seed_admin))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
