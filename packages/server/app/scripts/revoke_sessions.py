"""
Run the mass-logout sweep once, outside the worker schedule.

    python -m app.scripts.revoke_sessions
"""

import asyncio
import argparse
import sys

from app.core.config import get_settings
from app.core.database import engine, init_db
from app.core.logging import configure_logging
from app.core.redis import close_redis, get_redis
from app.tasks.revocation import revoke_all_sessions

settings = get_settings()


async def run(create_tables: bool) -> int:
    if create_tables:
        await init_db()
    try:
        redis = await get_redis()
        return await revoke_all_sessions({"redis": redis})
    finally:
        await close_redis()
        await engine.dispose()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Invalidate every outstanding session token")
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables first (development only)",
    )
    args = parser.parse_args(argv)

    configure_logging(settings.log_level, "text")
    count = asyncio.run(run(args.init_db))
    print(f"Revoked sessions for {count} user(s).")


if __name__ == "__main__":
    sys.exit(main())
