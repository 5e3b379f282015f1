"""
Database Migration Runner

Simple migration runner for the Courier database.
"""
import asyncio
import logging
import sys
from pathlib import Path

import asyncpg

from courier.config import Config

logger = logging.getLogger("courier.migrations")


async def run_migrations(dsn: str = None) -> int:
    """Run all SQL migrations in order; returns the number that failed"""
    migrations_dir = Path(__file__).parent
    dsn = dsn or Config.get_postgres_dsn()
    failed = 0

    logger.info("Connecting to database...")
    conn = await asyncpg.connect(dsn)
    try:
        # Get all SQL files sorted by name
        for sql_file in sorted(migrations_dir.glob("*.sql")):
            logger.info(f"Running migration: {sql_file.name}")
            sql = sql_file.read_text(encoding="utf-8")
            try:
                await conn.execute(sql)
                logger.info(f"  {sql_file.name} completed")
            except asyncpg.PostgresError as e:
                failed += 1
                logger.error(f"  Error in {sql_file.name}: {e}")
                # Continue with other migrations
    finally:
        await conn.close()

    logger.info("Migrations complete")
    return failed


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    try:
        failed = asyncio.run(run_migrations())
    except (OSError, asyncpg.PostgresError) as e:
        logger.error(f"Connection failed: {e}")
        sys.exit(1)
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
