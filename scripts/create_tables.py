"""Create any missing tables in the configured database.

Intended for local/dev environments; deployments set FITPLAN_AUTO_CREATE_TABLES
or run this once before starting the service.
"""

import asyncio
import logging

from app.core.database import create_all_tables, dispose_engine, get_db_engine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("create_tables")


async def create_tables() -> None:
  engine = get_db_engine()
  if engine is None:
    raise SystemExit("FITPLAN_PG_DSN (or DATABASE_URL) must be set.")
  try:
    await create_all_tables(engine)
  finally:
    await dispose_engine()
  logger.info("Tables are up to date.")


if __name__ == "__main__":
  asyncio.run(create_tables())
