"""Insert the learning tracks and opening lessons into PostgreSQL.

Run after ``alembic upgrade head``:
    DATABASE_URL=postgresql+asyncpg://... python scripts/seed_catalog.py

Existing rows (same id) are left untouched, so re-running is safe.
"""

from __future__ import annotations

import asyncio
import sys

from app.db import engine as db_engine
from app.db.seed import LESSONS, TRACKS
from app.repos.pg_ledger import PgLedger


async def main() -> int:
    if db_engine.async_session_factory is None:
        print("DATABASE_URL is not set; nothing to seed", file=sys.stderr)
        return 1

    ledger = PgLedger(db_engine.async_session_factory)
    await ledger.load_catalog(TRACKS, LESSONS)
    await db_engine.engine.dispose()
    print(f"Seeded {len(TRACKS)} tracks and {len(LESSONS)} lessons")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
