"""Initialize database schema for the worship library.

Creates the presentations, songs and psalms tables.
Run this before starting the API server.
"""

import asyncio
import sys

from be.config import settings
from be.db import engine
from be.models import Base


async def init_database(drop: bool = False):
    """Create all database tables, optionally dropping them first."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")

    async with engine.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
            print("✓ Dropped existing tables")

        await conn.run_sync(Base.metadata.create_all)
        print("✓ Created all tables")

    await engine.dispose()
    print(f"\n✅ Database initialization complete! Tables: {', '.join(Base.metadata.tables.keys())}")


async def main():
    """Main entry point."""
    try:
        await init_database(drop="--drop" in sys.argv[1:])
    except Exception as e:
        print(f"\n❌ Error initializing database: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
