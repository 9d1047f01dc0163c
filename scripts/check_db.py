#!/usr/bin/env python
"""Check database connectivity.

Usage:
    uv run python scripts/check_db.py
"""

import asyncio
import sys

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.config import get_settings
from app.features.rollups.catalog import ROLLUP_NAMES


async def check_database():
    """Verify database connection and basic operations."""
    settings = get_settings()

    print("PharmaKPI - Database Connectivity Check")
    print("=" * 45)
    print(f"Database URL: {settings.database_url.split('@')[1]}")  # Hide credentials
    print()

    engine = create_async_engine(settings.database_url)

    try:
        async with engine.connect() as conn:
            # Test basic connectivity
            result = await conn.execute(text("SELECT 1"))
            assert result.scalar() == 1
            print("[OK] Basic connectivity")

            # Check PostgreSQL version
            result = await conn.execute(text("SELECT version()"))
            version = result.scalar()
            print(f"[OK] PostgreSQL version: {version[:50]}...")

            # Check rollup bookkeeping table
            result = await conn.execute(text("SELECT to_regclass('rollup_refresh')"))
            if result.scalar():
                print("[OK] rollup_refresh table present")
            else:
                print("[WARN] rollup_refresh table missing")
                print("       Run: POST /rollups/refresh to bootstrap rollups")

            # Check materialized views
            for name in ROLLUP_NAMES:
                result = await conn.execute(
                    text("SELECT 1 FROM pg_matviews WHERE matviewname = :name"),
                    {"name": name},
                )
                if result.scalar():
                    print(f"[OK] {name} materialized view present")
                else:
                    print(f"[WARN] {name} missing, queries use the FLEXIBLE route")

        print()
        print("Database check completed successfully!")
        return 0

    except Exception as e:
        print(f"[FAIL] Connection failed: {e}")
        print()
        print("Troubleshooting:")
        print("  1. Ensure Docker is running: docker-compose up -d")
        print("  2. Check DATABASE_URL in .env file")
        print("  3. Verify PostgreSQL container is healthy: docker-compose ps")
        return 1

    finally:
        await engine.dispose()


def main():
    sys.exit(asyncio.run(check_database()))


if __name__ == "__main__":
    main()
