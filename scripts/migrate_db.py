#!/usr/bin/env python3
"""
Database Migration — Create the tracking and dead-letter tables.

Usage:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

The pgmq queues themselves are created by the pgmq extension
(``SELECT pgmq.create('discord_async_calls')``), not by this script.
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _table_listing_sql(dialect: str) -> str:
    if dialect == "postgresql":
        return "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
    return "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"


async def _existing_tables(engine) -> list[str]:
    from sqlalchemy import text
    async with engine.connect() as conn:
        result = await conn.execute(text(_table_listing_sql(engine.dialect.name)))
        return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False) -> set[str]:
    """Returns the set of tables still missing after the run."""
    from config.settings import load_settings
    load_settings()

    from database.session import close_db, get_engine, init_db
    from database.models import Base

    engine = get_engine()
    expected = set(Base.metadata.tables.keys())

    if check_only:
        print(f"Database: {engine.dialect.name}")
        print(f"URL: {str(engine.url).split('@')[-1]}")
        print(f"Tables defined: {', '.join(sorted(expected))}")
        existing = await _existing_tables(engine)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")
        missing = expected - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return missing

    print("Running database migration...")
    await init_db(engine)
    existing = await _existing_tables(engine)
    print(f"Tables created/verified: {', '.join(t for t in existing if t in expected)}")
    await close_db()
    print("Migration complete. ✓")
    return expected - set(existing)


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    missing = asyncio.run(run_migration(check_only=args.check))
    sys.exit(1 if missing else 0)


if __name__ == "__main__":
    main()
