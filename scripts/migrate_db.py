#!/usr/bin/env python3
"""
Database Migration — Create the reminder tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py                      # create missing tables
    python scripts/migrate_db.py --check              # report status only
    python scripts/migrate_db.py --config other.yaml
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(engine) -> list[str]:
    from sqlalchemy import inspect

    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(check_only: bool = False, config_path: str = None) -> int:
    from config.settings import load_settings
    settings = load_settings(config_path)

    from database.session import get_engine, close_db, redacted_url
    from database.models import Base

    engine = get_engine(settings.database.url)
    defined = list(Base.metadata.tables.keys())
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {redacted_url(engine)}")
    print(f"Tables defined: {', '.join(defined)}")

    try:
        if check_only:
            existing = await _existing_tables(engine)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")
            missing = sorted(set(defined) - set(existing))
            if missing:
                print(f"Tables MISSING: {', '.join(missing)}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        print("Running database migration...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        existing = await _existing_tables(engine)
        print(f"Tables created/verified: {', '.join(t for t in existing if t in defined)}")
        print("Migration complete. ✓")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Reminder database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, config_path=args.config)))


if __name__ == "__main__":
    main()
