#!/usr/bin/env python3
"""
Run one reminder scan — entry point for cron or any external scheduler.

Usage:
    python scripts/run_scan.py
    python scripts/run_scan.py --config /etc/reminders/settings.yaml

Prints the scan summary as JSON. Exits 1 when the scan itself fails
(e.g. the database is unreachable); per-item failures still exit 0.
"""
import asyncio
import json
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()


async def run_scan(config_path: str = None) -> int:
    import structlog
    from config.settings import load_settings
    settings = load_settings(config_path)

    from channels.line_adapter import LineAdapter
    from core.dispatcher import Dispatcher
    from core.errors import ScanError
    from core.gate import RecipientGate
    from core.scanner import DueSetScanner
    from database.session import init_db, close_db
    from database.store_factory import create_store

    logger = structlog.get_logger()
    store = create_store({"store_backend": settings.database.store_backend})
    channel = LineAdapter(settings.channel)
    gate = RecipientGate(
        store,
        backoff_base_seconds=settings.scanner.backoff_base_seconds,
        backoff_max_seconds=settings.scanner.backoff_max_seconds,
    )
    dispatcher = Dispatcher(
        store, channel, gate=gate,
        claim_timeout_seconds=settings.scanner.claim_timeout_seconds,
    )
    scanner = DueSetScanner(
        store, dispatcher,
        concurrency=settings.scanner.concurrency,
        timezone_name=settings.timezone,
    )

    if settings.database.store_backend == "sql":
        await init_db(settings.database.url)
    await channel.initialize()
    try:
        summary = await scanner.scan()
    except ScanError as e:
        logger.error("scheduled_scan_failed", error=str(e))
        print(json.dumps({"error": str(e)}, ensure_ascii=False))
        return 1
    finally:
        await channel.shutdown()
        if settings.database.store_backend == "sql":
            await close_db()

    print(json.dumps(summary.to_response(), ensure_ascii=False, indent=2))
    return 0


def main():
    parser = argparse.ArgumentParser(description="Run one reminder scan")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_scan(config_path=args.config)))


if __name__ == "__main__":
    main()
