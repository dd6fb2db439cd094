#!/usr/bin/env python3
"""Run the policy/capacity integrity audit and print a JSON report.

Read-only; exits 1 when any check reports violations so it can gate a
deploy or a cron alert.

Examples:
  python backend/scripts/check_integrity.py
  python backend/scripts/check_integrity.py --database-url sqlite+aiosqlite:///./hubops.db --pretty
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime
from typing import Any

import structlog

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from db.session import build_engine
from integrity.auditor import check_integrity, summarize


async def _run(database_url: str, now: datetime | None) -> dict[str, Any]:
    engine = build_engine(database_url)
    try:
        async_session = async_sessionmaker(engine, class_=AsyncSession)
        async with async_session() as db:
            violations = await check_integrity(db, now=now)
        return summarize(violations)
    finally:
        await engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Audit policy versions and capacity reservations")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    parser.add_argument("--as-of", default=None, help="Audit as of this naive UTC timestamp, e.g. 2026-03-01T12:00:00")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    args = parser.parse_args()

    # stdout carries only the JSON report.
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    database_url = args.database_url or get_settings().database_url
    try:
        now = datetime.fromisoformat(args.as_of) if args.as_of else None
        report = asyncio.run(_run(database_url, now))
    except Exception as exc:  # noqa: BLE001
        report = {"success": False, "error": str(exc), "violations": [], "summary": {}}

    if args.pretty:
        print(json.dumps(report, indent=2, sort_keys=True))
    else:
        print(json.dumps(report))

    return 0 if report["success"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
