#!/usr/bin/env python3
"""Validate runtime configuration for pre-production/production deploys.

Examples:
  python backend/scripts/validate_runtime_config.py
  python backend/scripts/validate_runtime_config.py --require-postgres --pretty
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

# Add backend/ to path when run as a script.
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import DEFAULT_DATABASE_URL, get_settings, is_local_env


def _validate_settings(*, require_postgres: bool) -> tuple[list[str], dict[str, Any]]:
    settings = get_settings()
    local_env = is_local_env(settings.app_env)
    failures: list[str] = []

    if not local_env:
        if settings.database_url == DEFAULT_DATABASE_URL:
            failures.append("DATABASE_URL must not use the default value outside local/dev/test")
        if settings.idempotency_window_seconds <= 0:
            failures.append("IDEMPOTENCY_WINDOW_SECONDS must be positive outside local/dev/test")
        if "*" in settings.cors_origins:
            failures.append("CORS_ORIGINS must not contain '*' outside local/dev/test")
        if settings.integrity_oversell_tolerance_slots < 0:
            failures.append("INTEGRITY_OVERSELL_TOLERANCE_SLOTS cannot be negative")

    if require_postgres and not settings.database_url.startswith("postgresql"):
        failures.append("DATABASE_URL must point at PostgreSQL when --require-postgres is set")

    summary = {
        "status": "success" if not failures else "failed",
        "app_env": settings.app_env,
        "local_env": local_env,
        "require_postgres": bool(require_postgres),
        "hold_ttl_minutes": settings.hold_ttl_minutes,
        "failures": failures,
    }
    return failures, summary


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate deployment runtime config")
    parser.add_argument(
        "--require-postgres",
        action="store_true",
        help="Require a PostgreSQL DATABASE_URL (row locks are no-ops on SQLite)",
    )
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    args = parser.parse_args()

    try:
        failures, summary = _validate_settings(require_postgres=bool(args.require_postgres))
    except Exception as exc:  # noqa: BLE001
        failures = [str(exc)]
        summary = {
            "status": "failed",
            "error": str(exc),
            "require_postgres": bool(args.require_postgres),
            "failures": failures,
        }

    if args.pretty:
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        print(json.dumps(summary))

    return 0 if not failures else 1


if __name__ == "__main__":
    raise SystemExit(main())
