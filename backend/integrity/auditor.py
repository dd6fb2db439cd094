"""
Integrity Auditor — read-only checks over policy and capacity tables.

Checks:
  multiple_published_versions    scopes with more than one published row
  coinciding_scheduled_versions  scheduled rows sharing an effective instant
                                 with another live row of the scope
  capacity_oversold              (hub, lane, day) keys holding more active
                                 slots than effective capacity + rush allowance,
                                 past days included
  expired_holds_active           holds past expiry not yet swept

Nothing here writes; repairs are an operator decision.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from capacity.blackouts import is_blacked_out
from capacity.ledger import counts_against_capacity, effective_capacity_for, rush_allowance_for
from core.config import get_settings
from core.errors import storage_errors
from db.models import PolicyVersion, Reservation
from policy.payloads import PolicyKind, PolicyState, load_capacity_profile
from policy.store import LIVE_STATES

logger = structlog.get_logger()


@dataclass
class Violation:
    check_name: str
    count: int
    details: list[dict[str, Any]] = field(default_factory=list)


async def _multiple_published(db: AsyncSession) -> Violation | None:
    result = await db.execute(
        select(PolicyVersion.kind, PolicyVersion.policy_id, func.count())
        .where(PolicyVersion.state == PolicyState.PUBLISHED.value)
        .group_by(PolicyVersion.kind, PolicyVersion.policy_id)
        .having(func.count() > 1)
    )
    rows = result.all()
    if not rows:
        return None
    return Violation(
        check_name="multiple_published_versions",
        count=len(rows),
        details=[{"kind": kind, "policy_id": policy_id, "published": n} for kind, policy_id, n in rows],
    )


async def _coinciding_scheduled(db: AsyncSession) -> Violation | None:
    result = await db.execute(
        select(PolicyVersion.kind, PolicyVersion.policy_id, PolicyVersion.effective_date, func.count())
        .where(PolicyVersion.state.in_(LIVE_STATES))
        .group_by(PolicyVersion.kind, PolicyVersion.policy_id, PolicyVersion.effective_date)
        .having(func.count() > 1)
    )
    rows = result.all()
    if not rows:
        return None
    return Violation(
        check_name="coinciding_scheduled_versions",
        count=len(rows),
        details=[
            {"kind": kind, "policy_id": policy_id, "effective_date": effective.isoformat(), "versions": n}
            for kind, policy_id, effective, n in rows
        ],
    )


async def _capacity_oversold(db: AsyncSession, now: datetime, tolerance: int) -> Violation | None:
    result = await db.execute(
        select(
            Reservation.hub_id,
            Reservation.lane,
            Reservation.reservation_date,
            func.sum(Reservation.slots_reserved),
        )
        .where(counts_against_capacity(now))
        .group_by(Reservation.hub_id, Reservation.lane, Reservation.reservation_date)
    )
    usage = result.all()
    if not usage:
        return None

    profiles = await _published_profiles(db)
    details = []
    for hub_id, lane, day, slots in usage:
        profile = profiles.get(hub_id)
        if profile is None:
            continue
        blacked_out = await is_blacked_out(db, hub_id, lane, day)
        limit = effective_capacity_for(profile, lane, day, blacked_out) + rush_allowance_for(
            profile, lane, blacked_out
        )
        if int(slots) > limit + tolerance:
            details.append(
                {
                    "hub_id": hub_id,
                    "lane": lane,
                    "date": day.isoformat() if isinstance(day, date) else str(day),
                    "reserved_slots": int(slots),
                    "limit": limit,
                    "blacked_out": blacked_out,
                }
            )
    if not details:
        return None
    return Violation(check_name="capacity_oversold", count=len(details), details=details)


async def _published_profiles(db: AsyncSession) -> dict[str, Any]:
    result = await db.execute(
        select(PolicyVersion).where(
            PolicyVersion.kind == PolicyKind.HUB_CAPACITY.value,
            PolicyVersion.state == PolicyState.PUBLISHED.value,
        )
    )
    return {row.policy_id: load_capacity_profile(row.payload) for row in result.scalars().all()}


async def _expired_holds(db: AsyncSession, now: datetime) -> Violation | None:
    result = await db.execute(
        select(Reservation.hub_id, func.count())
        .where(
            Reservation.reservation_type == "hold",
            Reservation.status == "active",
            Reservation.expires_at < now,
        )
        .group_by(Reservation.hub_id)
    )
    rows = result.all()
    if not rows:
        return None
    return Violation(
        check_name="expired_holds_active",
        count=sum(n for _, n in rows),
        details=[{"hub_id": hub_id, "expired_holds": n} for hub_id, n in rows],
    )


async def check_integrity(db: AsyncSession, now: datetime | None = None) -> list[Violation]:
    now = now or datetime.utcnow()
    tolerance = get_settings().integrity_oversell_tolerance_slots

    with storage_errors("check_integrity"):
        found = [
            await _multiple_published(db),
            await _coinciding_scheduled(db),
            await _capacity_oversold(db, now, tolerance),
            await _expired_holds(db, now),
        ]
    violations = [violation for violation in found if violation is not None]

    for violation in violations:
        logger.warning("integrity.violation", check=violation.check_name, count=violation.count)
    return violations


def summarize(violations: list[Violation]) -> dict[str, Any]:
    by_check: dict[str, int] = defaultdict(int)
    for violation in violations:
        by_check[violation.check_name] += violation.count
    return {
        "success": not violations,
        "violations": [asdict(violation) for violation in violations],
        "summary": {
            "total_violations": sum(by_check.values()),
            "checks_failed": len(by_check),
            "by_check": dict(by_check),
        },
    }
