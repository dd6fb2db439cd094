"""
Capacity Ledger — effective capacity and usage per (hub, lane, day).

Capacity math:
  effective = floor(base × seasonality[month] × (1 + overbooking% / 100))
  rush      = ceil(base × rush_bucket% / 100)
  both are 0 on a blacked-out day

Usage is always recomputed from the reservations table: only active
reservations count, and a hold past its expiry counts as free capacity
even before the sweep releases it. ``capacity_ledger_days`` rows are the
per-key lock anchors and carry the snapshot left by the last write.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from capacity.blackouts import is_blacked_out
from core.errors import UnknownScopeError, storage_errors
from db.locks import lock_anchor_row
from db.models import LANES, CapacityLedgerDay, Reservation
from policy.payloads import CapacityProfilePayload, PolicyKind, load_capacity_profile
from policy.store import get_active_policy

logger = structlog.get_logger()

COMMITTED_TYPES = ("booking", "in_progress")


# ─── Pure capacity math ────────────────────────────────────────────────────


def effective_capacity_for(
    profile: CapacityProfilePayload,
    lane: str,
    day: date,
    blacked_out: bool = False,
) -> int:
    if blacked_out:
        return 0
    return profile.effective_capacity(lane, day)


def rush_allowance_for(profile: CapacityProfilePayload, lane: str, blacked_out: bool = False) -> int:
    if blacked_out:
        return 0
    return profile.rush_allowance(lane)


def utilization_percent(used: int, effective: int) -> float:
    if effective <= 0:
        return 0.0
    return round(used / effective * 100, 2)


# ─── Usage ─────────────────────────────────────────────────────────────────


@dataclass
class LaneUsage:
    held: int = 0
    planned: int = 0
    consumed: int = 0
    rush_used: int = 0
    standard_used: int = 0
    qa_minutes_used: int = 0

    @property
    def total(self) -> int:
        return self.held + self.planned + self.consumed


def counts_against_capacity(now: datetime):
    """Filter for reservations that occupy capacity at ``now``."""
    return and_(
        Reservation.status == "active",
        or_(
            Reservation.reservation_type != "hold",
            Reservation.expires_at.is_(None),
            Reservation.expires_at >= now,
        ),
    )


async def lane_usage(
    db: AsyncSession,
    hub_id: str,
    lane: str,
    day: date,
    now: datetime,
) -> LaneUsage:
    result = await db.execute(
        select(
            Reservation.reservation_type,
            Reservation.is_rush,
            func.coalesce(func.sum(Reservation.slots_reserved), 0),
            func.coalesce(func.sum(Reservation.qa_minutes_required), 0),
        )
        .where(
            Reservation.hub_id == hub_id,
            Reservation.lane == lane,
            Reservation.reservation_date == day,
            counts_against_capacity(now),
        )
        .group_by(Reservation.reservation_type, Reservation.is_rush)
    )
    usage = LaneUsage()
    for reservation_type, is_rush, slots, qa_minutes in result.all():
        slots = int(slots)
        if reservation_type == "hold":
            usage.held += slots
        elif reservation_type == "booking":
            usage.planned += slots
        else:
            usage.consumed += slots
        if is_rush:
            usage.rush_used += slots
        else:
            usage.standard_used += slots
        usage.qa_minutes_used += int(qa_minutes)
    return usage


# ─── Profile lookup ────────────────────────────────────────────────────────


async def load_profile(db: AsyncSession, hub_id: str) -> CapacityProfilePayload:
    """The published capacity profile of ``hub_id``."""
    row = await get_active_policy(db, PolicyKind.HUB_CAPACITY, hub_id)
    if row is None:
        raise UnknownScopeError(f"No published capacity profile for hub {hub_id}", hub_id=hub_id)
    return load_capacity_profile(row.payload)


async def effective_capacity(db: AsyncSession, hub_id: str, lane: str, day: date) -> int:
    profile = await load_profile(db, hub_id)
    blacked_out = await is_blacked_out(db, hub_id, lane, day)
    return effective_capacity_for(profile, lane, day, blacked_out)


async def rush_allowance(db: AsyncSession, hub_id: str, lane: str, day: date) -> int:
    profile = await load_profile(db, hub_id)
    blacked_out = await is_blacked_out(db, hub_id, lane, day)
    return rush_allowance_for(profile, lane, blacked_out)


# ─── Utilization ───────────────────────────────────────────────────────────


@dataclass
class LaneUtilization:
    hub_id: str
    lane: str
    day: date
    base_capacity: int
    seasonality_multiplier: float
    effective_capacity: int
    rush_allowance: int
    held: int
    planned: int
    consumed: int
    rush_used: int
    available_slots: int
    rush_available: int
    qa_minutes_used: int
    qa_minutes_capacity: int
    utilization_percent: float
    is_blacked_out: bool

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["day"] = self.day.isoformat()
        return data


def build_utilization(
    hub_id: str,
    lane: str,
    day: date,
    profile: CapacityProfilePayload,
    usage: LaneUsage,
    blacked_out: bool,
) -> LaneUtilization:
    effective = effective_capacity_for(profile, lane, day, blacked_out)
    rush = rush_allowance_for(profile, lane, blacked_out)
    return LaneUtilization(
        hub_id=hub_id,
        lane=lane,
        day=day,
        base_capacity=profile.base_capacity(lane),
        seasonality_multiplier=profile.seasonality_for(day),
        effective_capacity=effective,
        rush_allowance=rush,
        held=usage.held,
        planned=usage.planned,
        consumed=usage.consumed,
        rush_used=usage.rush_used,
        available_slots=max(0, effective - usage.standard_used),
        rush_available=max(0, rush - usage.rush_used),
        qa_minutes_used=usage.qa_minutes_used if lane == "qa" else 0,
        qa_minutes_capacity=profile.qa_capacity_minutes if lane == "qa" else 0,
        utilization_percent=utilization_percent(usage.total, effective),
        is_blacked_out=blacked_out,
    )


async def utilization(
    db: AsyncSession,
    hub_id: str,
    lane: str,
    day: date,
    now: datetime | None = None,
) -> LaneUtilization:
    now = now or datetime.utcnow()
    with storage_errors("utilization"):
        profile = await load_profile(db, hub_id)
        blacked_out = await is_blacked_out(db, hub_id, lane, day)
        usage = await lane_usage(db, hub_id, lane, day, now)
    return build_utilization(hub_id, lane, day, profile, usage, blacked_out)


async def utilization_range(
    db: AsyncSession,
    hub_id: str,
    start: date,
    end: date,
    lane: str | None = None,
    now: datetime | None = None,
) -> list[LaneUtilization]:
    """Day-by-day utilization for a calendar view, ``start``..``end`` inclusive."""
    now = now or datetime.utcnow()
    lanes = [lane] if lane else list(LANES)
    rows: list[LaneUtilization] = []
    with storage_errors("utilization_range"):
        profile = await load_profile(db, hub_id)
        day = start
        while day <= end:
            for lane_name in lanes:
                blacked_out = await is_blacked_out(db, hub_id, lane_name, day)
                usage = await lane_usage(db, hub_id, lane_name, day, now)
                rows.append(build_utilization(hub_id, lane_name, day, profile, usage, blacked_out))
            day += timedelta(days=1)
    return rows


# ─── Ledger rows ───────────────────────────────────────────────────────────


async def lock_ledger_day(db: AsyncSession, hub_id: str, lane: str, day: date) -> CapacityLedgerDay:
    return await lock_anchor_row(db, CapacityLedgerDay, hub_id=hub_id, lane=lane, ledger_date=day)


def refresh_snapshot(
    ledger: CapacityLedgerDay,
    usage: LaneUsage,
    now: datetime,
    profile: CapacityProfilePayload | None = None,
    blacked_out: bool = False,
) -> None:
    """Copy usage (and capacity, when the profile is at hand) onto the ledger row."""
    if profile is not None:
        ledger.effective_capacity = effective_capacity_for(profile, ledger.lane, ledger.ledger_date, blacked_out)
        ledger.rush_allowance = rush_allowance_for(profile, ledger.lane, blacked_out)
    ledger.committed_slots = usage.total
    ledger.rush_slots = usage.rush_used
    ledger.qa_minutes_used = usage.qa_minutes_used
    ledger.updated_at = now


# ─── Profile changes ───────────────────────────────────────────────────────


async def find_capacity_conflicts(
    db: AsyncSession,
    hub_id: str,
    profile: CapacityProfilePayload,
    since: date,
) -> list[dict[str, Any]]:
    """Keys from ``since`` on whose bookings would not fit under ``profile``."""
    result = await db.execute(
        select(
            Reservation.lane,
            Reservation.reservation_date,
            Reservation.is_rush,
            func.sum(Reservation.slots_reserved),
            func.sum(Reservation.qa_minutes_required),
        )
        .where(
            Reservation.hub_id == hub_id,
            Reservation.status == "active",
            Reservation.reservation_type.in_(COMMITTED_TYPES),
            Reservation.reservation_date >= since,
        )
        .group_by(Reservation.lane, Reservation.reservation_date, Reservation.is_rush)
    )

    committed: dict[tuple[str, date], dict[str, int]] = {}
    for lane, day, is_rush, slots, qa_minutes in result.all():
        entry = committed.setdefault((lane, day), {"standard": 0, "rush": 0, "qa_minutes": 0})
        entry["rush" if is_rush else "standard"] += int(slots or 0)
        entry["qa_minutes"] += int(qa_minutes or 0)

    conflicts = []
    for (lane, day), entry in sorted(committed.items(), key=lambda item: (item[0][1], item[0][0])):
        effective = effective_capacity_for(profile, lane, day)
        rush = rush_allowance_for(profile, lane)
        over_qa = lane == "qa" and entry["qa_minutes"] > profile.qa_capacity_minutes
        if entry["standard"] > effective or entry["rush"] > rush or over_qa:
            conflicts.append(
                {
                    "lane": lane,
                    "date": day.isoformat(),
                    "committed_slots": entry["standard"],
                    "effective_capacity": effective,
                    "rush_slots": entry["rush"],
                    "rush_allowance": rush,
                    "qa_minutes_committed": entry["qa_minutes"],
                }
            )
    if conflicts:
        logger.info("capacity.profile_conflicts", hub_id=hub_id, conflicts=len(conflicts))
    return conflicts
