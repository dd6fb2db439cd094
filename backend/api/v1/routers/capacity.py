"""
Hub Capacity Router — profiles, utilization, reservations and blackouts.

Reservation workflow:
  1. Planner or routing engine places a hold → reservation_type='hold'
  2. Hold is confirmed → 'booking', work starts → 'in_progress'
  3. Work finishes → status='completed', or the reservation is released
  Holds not confirmed within the TTL are swept by the expiry task.
"""

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_actor_id, get_db
from capacity.blackouts import create_blackout_rule, deactivate_blackout_rule, list_blackout_rules
from capacity.events import list_capacity_events
from capacity.ledger import utilization_range
from capacity.reservations import expire_stale_holds, list_reservations, promote, release, reserve
from core.errors import UnknownScopeError
from policy.payloads import PolicyKind
from policy.store import get_active_policy

router = APIRouter(prefix="/api/v1", tags=["capacity"])

MAX_CALENDAR_DAYS = 92

Lane = Literal["auth", "sewing", "qa"]


# ─── Schemas ────────────────────────────────────────────────────────────────

class ActiveProfileResponse(BaseModel):
    hub_id: str
    version_id: UUID
    version: int
    version_label: str | None
    effective_date: datetime
    profile: dict[str, Any]


class UtilizationResponse(BaseModel):
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

    model_config = {"from_attributes": True}


class ReservationRequest(BaseModel):
    shipment_id: str = Field(..., min_length=1)
    lane: Lane
    reservation_date: date
    slots: int = Field(1, gt=0)
    tier: Literal["T2", "T3"]
    priority: Literal["standard", "priority", "rush"] = "standard"
    qa_minutes_required: int = Field(0, ge=0)
    rush_reason: str | None = None


class ReservationResponse(BaseModel):
    reservation_id: UUID
    shipment_id: str
    hub_id: str
    lane: str
    reservation_date: date
    slots_reserved: int
    tier: str
    priority: str
    is_rush: bool
    reservation_type: str
    status: str
    qa_minutes_required: int
    created_by: str
    created_at: datetime
    expires_at: datetime | None
    released_at: datetime | None
    release_reason: str | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class ReleaseRequest(BaseModel):
    reason: str = "released"


class PromoteRequest(BaseModel):
    to_type: Literal["booking", "in_progress", "completed"]


class BlackoutRequest(BaseModel):
    name: str = Field(..., min_length=1)
    rule_type: Literal["recurring", "one_time"]
    start_date: date
    end_date: date | None = None
    recurrence_rule: str | None = None
    affected_lanes: list[Lane] | None = None
    reason: str | None = None


class BlackoutResponse(BaseModel):
    rule_id: UUID
    hub_id: str
    name: str
    rule_type: str
    start_date: date
    end_date: date | None
    recurrence_rule: str | None
    affected_lanes: list[str]
    reason: str | None
    is_active: bool
    created_by: str
    created_at: datetime
    deactivated_at: datetime | None

    model_config = {"from_attributes": True}


class CapacityEventResponse(BaseModel):
    event_id: UUID
    event_type: str
    hub_id: str
    entity_type: str
    entity_id: UUID | None
    event_data: dict[str, Any] | None
    actor_id: str
    created_at: datetime

    model_config = {"from_attributes": True}


# ─── Profiles & utilization ─────────────────────────────────────────────────

@router.get("/hubs/{hub_id}/capacity/active", response_model=ActiveProfileResponse)
async def active_profile(hub_id: str, db: AsyncSession = Depends(get_db)):
    row = await get_active_policy(db, PolicyKind.HUB_CAPACITY, hub_id)
    if row is None:
        raise UnknownScopeError(f"No published capacity profile for hub {hub_id}", hub_id=hub_id)
    return ActiveProfileResponse(
        hub_id=hub_id,
        version_id=row.version_id,
        version=row.version,
        version_label=row.version_label,
        effective_date=row.effective_date,
        profile=row.payload,
    )


@router.get("/hubs/{hub_id}/capacity/utilization", response_model=list[UtilizationResponse])
async def capacity_utilization(
    hub_id: str,
    start: date,
    end: date,
    lane: Lane | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Per-day, per-lane utilization for the calendar view."""
    if end < start:
        raise HTTPException(status_code=422, detail="end must be on or after start")
    if (end - start).days >= MAX_CALENDAR_DAYS:
        raise HTTPException(status_code=422, detail=f"range is limited to {MAX_CALENDAR_DAYS} days")
    return await utilization_range(db, hub_id, start, end, lane)


# ─── Reservations ───────────────────────────────────────────────────────────

@router.post("/hubs/{hub_id}/reservations", response_model=ReservationResponse, status_code=201)
async def create_reservation(
    hub_id: str,
    body: ReservationRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    reservation = await reserve(
        db,
        hub_id=hub_id,
        lane=body.lane,
        day=body.reservation_date,
        slots=body.slots,
        tier=body.tier,
        priority=body.priority,
        shipment_id=body.shipment_id,
        actor_id=actor_id,
        qa_minutes_required=body.qa_minutes_required,
        rush_reason=body.rush_reason,
    )
    await db.commit()
    return reservation


@router.get("/hubs/{hub_id}/reservations", response_model=list[ReservationResponse])
async def get_reservations(
    hub_id: str,
    start: date | None = None,
    end: date | None = None,
    lane: Lane | None = None,
    status: Literal["active", "released", "completed"] | None = None,
    limit: int = Query(200, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    return await list_reservations(db, hub_id, start=start, end=end, lane=lane, status=status, limit=limit)


@router.post("/reservations/expire-stale")
async def expire_holds(
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    """Sweep expired holds now instead of waiting for the beat task."""
    released = await expire_stale_holds(db, actor_id=actor_id)
    await db.commit()
    return {"released": released}


@router.post("/reservations/{reservation_id}/release", response_model=ReservationResponse)
async def release_reservation(
    reservation_id: UUID,
    body: ReleaseRequest | None = None,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    reason = body.reason if body else "released"
    reservation = await release(db, reservation_id, actor_id, reason=reason)
    await db.commit()
    return reservation


@router.post("/reservations/{reservation_id}/promote", response_model=ReservationResponse)
async def promote_reservation(
    reservation_id: UUID,
    body: PromoteRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    reservation = await promote(db, reservation_id, body.to_type, actor_id)
    await db.commit()
    return reservation


# ─── Blackouts & events ─────────────────────────────────────────────────────

@router.post("/hubs/{hub_id}/blackouts", response_model=BlackoutResponse, status_code=201)
async def create_blackout(
    hub_id: str,
    body: BlackoutRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    rule = await create_blackout_rule(
        db,
        hub_id=hub_id,
        name=body.name,
        rule_type=body.rule_type,
        start_date=body.start_date,
        end_date=body.end_date,
        recurrence_rule=body.recurrence_rule,
        affected_lanes=body.affected_lanes,
        reason=body.reason,
        actor_id=actor_id,
    )
    await db.commit()
    return rule


@router.get("/hubs/{hub_id}/blackouts", response_model=list[BlackoutResponse])
async def get_blackouts(
    hub_id: str,
    active_only: bool = True,
    db: AsyncSession = Depends(get_db),
):
    return await list_blackout_rules(db, hub_id, active_only=active_only)


@router.delete("/blackouts/{rule_id}", response_model=BlackoutResponse)
async def delete_blackout(
    rule_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    """Deactivate a rule; the row is kept for the audit trail."""
    rule = await deactivate_blackout_rule(db, rule_id, actor_id)
    await db.commit()
    return rule


@router.get("/hubs/{hub_id}/events", response_model=list[CapacityEventResponse])
async def get_capacity_events(
    hub_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    return await list_capacity_events(db, hub_id, limit)
