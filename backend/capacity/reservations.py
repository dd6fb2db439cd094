"""
Reservation Manager — holds, bookings and in-progress work on hub lanes.

Lifecycle:
  hold → booking → in_progress → completed   (forward only, steps may be skipped)
  any active reservation → released           (release, or hold expiry)

Every write locks the (hub, lane, day) ledger row before reading usage,
so two reservations racing for the last slot are serialized and exactly
one of them wins.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from capacity.blackouts import is_blacked_out
from capacity.events import record_capacity_event
from capacity.ledger import (
    effective_capacity_for,
    lane_usage,
    load_profile,
    lock_ledger_day,
    refresh_snapshot,
    rush_allowance_for,
)
from core.config import get_settings
from core.errors import (
    CapacityExceededError,
    InvalidStateTransitionError,
    PolicyPayloadError,
    ReservationNotFoundError,
    storage_errors,
)
from db.models import LANES, PRIORITIES, TIERS, Reservation

logger = structlog.get_logger()

RUSH_PRIORITIES = ("priority", "rush")
PROGRESSION = ("hold", "booking", "in_progress", "completed")


def _validate_request(lane: str, slots: int, tier: str, priority: str, qa_minutes_required: int) -> None:
    problems = []
    if lane not in LANES:
        problems.append(f"lane must be one of {LANES}")
    if slots <= 0:
        problems.append("slots must be positive")
    if tier not in TIERS:
        problems.append(f"tier must be one of {TIERS}")
    if priority not in PRIORITIES:
        problems.append(f"priority must be one of {PRIORITIES}")
    if qa_minutes_required < 0:
        problems.append("qa_minutes_required cannot be negative")
    if problems:
        raise PolicyPayloadError("Invalid reservation request", errors=problems)


def _as_uuid(reservation_id: uuid.UUID | str) -> uuid.UUID:
    if isinstance(reservation_id, uuid.UUID):
        return reservation_id
    try:
        return uuid.UUID(str(reservation_id))
    except ValueError as exc:
        raise ReservationNotFoundError(
            f"Reservation {reservation_id} not found", reservation_id=str(reservation_id)
        ) from exc


async def reserve(
    db: AsyncSession,
    *,
    hub_id: str,
    lane: str,
    day: date,
    slots: int,
    tier: str,
    priority: str,
    shipment_id: str,
    actor_id: str,
    qa_minutes_required: int = 0,
    rush_reason: str | None = None,
    now: datetime | None = None,
) -> Reservation:
    """Place a hold on ``slots`` of ``lane`` capacity for ``day``."""
    now = now or datetime.utcnow()
    _validate_request(lane, slots, tier, priority, qa_minutes_required)
    is_rush = priority in RUSH_PRIORITIES

    with storage_errors("reserve"):
        profile = await load_profile(db, hub_id)
        blacked_out = await is_blacked_out(db, hub_id, lane, day)
        if blacked_out:
            raise CapacityExceededError(
                f"{lane} lane at {hub_id} is blacked out on {day.isoformat()}",
                reason="blackout",
                hub_id=hub_id,
                lane=lane,
                date=day.isoformat(),
            )

        ledger = await lock_ledger_day(db, hub_id, lane, day)
        usage = await lane_usage(db, hub_id, lane, day, now)

        if is_rush:
            allowance = rush_allowance_for(profile, lane)
            if usage.rush_used + slots > allowance:
                raise CapacityExceededError(
                    "Rush bucket exhausted",
                    reason="rush_bucket",
                    hub_id=hub_id,
                    lane=lane,
                    date=day.isoformat(),
                    requested=slots,
                    available=max(0, allowance - usage.rush_used),
                )
        else:
            effective = effective_capacity_for(profile, lane, day)
            if usage.standard_used + slots > effective:
                raise CapacityExceededError(
                    "Lane capacity exhausted",
                    reason="capacity",
                    hub_id=hub_id,
                    lane=lane,
                    date=day.isoformat(),
                    requested=slots,
                    available=max(0, effective - usage.standard_used),
                )

        if lane == "qa" and usage.qa_minutes_used + qa_minutes_required > profile.qa_capacity_minutes:
            raise CapacityExceededError(
                "QA minutes exhausted",
                reason="qa_minutes",
                hub_id=hub_id,
                date=day.isoformat(),
                requested_minutes=qa_minutes_required,
                available_minutes=max(0, profile.qa_capacity_minutes - usage.qa_minutes_used),
            )

        reservation = Reservation(
            reservation_id=uuid.uuid4(),
            shipment_id=shipment_id,
            hub_id=hub_id,
            lane=lane,
            reservation_date=day,
            slots_reserved=slots,
            tier=tier,
            priority=priority,
            is_rush=is_rush,
            rush_reason=rush_reason,
            reservation_type="hold",
            status="active",
            qa_minutes_required=qa_minutes_required,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=get_settings().hold_ttl_minutes),
        )
        db.add(reservation)

        usage.held += slots
        usage.qa_minutes_used += qa_minutes_required
        if is_rush:
            usage.rush_used += slots
        else:
            usage.standard_used += slots
        refresh_snapshot(ledger, usage, now, profile=profile, blacked_out=blacked_out)

        record_capacity_event(
            db,
            event_type="hub_capacity.reservation.created",
            hub_id=hub_id,
            entity_type="reservation",
            entity_id=reservation.reservation_id,
            actor_id=actor_id,
            data={
                "shipment_id": shipment_id,
                "lane": lane,
                "date": day.isoformat(),
                "slots": slots,
                "tier": tier,
                "priority": priority,
                "is_rush": is_rush,
            },
        )
        await db.flush()

    logger.info(
        "reservation.created",
        hub_id=hub_id,
        lane=lane,
        date=day.isoformat(),
        slots=slots,
        priority=priority,
        reservation_id=str(reservation.reservation_id),
    )
    return reservation


async def get_reservation(db: AsyncSession, reservation_id: uuid.UUID | str) -> Reservation:
    reservation_id = _as_uuid(reservation_id)
    with storage_errors("get_reservation"):
        reservation = await db.get(Reservation, reservation_id)
    if reservation is None:
        raise ReservationNotFoundError(f"Reservation {reservation_id} not found", reservation_id=str(reservation_id))
    return reservation


async def _lock_reservation(db: AsyncSession, reservation_id: uuid.UUID | str):
    """Lock the reservation's ledger key, then reload the reservation under it."""
    reservation = await get_reservation(db, reservation_id)
    ledger = await lock_ledger_day(db, reservation.hub_id, reservation.lane, reservation.reservation_date)
    result = await db.execute(
        select(Reservation)
        .where(Reservation.reservation_id == reservation.reservation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one(), ledger


async def release(
    db: AsyncSession,
    reservation_id: uuid.UUID | str,
    actor_id: str,
    reason: str = "released",
    now: datetime | None = None,
) -> Reservation:
    """Free a reservation's capacity. Releasing twice is a no-op."""
    now = now or datetime.utcnow()
    with storage_errors("release"):
        reservation, ledger = await _lock_reservation(db, reservation_id)
        if reservation.status == "released":
            return reservation
        if reservation.status == "completed":
            raise InvalidStateTransitionError(
                "Completed reservations cannot be released",
                reservation_id=str(reservation.reservation_id),
                status=reservation.status,
            )
        _mark_released(reservation, reason, now)
        await db.flush()

        usage = await lane_usage(db, reservation.hub_id, reservation.lane, reservation.reservation_date, now)
        refresh_snapshot(ledger, usage, now)
        record_capacity_event(
            db,
            event_type="hub_capacity.reservation.released",
            hub_id=reservation.hub_id,
            entity_type="reservation",
            entity_id=reservation.reservation_id,
            actor_id=actor_id,
            data={"reason": reason, "slots": reservation.slots_reserved},
        )
        await db.flush()

    logger.info("reservation.released", reservation_id=str(reservation.reservation_id), reason=reason)
    return reservation


def _mark_released(reservation: Reservation, reason: str, now: datetime) -> None:
    reservation.status = "released"
    reservation.released_at = now
    reservation.release_reason = reason
    reservation.updated_at = now


async def promote(
    db: AsyncSession,
    reservation_id: uuid.UUID | str,
    to_type: str,
    actor_id: str,
    now: datetime | None = None,
) -> Reservation:
    """Move a reservation forward along hold → booking → in_progress → completed."""
    now = now or datetime.utcnow()
    if to_type not in PROGRESSION:
        raise InvalidStateTransitionError(f"Unknown reservation stage: {to_type}", to_type=to_type)

    with storage_errors("promote"):
        reservation, ledger = await _lock_reservation(db, reservation_id)
        details = {
            "reservation_id": str(reservation.reservation_id),
            "from_type": reservation.reservation_type,
            "to_type": to_type,
            "status": reservation.status,
        }
        if reservation.status != "active":
            raise InvalidStateTransitionError(f"Cannot promote a {reservation.status} reservation", **details)
        if PROGRESSION.index(to_type) <= PROGRESSION.index(reservation.reservation_type):
            raise InvalidStateTransitionError(
                f"Cannot move a {reservation.reservation_type} back or sideways to {to_type}", **details
            )
        if reservation.reservation_type == "hold" and reservation.expires_at and reservation.expires_at < now:
            raise InvalidStateTransitionError("Hold has expired", expires_at=reservation.expires_at.isoformat(), **details)

        from_type = reservation.reservation_type
        if to_type == "completed":
            reservation.status = "completed"
            reservation.completed_at = now
        else:
            reservation.reservation_type = to_type
        reservation.expires_at = None
        reservation.updated_at = now
        await db.flush()

        usage = await lane_usage(db, reservation.hub_id, reservation.lane, reservation.reservation_date, now)
        refresh_snapshot(ledger, usage, now)
        record_capacity_event(
            db,
            event_type="hub_capacity.reservation.promoted",
            hub_id=reservation.hub_id,
            entity_type="reservation",
            entity_id=reservation.reservation_id,
            actor_id=actor_id,
            data={"from_type": from_type, "to_type": to_type},
        )
        await db.flush()

    logger.info(
        "reservation.promoted",
        reservation_id=str(reservation.reservation_id),
        from_type=from_type,
        to_type=to_type,
    )
    return reservation


async def expire_stale_holds(db: AsyncSession, now: datetime | None = None, actor_id: str = "system") -> int:
    """Release every active hold past its expiry. Returns how many were released."""
    now = now or datetime.utcnow()
    stale = (
        Reservation.reservation_type == "hold",
        Reservation.status == "active",
        Reservation.expires_at < now,
    )
    released = 0

    with storage_errors("expire_stale_holds"):
        result = await db.execute(
            select(Reservation.hub_id, Reservation.lane, Reservation.reservation_date)
            .where(*stale)
            .distinct()
        )
        keys = result.all()

        for hub_id, lane, day in keys:
            ledger = await lock_ledger_day(db, hub_id, lane, day)
            rows = await db.execute(
                select(Reservation)
                .where(
                    Reservation.hub_id == hub_id,
                    Reservation.lane == lane,
                    Reservation.reservation_date == day,
                    *stale,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            for reservation in rows.scalars().all():
                _mark_released(reservation, "expired", now)
                record_capacity_event(
                    db,
                    event_type="hub_capacity.reservation.expired",
                    hub_id=hub_id,
                    entity_type="reservation",
                    entity_id=reservation.reservation_id,
                    actor_id=actor_id,
                    data={"expires_at": reservation.expires_at.isoformat(), "slots": reservation.slots_reserved},
                )
                released += 1
            await db.flush()

            usage = await lane_usage(db, hub_id, lane, day, now)
            refresh_snapshot(ledger, usage, now)
        await db.flush()

    if released:
        logger.info("holds.expired", released=released, keys=len(keys))
    return released


async def list_reservations(
    db: AsyncSession,
    hub_id: str,
    start: date | None = None,
    end: date | None = None,
    lane: str | None = None,
    status: str | None = None,
    limit: int = 200,
) -> list[Reservation]:
    query = select(Reservation).where(Reservation.hub_id == hub_id)
    if start is not None:
        query = query.where(Reservation.reservation_date >= start)
    if end is not None:
        query = query.where(Reservation.reservation_date <= end)
    if lane:
        query = query.where(Reservation.lane == lane)
    if status:
        query = query.where(Reservation.status == status)
    query = query.order_by(Reservation.reservation_date, Reservation.created_at).limit(limit)
    with storage_errors("list_reservations"):
        result = await db.execute(query)
        return list(result.scalars().all())
