"""Capacity audit trail (reservation and blackout writes)."""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import storage_errors
from db.models import CapacityEvent


def record_capacity_event(
    db: AsyncSession,
    *,
    event_type: str,
    hub_id: str,
    entity_type: str,
    entity_id: uuid.UUID | None,
    actor_id: str,
    data: dict[str, Any] | None = None,
) -> CapacityEvent:
    event = CapacityEvent(
        event_type=event_type,
        hub_id=hub_id,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        event_data=data or {},
    )
    db.add(event)
    return event


async def list_capacity_events(db: AsyncSession, hub_id: str, limit: int = 50) -> list[CapacityEvent]:
    with storage_errors("list_capacity_events"):
        result = await db.execute(
            select(CapacityEvent)
            .where(CapacityEvent.hub_id == hub_id)
            .order_by(CapacityEvent.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
