"""
Policy Router — versioned SLA/margin, risk threshold and capacity policies.

Write flow:
  1. Settings screen posts a payload → publish (live now) or schedule (future)
  2. Replays of the same request return the stored version (is_duplicate)
  3. The scheduler tick (or POST /activate-due) promotes due schedules

Every write commits here; engine errors roll back with the session.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_actor_id, get_db
from policy.payloads import PolicyKind
from policy.publish import activate_due_policies, publish, schedule_policy
from policy.store import get_active_policies, get_policy_history, summarize_active_policies

router = APIRouter(prefix="/api/v1/policies", tags=["policies"])


# ─── Schemas ────────────────────────────────────────────────────────────────

class PublishRequest(BaseModel):
    payload: dict[str, Any]
    effective_date: datetime | None = None  # defaults to now
    state: Literal["draft", "published", "scheduled"] = "published"
    change_reason: str = Field(..., min_length=1)
    request_id: str | None = None
    version_label: str | None = None


class ScheduleRequest(BaseModel):
    payload: dict[str, Any]
    effective_at: datetime
    change_reason: str = Field(..., min_length=1)
    request_id: str | None = None
    version_label: str | None = None


class PublishResponse(BaseModel):
    policy_id: str
    version_id: UUID
    version: int
    is_duplicate: bool
    action_taken: str
    idempotency_key: str
    payload_hash: str
    effective_date: datetime
    state: str

    model_config = {"from_attributes": True}


class PolicyVersionResponse(BaseModel):
    version_id: UUID
    kind: str
    policy_id: str
    version: int
    version_label: str | None
    state: str
    effective_date: datetime
    payload: dict[str, Any]
    payload_hash: str
    change_reason: str
    actor_id: str
    superseded_by: UUID | None
    created_at: datetime
    archived_at: datetime | None

    model_config = {"from_attributes": True}


class ActivationResponse(BaseModel):
    kind: str
    policy_id: str
    version_id: UUID
    version: int
    outcome: str
    archived_version_id: UUID | None

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────

@router.get("/active")
async def list_active_policies(
    kind: PolicyKind | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Published and scheduled versions grouped by kind."""
    rows = await get_active_policies(db, kind)
    return summarize_active_policies(rows)


@router.post("/activate-due", response_model=list[ActivationResponse])
async def activate_due(
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    """Run the scheduler tick now."""
    outcomes = await activate_due_policies(db, actor_id=actor_id)
    await db.commit()
    return outcomes


@router.post("/{kind}/{scope_id}/publish", response_model=PublishResponse)
async def publish_policy(
    kind: PolicyKind,
    scope_id: str,
    body: PublishRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    now = datetime.utcnow()
    result = await publish(
        db,
        kind=kind,
        scope_id=scope_id,
        payload=body.payload,
        effective_date=body.effective_date,
        state=body.state,
        actor_id=actor_id,
        change_reason=body.change_reason,
        request_id=body.request_id,
        version_label=body.version_label,
        now=now,
    )
    await db.commit()
    return result


@router.post("/{kind}/{scope_id}/schedule", response_model=PublishResponse)
async def schedule(
    kind: PolicyKind,
    scope_id: str,
    body: ScheduleRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
):
    result = await schedule_policy(
        db,
        kind=kind,
        scope_id=scope_id,
        payload=body.payload,
        effective_at=body.effective_at,
        actor_id=actor_id,
        change_reason=body.change_reason,
        request_id=body.request_id,
        version_label=body.version_label,
    )
    await db.commit()
    return result


@router.get("/{kind}/{scope_id}/history", response_model=list[PolicyVersionResponse])
async def policy_history(
    kind: PolicyKind,
    scope_id: str,
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Versions of one scope, newest first."""
    return await get_policy_history(db, kind, scope_id, limit)
