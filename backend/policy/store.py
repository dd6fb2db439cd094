"""
Policy Store — versioned, effective-dated policy rows and their reads.

Writes go through ``policy.publish``; this module owns the queries both
the publish workflow and read-only callers (settings screens, the
capacity ledger, the integrity auditor) share.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import storage_errors
from db.locks import lock_anchor_row
from db.models import PolicyEvent, PolicyScope, PolicyVersion
from policy.payloads import PolicyKind, PolicyState, parse_kind

LIVE_STATES = (PolicyState.PUBLISHED.value, PolicyState.SCHEDULED.value)


def serialize_version(row: PolicyVersion) -> dict[str, Any]:
    return {
        "version_id": str(row.version_id),
        "kind": row.kind,
        "policy_id": row.policy_id,
        "version": row.version,
        "version_label": row.version_label,
        "state": row.state,
        "effective_date": row.effective_date.isoformat() if row.effective_date else None,
        "payload_hash": row.payload_hash,
        "change_reason": row.change_reason,
        "actor_id": row.actor_id,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def find_by_idempotency_key(db: AsyncSession, key: str) -> PolicyVersion | None:
    result = await db.execute(select(PolicyVersion).where(PolicyVersion.idempotency_key == key).limit(1))
    return result.scalar_one_or_none()


async def lock_scope(db: AsyncSession, kind: PolicyKind, policy_id: str) -> PolicyScope:
    """Serialize writers on one (kind, policy_id)."""
    return await lock_anchor_row(
        db,
        PolicyScope,
        kind=kind.value,
        policy_id=policy_id,
        defaults={"latest_version": 0},
    )


async def live_versions(db: AsyncSession, kind: PolicyKind, policy_id: str) -> list[PolicyVersion]:
    """Published and scheduled rows of one scope, oldest effective date first."""
    result = await db.execute(
        select(PolicyVersion)
        .where(
            PolicyVersion.kind == kind.value,
            PolicyVersion.policy_id == policy_id,
            PolicyVersion.state.in_(LIVE_STATES),
        )
        .order_by(PolicyVersion.effective_date)
    )
    return list(result.scalars().all())


async def get_active_policy(
    db: AsyncSession,
    kind: PolicyKind | str,
    policy_id: str,
) -> PolicyVersion | None:
    """The single published version of a scope, if any."""
    kind = parse_kind(kind)
    with storage_errors("get_active_policy"):
        result = await db.execute(
            select(PolicyVersion)
            .where(
                PolicyVersion.kind == kind.value,
                PolicyVersion.policy_id == policy_id,
                PolicyVersion.state == PolicyState.PUBLISHED.value,
            )
            .order_by(PolicyVersion.effective_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


async def get_active_policies(db: AsyncSession, kind: PolicyKind | str | None = None) -> list[PolicyVersion]:
    """Published and scheduled versions, optionally for one kind."""
    query = select(PolicyVersion).where(PolicyVersion.state.in_(LIVE_STATES))
    if kind is not None:
        query = query.where(PolicyVersion.kind == parse_kind(kind).value)
    query = query.order_by(PolicyVersion.kind, PolicyVersion.policy_id, PolicyVersion.effective_date.desc())
    with storage_errors("get_active_policies"):
        result = await db.execute(query)
        return list(result.scalars().all())


def summarize_active_policies(rows: list[PolicyVersion]) -> dict[str, Any]:
    summary: dict[str, list[dict[str, Any]]] = {kind.value: [] for kind in PolicyKind}
    for row in rows:
        summary[row.kind].append(serialize_version(row))
    return {"success": True, "summary": summary, "total_active": len(rows)}


async def get_policy_history(
    db: AsyncSession,
    kind: PolicyKind | str,
    policy_id: str,
    limit: int = 10,
) -> list[PolicyVersion]:
    kind = parse_kind(kind)
    with storage_errors("get_policy_history"):
        result = await db.execute(
            select(PolicyVersion)
            .where(PolicyVersion.kind == kind.value, PolicyVersion.policy_id == policy_id)
            .order_by(PolicyVersion.version.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


async def get_policy_version(db: AsyncSession, version_id: uuid.UUID | str) -> PolicyVersion | None:
    if not isinstance(version_id, uuid.UUID):
        version_id = uuid.UUID(str(version_id))
    with storage_errors("get_policy_version"):
        return await db.get(PolicyVersion, version_id)


def archive_version(row: PolicyVersion, *, superseded_by: uuid.UUID | None, now: datetime) -> None:
    row.state = PolicyState.ARCHIVED.value
    row.archived_at = now
    row.updated_at = now
    row.superseded_by = superseded_by


def record_policy_event(
    db: AsyncSession,
    *,
    event_type: str,
    row: PolicyVersion,
    actor_id: str,
    data: dict[str, Any] | None = None,
) -> PolicyEvent:
    event = PolicyEvent(
        event_type=event_type,
        kind=row.kind,
        policy_id=row.policy_id,
        version_id=row.version_id,
        version=row.version,
        actor_id=actor_id,
        event_data={
            "state": row.state,
            "effective_date": row.effective_date.isoformat(),
            "payload_hash": row.payload_hash,
            **(data or {}),
        },
    )
    db.add(event)
    return event
