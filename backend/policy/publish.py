"""
Policy publish / schedule workflow.

Write path for versioned policies:
  1. Validate the payload and derive its hash and idempotency key
  2. Return the stored row for a replayed request (no lock taken)
  3. Lock the scope row and look the key up again, then check the new
     effective window against the live (published + scheduled) versions
  4. Insert the version; publishing archives what it supersedes
  5. Record a policy event in the same transaction

Scheduled writes must be dated strictly after ``now``; that is checked
before any query runs.

The caller owns the commit. ``activate_due_policies`` is the scheduler
tick that turns due scheduled versions into the published one.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from capacity.ledger import find_capacity_conflicts
from core.config import get_settings
from core.errors import (
    CapacityConflictError,
    InvalidScheduleDateError,
    OverlappingPolicyError,
    PolicyPayloadError,
    storage_errors,
)
from db.models import PolicyVersion
from policy.canonical import coarse_timestamp, hash_payload, idempotency_key
from policy.payloads import (
    CapacityProfilePayload,
    PolicyKind,
    PolicyState,
    parse_kind,
    payload_to_document,
    validate_payload,
)
from policy.store import (
    archive_version,
    find_by_idempotency_key,
    live_versions,
    lock_scope,
    record_policy_event,
)

logger = structlog.get_logger()

_ACTIONS = {
    PolicyState.DRAFT: "created",
    PolicyState.PUBLISHED: "published",
    PolicyState.SCHEDULED: "scheduled",
}


@dataclass
class PublishResult:
    policy_id: str
    version_id: uuid.UUID
    version: int
    is_duplicate: bool
    action_taken: str  # created | published | scheduled | skipped
    idempotency_key: str
    payload_hash: str
    effective_date: datetime
    state: str

    @classmethod
    def from_row(cls, row: PolicyVersion, *, is_duplicate: bool, action_taken: str) -> "PublishResult":
        return cls(
            policy_id=row.policy_id,
            version_id=row.version_id,
            version=row.version,
            is_duplicate=is_duplicate,
            action_taken=action_taken,
            idempotency_key=row.idempotency_key,
            payload_hash=row.payload_hash,
            effective_date=row.effective_date,
            state=row.state,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["version_id"] = str(self.version_id)
        data["effective_date"] = self.effective_date.isoformat()
        return data


@dataclass
class ActivationOutcome:
    kind: str
    policy_id: str
    version_id: uuid.UUID
    version: int
    outcome: str  # activated | superseded
    archived_version_id: uuid.UUID | None = None


def to_utc_naive(value: datetime | date) -> datetime:
    """Timestamps are stored as naive UTC."""
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _parse_state(state: PolicyState | str) -> PolicyState:
    try:
        parsed = PolicyState(state)
    except ValueError as exc:
        raise PolicyPayloadError(f"Unknown policy state: {state}", state=str(state)) from exc
    if parsed == PolicyState.ARCHIVED:
        raise PolicyPayloadError("Versions cannot be written directly as archived", state=parsed.value)
    return parsed


def _require_future(effective_at: datetime, now: datetime) -> None:
    if effective_at <= now:
        raise InvalidScheduleDateError(
            "Scheduled effective date must be in the future",
            effective_at=effective_at.isoformat(),
            now=now.isoformat(),
        )


def find_overlaps(
    live: list[PolicyVersion],
    effective_date: datetime,
) -> list[PolicyVersion]:
    """
    Live rows the new window at ``effective_date`` would collide with.

    A published row starting at or after the new instant would leave two
    live windows; a scheduled row at the same instant is ambiguous.
    Scheduled rows at other instants coexist.
    """
    conflicts = []
    for row in live:
        if row.state == PolicyState.PUBLISHED.value and row.effective_date >= effective_date:
            conflicts.append(row)
        elif row.state == PolicyState.SCHEDULED.value and row.effective_date == effective_date:
            conflicts.append(row)
    return conflicts


async def publish(
    db: AsyncSession,
    *,
    kind: PolicyKind | str,
    scope_id: str | None,
    payload: dict[str, Any],
    effective_date: datetime | date | None = None,
    state: PolicyState | str,
    actor_id: str,
    change_reason: str,
    request_id: str | None = None,
    version_label: str | None = None,
    now: datetime | None = None,
) -> PublishResult:
    """Write one policy version in ``state``; see module docstring."""
    settings = get_settings()
    now = to_utc_naive(now or datetime.utcnow())
    kind = parse_kind(kind)
    state = _parse_state(state)
    policy_id = scope_id or settings.default_policy_scope
    immediate = effective_date is None
    effective_date = now if immediate else to_utc_naive(effective_date)
    if state == PolicyState.SCHEDULED:
        _require_future(effective_date, now)

    model = validate_payload(kind, payload)
    document = payload_to_document(model)
    payload_hash = hash_payload(document)
    request_marker = request_id or coarse_timestamp(now, settings.idempotency_window_seconds)
    key = idempotency_key(
        {
            "kind": kind.value,
            "policy_id": policy_id,
            "effective_date": "immediate" if immediate else effective_date,
            "state": state.value,
            "payload": document,
        },
        actor_id,
        request_marker,
    )

    with storage_errors("publish"):
        existing = await find_by_idempotency_key(db, key)
        if existing is not None:
            logger.info(
                "policy.duplicate_request",
                kind=kind.value,
                policy_id=policy_id,
                version_id=str(existing.version_id),
            )
            return PublishResult.from_row(existing, is_duplicate=True, action_taken="skipped")

        scope = await lock_scope(db, kind, policy_id)
        # A replay that waited on the lock sees its original here.
        existing = await find_by_idempotency_key(db, key)
        if existing is not None:
            logger.info(
                "policy.duplicate_request",
                kind=kind.value,
                policy_id=policy_id,
                version_id=str(existing.version_id),
                after_lock=True,
            )
            return PublishResult.from_row(existing, is_duplicate=True, action_taken="skipped")

        live = await live_versions(db, kind, policy_id)

        if state != PolicyState.DRAFT:
            conflicts = find_overlaps(live, effective_date)
            if conflicts:
                raise OverlappingPolicyError(
                    f"{kind.value} policy {policy_id} already has a live version at or after "
                    f"{effective_date.isoformat()}",
                    kind=kind.value,
                    policy_id=policy_id,
                    effective_date=effective_date.isoformat(),
                    conflicting_versions=[
                        {
                            "version_id": str(row.version_id),
                            "version": row.version,
                            "state": row.state,
                            "effective_date": row.effective_date.isoformat(),
                        }
                        for row in conflicts
                    ],
                )

        if kind == PolicyKind.HUB_CAPACITY and state == PolicyState.PUBLISHED:
            await _ensure_bookings_fit(db, policy_id, model, now)

        row = PolicyVersion(
            version_id=uuid.uuid4(),
            kind=kind.value,
            policy_id=policy_id,
            version=scope.latest_version + 1,
            version_label=version_label,
            state=state.value,
            effective_date=effective_date,
            payload=document,
            idempotency_key=key,
            payload_hash=payload_hash,
            publish_request_id=request_id,
            change_reason=change_reason,
            actor_id=actor_id,
            created_at=now,
            updated_at=now,
        )

        archived: list[PolicyVersion] = []
        if state == PolicyState.PUBLISHED:
            for prior in live:
                if prior.state == PolicyState.PUBLISHED.value or prior.effective_date < effective_date:
                    archive_version(prior, superseded_by=row.version_id, now=now)
                    archived.append(prior)
            # Archive before insert: one published row per scope is enforced by index.
            await db.flush()

        try:
            async with db.begin_nested():
                db.add(row)
        except IntegrityError:
            winner = await find_by_idempotency_key(db, key)
            if winner is None:
                raise
            logger.info("policy.duplicate_request_raced", kind=kind.value, policy_id=policy_id)
            return PublishResult.from_row(winner, is_duplicate=True, action_taken="skipped")

        scope.latest_version = row.version
        if state == PolicyState.PUBLISHED:
            scope.published_version_id = row.version_id
        scope.updated_at = now

        action = _ACTIONS[state]
        record_policy_event(
            db,
            event_type=f"policy.{action}",
            row=row,
            actor_id=actor_id,
            data={
                "action_taken": action,
                "version_label": version_label,
                "change_reason": change_reason,
                "archived_versions": [str(prior.version_id) for prior in archived],
            },
        )
        for prior in archived:
            record_policy_event(
                db,
                event_type="policy.archived",
                row=prior,
                actor_id=actor_id,
                data={"superseded_by": str(row.version_id)},
            )
        await db.flush()

    logger.info(
        f"policy.{action}",
        kind=kind.value,
        policy_id=policy_id,
        version=row.version,
        version_id=str(row.version_id),
        effective_date=effective_date.isoformat(),
        archived=len(archived),
        actor_id=actor_id,
    )
    return PublishResult.from_row(row, is_duplicate=False, action_taken=action)


async def schedule_policy(
    db: AsyncSession,
    *,
    kind: PolicyKind | str,
    scope_id: str | None,
    payload: dict[str, Any],
    effective_at: datetime | date,
    actor_id: str,
    change_reason: str,
    request_id: str | None = None,
    version_label: str | None = None,
    now: datetime | None = None,
) -> PublishResult:
    """Publish a version that goes live at ``effective_at`` (strictly in the future)."""
    now = to_utc_naive(now or datetime.utcnow())
    effective_at = to_utc_naive(effective_at)
    return await publish(
        db,
        kind=kind,
        scope_id=scope_id,
        payload=payload,
        effective_date=effective_at,
        state=PolicyState.SCHEDULED,
        actor_id=actor_id,
        change_reason=change_reason,
        request_id=request_id,
        version_label=version_label,
        now=now,
    )


async def _ensure_bookings_fit(
    db: AsyncSession,
    hub_id: str,
    profile: CapacityProfilePayload,
    now: datetime,
) -> None:
    conflicts = await find_capacity_conflicts(db, hub_id, profile, since=now.date())
    if conflicts:
        raise CapacityConflictError(
            f"Capacity profile for {hub_id} is below existing bookings",
            hub_id=hub_id,
            conflicts=conflicts,
        )


async def activate_due_policies(
    db: AsyncSession,
    now: datetime | None = None,
    actor_id: str = "scheduler",
) -> list[ActivationOutcome]:
    """
    Promote scheduled versions whose effective date has passed.

    Per scope, the latest due version becomes the published one and any
    earlier due versions are archived as superseded by it. A due version
    older than the current published version is archived too. Running the
    tick twice is a no-op the second time.
    """
    now = to_utc_naive(now or datetime.utcnow())
    outcomes: list[ActivationOutcome] = []

    with storage_errors("activate_due_policies"):
        result = await db.execute(
            select(PolicyVersion.kind, PolicyVersion.policy_id)
            .where(
                PolicyVersion.state == PolicyState.SCHEDULED.value,
                PolicyVersion.effective_date <= now,
            )
            .distinct()
            .order_by(PolicyVersion.kind, PolicyVersion.policy_id)
        )
        scopes = [(PolicyKind(kind), policy_id) for kind, policy_id in result.all()]

        for kind, policy_id in scopes:
            scope = await lock_scope(db, kind, policy_id)
            live = await live_versions(db, kind, policy_id)
            current = next((row for row in live if row.state == PolicyState.PUBLISHED.value), None)
            due = [
                row for row in live
                if row.state == PolicyState.SCHEDULED.value and row.effective_date <= now
            ]
            if not due:
                continue

            winner = due[-1]
            if current is not None and current.effective_date > winner.effective_date:
                winner = None

            for row in due:
                if row is winner:
                    continue
                superseded_by = winner.version_id if winner is not None else current.version_id
                archive_version(row, superseded_by=superseded_by, now=now)
                record_policy_event(
                    db,
                    event_type="policy.archived",
                    row=row,
                    actor_id=actor_id,
                    data={"superseded_by": str(superseded_by), "reason": "superseded_before_activation"},
                )
                outcomes.append(
                    ActivationOutcome(
                        kind=kind.value,
                        policy_id=policy_id,
                        version_id=row.version_id,
                        version=row.version,
                        outcome="superseded",
                    )
                )

            if winner is None:
                await db.flush()
                continue

            archived_id = None
            if current is not None:
                archive_version(current, superseded_by=winner.version_id, now=now)
                record_policy_event(
                    db,
                    event_type="policy.archived",
                    row=current,
                    actor_id=actor_id,
                    data={"superseded_by": str(winner.version_id)},
                )
                archived_id = current.version_id
            await db.flush()

            winner.state = PolicyState.PUBLISHED.value
            winner.updated_at = now
            scope.published_version_id = winner.version_id
            scope.updated_at = now
            record_policy_event(
                db,
                event_type="policy.activated",
                row=winner,
                actor_id=actor_id,
                data={"archived_version_id": str(archived_id) if archived_id else None},
            )
            await db.flush()

            if kind == PolicyKind.HUB_CAPACITY:
                conflicts = await find_capacity_conflicts(
                    db, policy_id, validate_payload(kind, winner.payload), since=now.date()
                )
                if conflicts:
                    logger.warning(
                        "policy.activated_below_bookings",
                        hub_id=policy_id,
                        version=winner.version,
                        conflicts=len(conflicts),
                    )

            outcomes.append(
                ActivationOutcome(
                    kind=kind.value,
                    policy_id=policy_id,
                    version_id=winner.version_id,
                    version=winner.version,
                    outcome="activated",
                    archived_version_id=archived_id,
                )
            )
            logger.info(
                "policy.activated",
                kind=kind.value,
                policy_id=policy_id,
                version=winner.version,
                archived_version_id=str(archived_id) if archived_id else None,
            )

    return outcomes
