"""
HubOps Database Models

Policy versioning and hub capacity reservation tables.

Tables:
  Policy Store (1-3):
  1. policy_scopes         - Lock anchor + version counter per (kind, policy_id)
  2. policy_versions       - Effective-dated SLA/margin, risk and capacity versions
  3. policy_events         - Audit trail of policy writes

  Capacity (4-7):
  4. capacity_ledger_days  - Lock anchor + usage snapshot per (hub, lane, day)
  5. reservations          - Holds / bookings / in-progress work per shipment
  6. blackout_rules        - Recurring and one-time lane closures
  7. capacity_events       - Audit trail of reservation and blackout writes
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

POLICY_KINDS = ("sla_margin", "risk_threshold", "hub_capacity")
POLICY_STATES = ("draft", "published", "scheduled", "archived")
LANES = ("auth", "sewing", "qa")
RESERVATION_TYPES = ("hold", "booking", "in_progress")
RESERVATION_STATUSES = ("active", "released", "completed")
TIERS = ("T2", "T3")
PRIORITIES = ("standard", "priority", "rush")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


# ═══════════════════════════════════════════════════════════════════════════
# Policy Store (1-3)
# ═══════════════════════════════════════════════════════════════════════════


# ─── 1. Policy Scopes ─────────────────────────────────────────────────────


class PolicyScope(Base):
    """One row per logical policy; locked FOR UPDATE before overlap checks."""

    __tablename__ = "policy_scopes"

    scope_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    kind = Column(String(30), nullable=False)
    policy_id = Column(String(100), nullable=False)
    latest_version = Column(Integer, nullable=False, default=0)
    published_version_id = Column(GUID(), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("kind", "policy_id", name="uq_policy_scope"),
        CheckConstraint(_in_list("kind", POLICY_KINDS), name="ck_policy_scope_kind"),
    )


# ─── 2. Policy Versions ───────────────────────────────────────────────────


class PolicyVersion(Base):
    """
    Effective-dated policy version.

    Lifecycle:
      draft | published | scheduled → archived
      scheduled → published when its effective date is reached
    At most one published row per (kind, policy_id); published and
    scheduled rows never share an effective instant within a scope.
    """

    __tablename__ = "policy_versions"

    version_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    kind = Column(String(30), nullable=False)
    policy_id = Column(String(100), nullable=False)  # hub id for capacity, "global" for SLA/risk
    version = Column(Integer, nullable=False)
    version_label = Column(String(50), nullable=True)  # caller-facing label, e.g. "v2.1"
    state = Column(String(20), nullable=False, default="draft")
    effective_date = Column(DateTime, nullable=False)
    payload = Column(JSONType, nullable=False)
    idempotency_key = Column(String(64), nullable=False)
    payload_hash = Column(String(64), nullable=False)
    publish_request_id = Column(String(100), nullable=True)
    change_reason = Column(Text, nullable=False)
    actor_id = Column(String(255), nullable=False)
    superseded_by = Column(GUID(), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    archived_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_policy_idempotency_key"),
        UniqueConstraint("kind", "policy_id", "version", name="uq_policy_version"),
        Index(
            "uq_policy_one_published",
            "kind",
            "policy_id",
            unique=True,
            postgresql_where=text("state = 'published'"),
            sqlite_where=text("state = 'published'"),
        ),
        Index(
            "uq_policy_effective_instant",
            "kind",
            "policy_id",
            "effective_date",
            unique=True,
            postgresql_where=text("state IN ('published', 'scheduled')"),
            sqlite_where=text("state IN ('published', 'scheduled')"),
        ),
        Index("ix_policy_versions_scope_state", "kind", "policy_id", "state"),
        Index("ix_policy_versions_payload_hash", "payload_hash"),
        CheckConstraint(_in_list("kind", POLICY_KINDS), name="ck_policy_version_kind"),
        CheckConstraint(_in_list("state", POLICY_STATES), name="ck_policy_version_state"),
        CheckConstraint("version > 0", name="ck_policy_version_positive"),
    )


# ─── 3. Policy Events ─────────────────────────────────────────────────────


class PolicyEvent(Base):
    """Audit trail for policy writes (created, published, scheduled, activated, archived)."""

    __tablename__ = "policy_events"

    event_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    event_type = Column(String(60), nullable=False)  # 'policy.published', 'policy.activated', ...
    kind = Column(String(30), nullable=False)
    policy_id = Column(String(100), nullable=False)
    version_id = Column(GUID(), nullable=True)
    version = Column(Integer, nullable=True)
    actor_id = Column(String(255), nullable=False)
    event_data = Column(JSONType, nullable=True)  # {action_taken, payload_hash, effective_date}
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_policy_events_scope", "kind", "policy_id", "created_at"),)


# ═══════════════════════════════════════════════════════════════════════════
# Capacity (4-7)
# ═══════════════════════════════════════════════════════════════════════════


# ─── 4. Capacity Ledger Days ──────────────────────────────────────────────


class CapacityLedgerDay(Base):
    """
    Per-hub, per-lane, per-day ledger row.

    Every reservation write locks this row first; the counters are the
    snapshot left by the last write and are informational only (the
    reservations table is the source of truth).
    """

    __tablename__ = "capacity_ledger_days"

    ledger_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    hub_id = Column(String(100), nullable=False)
    lane = Column(String(20), nullable=False)
    ledger_date = Column(Date, nullable=False)
    effective_capacity = Column(Integer, nullable=False, default=0)
    rush_allowance = Column(Integer, nullable=False, default=0)
    committed_slots = Column(Integer, nullable=False, default=0)
    rush_slots = Column(Integer, nullable=False, default=0)
    qa_minutes_used = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("hub_id", "lane", "ledger_date", name="uq_ledger_hub_lane_date"),
        CheckConstraint(_in_list("lane", LANES), name="ck_ledger_lane"),
    )


# ─── 5. Reservations ──────────────────────────────────────────────────────


class Reservation(Base):
    """
    Capacity reservation for one shipment on one hub lane and day.

    Type flow:   hold → booking → in_progress → (status) completed
    Status flow: active → released | completed
    A hold past expires_at is free capacity even before the sweep
    marks it released.
    """

    __tablename__ = "reservations"

    reservation_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    shipment_id = Column(String(100), nullable=False)
    hub_id = Column(String(100), nullable=False)
    lane = Column(String(20), nullable=False)
    reservation_date = Column(Date, nullable=False)
    slots_reserved = Column(Integer, nullable=False, default=1)
    tier = Column(String(5), nullable=False)
    priority = Column(String(20), nullable=False, default="standard")
    is_rush = Column(Boolean, nullable=False, default=False)
    rush_reason = Column(Text, nullable=True)
    reservation_type = Column(String(20), nullable=False, default="hold")
    status = Column(String(20), nullable=False, default="active")
    qa_minutes_required = Column(Integer, nullable=False, default=0)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    expires_at = Column(DateTime, nullable=True)  # holds only
    released_at = Column(DateTime, nullable=True)
    release_reason = Column(String(50), nullable=True)  # released, expired, cancelled
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_reservations_key_status", "hub_id", "lane", "reservation_date", "status"),
        Index("ix_reservations_shipment", "shipment_id"),
        Index("ix_reservations_hold_expiry", "reservation_type", "status", "expires_at"),
        CheckConstraint("slots_reserved > 0", name="ck_reservation_slots_positive"),
        CheckConstraint("qa_minutes_required >= 0", name="ck_reservation_qa_minutes"),
        CheckConstraint(_in_list("lane", LANES), name="ck_reservation_lane"),
        CheckConstraint(_in_list("tier", TIERS), name="ck_reservation_tier"),
        CheckConstraint(_in_list("priority", PRIORITIES), name="ck_reservation_priority"),
        CheckConstraint(_in_list("reservation_type", RESERVATION_TYPES), name="ck_reservation_type"),
        CheckConstraint(_in_list("status", RESERVATION_STATUSES), name="ck_reservation_status"),
    )


# ─── 6. Blackout Rules ────────────────────────────────────────────────────


class BlackoutRule(Base):
    """Lane closures: one-time date ranges or recurring (RRULE subset) patterns."""

    __tablename__ = "blackout_rules"

    rule_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    hub_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    rule_type = Column(String(20), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    recurrence_rule = Column(String(255), nullable=True)  # FREQ=WEEKLY;BYDAY=SU
    affected_lanes = Column(JSONType, nullable=False)
    reason = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    deactivated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_blackout_rules_hub_active", "hub_id", "is_active"),
        CheckConstraint("rule_type IN ('recurring', 'one_time')", name="ck_blackout_rule_type"),
        CheckConstraint("end_date IS NULL OR end_date >= start_date", name="ck_blackout_dates_valid"),
        CheckConstraint(
            "rule_type != 'recurring' OR recurrence_rule IS NOT NULL", name="ck_blackout_recurrence_required"
        ),
    )


# ─── 7. Capacity Events ───────────────────────────────────────────────────


class CapacityEvent(Base):
    """Audit trail for reservation and blackout writes."""

    __tablename__ = "capacity_events"

    event_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    event_type = Column(String(60), nullable=False)  # 'hub_capacity.reservation.created', ...
    hub_id = Column(String(100), nullable=False)
    entity_type = Column(String(30), nullable=False)  # reservation, blackout, profile
    entity_id = Column(GUID(), nullable=True)
    event_data = Column(JSONType, nullable=True)
    actor_id = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_capacity_events_hub_time", "hub_id", "created_at"),
        CheckConstraint("entity_type IN ('reservation', 'blackout', 'profile')", name="ck_capacity_event_entity"),
    )
