"""
Policy versioning and hub capacity reservation tables.

Revision ID: 001
Revises:
Create Date: 2026-03-02
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

POLICY_KINDS = "kind IN ('sla_margin', 'risk_threshold', 'hub_capacity')"
LANES = "lane IN ('auth', 'sewing', 'qa')"


def upgrade() -> None:
    # ── Policy store ────────────────────────────────────────────────
    op.create_table(
        "policy_scopes",
        sa.Column("scope_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", sa.String(length=30), nullable=False),
        sa.Column("policy_id", sa.String(length=100), nullable=False),
        sa.Column("latest_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("published_version_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("kind", "policy_id", name="uq_policy_scope"),
        sa.CheckConstraint(POLICY_KINDS, name="ck_policy_scope_kind"),
    )

    op.create_table(
        "policy_versions",
        sa.Column("version_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", sa.String(length=30), nullable=False),
        sa.Column("policy_id", sa.String(length=100), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("version_label", sa.String(length=50), nullable=True),
        sa.Column("state", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("effective_date", sa.DateTime(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("publish_request_id", sa.String(length=100), nullable=True),
        sa.Column("change_reason", sa.Text(), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("superseded_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("archived_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("idempotency_key", name="uq_policy_idempotency_key"),
        sa.UniqueConstraint("kind", "policy_id", "version", name="uq_policy_version"),
        sa.CheckConstraint(POLICY_KINDS, name="ck_policy_version_kind"),
        sa.CheckConstraint(
            "state IN ('draft', 'published', 'scheduled', 'archived')",
            name="ck_policy_version_state",
        ),
        sa.CheckConstraint("version > 0", name="ck_policy_version_positive"),
    )
    op.create_index(
        "uq_policy_one_published",
        "policy_versions",
        ["kind", "policy_id"],
        unique=True,
        postgresql_where=sa.text("state = 'published'"),
    )
    op.create_index(
        "uq_policy_effective_instant",
        "policy_versions",
        ["kind", "policy_id", "effective_date"],
        unique=True,
        postgresql_where=sa.text("state IN ('published', 'scheduled')"),
    )
    op.create_index("ix_policy_versions_scope_state", "policy_versions", ["kind", "policy_id", "state"])
    op.create_index("ix_policy_versions_payload_hash", "policy_versions", ["payload_hash"])

    op.create_table(
        "policy_events",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(length=60), nullable=False),
        sa.Column("kind", sa.String(length=30), nullable=False),
        sa.Column("policy_id", sa.String(length=100), nullable=False),
        sa.Column("version_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=True),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("event_data", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_policy_events_scope", "policy_events", ["kind", "policy_id", "created_at"])

    # ── Capacity ────────────────────────────────────────────────────
    op.create_table(
        "capacity_ledger_days",
        sa.Column("ledger_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("hub_id", sa.String(length=100), nullable=False),
        sa.Column("lane", sa.String(length=20), nullable=False),
        sa.Column("ledger_date", sa.Date(), nullable=False),
        sa.Column("effective_capacity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rush_allowance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("committed_slots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rush_slots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qa_minutes_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("hub_id", "lane", "ledger_date", name="uq_ledger_hub_lane_date"),
        sa.CheckConstraint(LANES, name="ck_ledger_lane"),
    )

    op.create_table(
        "reservations",
        sa.Column("reservation_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("shipment_id", sa.String(length=100), nullable=False),
        sa.Column("hub_id", sa.String(length=100), nullable=False),
        sa.Column("lane", sa.String(length=20), nullable=False),
        sa.Column("reservation_date", sa.Date(), nullable=False),
        sa.Column("slots_reserved", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("tier", sa.String(length=5), nullable=False),
        sa.Column("priority", sa.String(length=20), nullable=False, server_default="standard"),
        sa.Column("is_rush", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rush_reason", sa.Text(), nullable=True),
        sa.Column("reservation_type", sa.String(length=20), nullable=False, server_default="hold"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("qa_minutes_required", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("released_at", sa.DateTime(), nullable=True),
        sa.Column("release_reason", sa.String(length=50), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("slots_reserved > 0", name="ck_reservation_slots_positive"),
        sa.CheckConstraint("qa_minutes_required >= 0", name="ck_reservation_qa_minutes"),
        sa.CheckConstraint(LANES, name="ck_reservation_lane"),
        sa.CheckConstraint("tier IN ('T2', 'T3')", name="ck_reservation_tier"),
        sa.CheckConstraint("priority IN ('standard', 'priority', 'rush')", name="ck_reservation_priority"),
        sa.CheckConstraint(
            "reservation_type IN ('hold', 'booking', 'in_progress')",
            name="ck_reservation_type",
        ),
        sa.CheckConstraint("status IN ('active', 'released', 'completed')", name="ck_reservation_status"),
    )
    op.create_index(
        "ix_reservations_key_status",
        "reservations",
        ["hub_id", "lane", "reservation_date", "status"],
    )
    op.create_index("ix_reservations_shipment", "reservations", ["shipment_id"])
    op.create_index(
        "ix_reservations_hold_expiry",
        "reservations",
        ["reservation_type", "status", "expires_at"],
    )

    op.create_table(
        "blackout_rules",
        sa.Column("rule_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("hub_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("rule_type", sa.String(length=20), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("recurrence_rule", sa.String(length=255), nullable=True),
        sa.Column("affected_lanes", postgresql.JSONB(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("rule_type IN ('recurring', 'one_time')", name="ck_blackout_rule_type"),
        sa.CheckConstraint("end_date IS NULL OR end_date >= start_date", name="ck_blackout_dates_valid"),
        sa.CheckConstraint(
            "rule_type != 'recurring' OR recurrence_rule IS NOT NULL",
            name="ck_blackout_recurrence_required",
        ),
    )
    op.create_index("ix_blackout_rules_hub_active", "blackout_rules", ["hub_id", "is_active"])

    op.create_table(
        "capacity_events",
        sa.Column("event_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(length=60), nullable=False),
        sa.Column("hub_id", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=30), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("event_data", postgresql.JSONB(), nullable=True),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "entity_type IN ('reservation', 'blackout', 'profile')",
            name="ck_capacity_event_entity",
        ),
    )
    op.create_index("ix_capacity_events_hub_time", "capacity_events", ["hub_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_capacity_events_hub_time", table_name="capacity_events")
    op.drop_table("capacity_events")
    op.drop_index("ix_blackout_rules_hub_active", table_name="blackout_rules")
    op.drop_table("blackout_rules")
    op.drop_index("ix_reservations_hold_expiry", table_name="reservations")
    op.drop_index("ix_reservations_shipment", table_name="reservations")
    op.drop_index("ix_reservations_key_status", table_name="reservations")
    op.drop_table("reservations")
    op.drop_table("capacity_ledger_days")
    op.drop_index("ix_policy_events_scope", table_name="policy_events")
    op.drop_table("policy_events")
    op.drop_index("ix_policy_versions_payload_hash", table_name="policy_versions")
    op.drop_index("ix_policy_versions_scope_state", table_name="policy_versions")
    op.drop_index("uq_policy_effective_instant", table_name="policy_versions")
    op.drop_index("uq_policy_one_published", table_name="policy_versions")
    op.drop_table("policy_versions")
    op.drop_table("policy_scopes")
