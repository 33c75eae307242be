"""Create contacts, escalation_policies, alerts and delivery_attempts.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Enums are stored as short strings so the same schema runs on PostgreSQL
and SQLite.
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "contacts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("role", sa.String(50), nullable=False, server_default="crew"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("whatsapp", sa.String(32), nullable=True),
        sa.Column("notification_channels", JSON, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "escalation_policies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("event_types", JSON, nullable=False),
        sa.Column("severity_levels", JSON, nullable=False),
        sa.Column("steps", JSON, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("event_id", sa.String(100), nullable=True),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("recommendation", sa.Text(), nullable=True),
        sa.Column("vessel_id", sa.String(50), nullable=True),
        sa.Column("vessel_name", sa.String(200), nullable=True),
        sa.Column("target_contact_ids", JSON, nullable=False),
        sa.Column("distance_km", sa.Float(), nullable=True),
        sa.Column("wave_height_m", sa.Float(), nullable=True),
        sa.Column("tsunami_eta_minutes", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column(
            "escalation_policy_id",
            sa.Uuid(),
            sa.ForeignKey("escalation_policies.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("escalation_state", sa.String(16), nullable=False),
        sa.Column(
            "escalation_started",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("escalation_step", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("step_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalation_error", sa.Text(), nullable=True),
        sa.Column("acknowledged_by", sa.String(100), nullable=True),
        sa.Column("acknowledgment_notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_escalation_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_alerts_event_type", "alerts", ["event_type"])
    op.create_index("ix_alerts_status", "alerts", ["status"])
    op.create_index("ix_alerts_escalation_state", "alerts", ["escalation_state"])

    op.create_table(
        "delivery_attempts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "alert_id",
            sa.Uuid(),
            sa.ForeignKey("alerts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "contact_id",
            sa.Uuid(),
            sa.ForeignKey("contacts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("address", sa.String(320), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("provider", sa.String(50), nullable=True),
        sa.Column("provider_message_id", sa.String(100), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", JSON, nullable=False),
        *_timestamps(),
        # Webhooks look entries up by (channel, provider message id)
        sa.UniqueConstraint(
            "channel",
            "provider_message_id",
            name="uq_delivery_attempts_channel_provider_message_id",
        ),
    )
    op.create_index("ix_delivery_attempts_alert_id", "delivery_attempts", ["alert_id"])
    op.create_index(
        "ix_delivery_attempts_contact_id", "delivery_attempts", ["contact_id"]
    )
    op.create_index("ix_delivery_attempts_status", "delivery_attempts", ["status"])
    op.create_index(
        "ix_delivery_attempts_provider_message_id",
        "delivery_attempts",
        ["provider_message_id"],
    )


def downgrade() -> None:
    op.drop_table("delivery_attempts")
    op.drop_table("alerts")
    op.drop_table("escalation_policies")
    op.drop_table("contacts")
