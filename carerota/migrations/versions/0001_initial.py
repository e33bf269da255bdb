"""Initial rota schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

shift_type = postgresql.ENUM(
    "basic",
    "cover",
    "sickness",
    "annual_leave",
    "public_holiday",
    "training",
    "other",
    name="shift_type",
    create_type=False,
)
shift_instance_status = postgresql.ENUM(
    "scheduled",
    "confirmed",
    "cancelled",
    name="shift_instance_status",
    create_type=False,
)
change_request_status = postgresql.ENUM(
    "pending",
    "applied",
    "denied",
    "reverted",
    "archived",
    name="change_request_status",
    create_type=False,
)
leave_request_status = postgresql.ENUM(
    "pending",
    "approved",
    "denied",
    "cancelled",
    name="leave_request_status",
    create_type=False,
)
leave_cancellation_status = postgresql.ENUM(
    "pending",
    "approved",
    "denied",
    name="leave_cancellation_status",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "CARER",
    "ADMIN",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)

ALL_ENUMS = (
    shift_type,
    shift_instance_status,
    change_request_status,
    leave_request_status,
    leave_cancellation_status,
    audit_actor_type,
)

# keeps revert conflict detection honest for writes that bypass the application
TOUCH_UPDATED_AT_FUNCTION = """
CREATE OR REPLACE FUNCTION time_entries_touch_updated_at() RETURNS trigger AS $$
BEGIN
    IF NEW.updated_at IS NOT DISTINCT FROM OLD.updated_at THEN
        NEW.updated_at := now();
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
"""
TOUCH_UPDATED_AT_TRIGGER = """
CREATE TRIGGER trg_time_entries_touch_updated_at
BEFORE UPDATE ON time_entries
FOR EACH ROW EXECUTE FUNCTION time_entries_touch_updated_at()
"""


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "care_spaces",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        _created_at(),
    )

    op.create_table(
        "carers",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("care_space_id", sa.Integer(), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["care_space_id"], ["care_spaces.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_carers_care_space_id", "carers", ["care_space_id"])

    op.create_table(
        "shift_templates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("care_space_id", sa.Integer(), nullable=False),
        sa.Column("carer_id", sa.Integer(), nullable=False),
        sa.Column("weekday", sa.Integer(), nullable=False),
        sa.Column("start_time_local", sa.Time(timezone=False), nullable=True),
        sa.Column("end_time_local", sa.Time(timezone=False), nullable=True),
        sa.Column("shift_type", shift_type, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["care_space_id"], ["care_spaces.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["carer_id"], ["carers.id"], ondelete="CASCADE"),
        sa.CheckConstraint("weekday >= 0 AND weekday <= 6", name="ck_shift_templates_weekday"),
    )
    op.create_index("ix_shift_templates_care_space_id", "shift_templates", ["care_space_id"])
    op.create_index("ix_shift_templates_carer_id", "shift_templates", ["carer_id"])

    op.create_table(
        "shift_instances",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("template_id", sa.Integer(), nullable=False),
        sa.Column("care_space_id", sa.Integer(), nullable=False),
        sa.Column("carer_id", sa.Integer(), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("status", shift_instance_status, nullable=False, server_default=sa.text("'scheduled'")),
        sa.ForeignKeyConstraint(["template_id"], ["shift_templates.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["care_space_id"], ["care_spaces.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["carer_id"], ["carers.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("template_id", "scheduled_date", name="uq_shift_instances_template_date"),
    )
    op.create_index("ix_shift_instances_template_id", "shift_instances", ["template_id"])
    op.create_index("ix_shift_instances_care_space_id", "shift_instances", ["care_space_id"])
    op.create_index("ix_shift_instances_carer_id", "shift_instances", ["carer_id"])
    op.create_index("ix_shift_instances_scheduled_date", "shift_instances", ["scheduled_date"])

    op.create_table(
        "time_entries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("care_space_id", sa.Integer(), nullable=False),
        sa.Column("carer_id", sa.Integer(), nullable=False),
        sa.Column("shift_instance_id", sa.Integer(), nullable=True),
        sa.Column("start_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("shift_type", shift_type, nullable=False),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("placeholder_bundle_id", sa.String(length=36), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["care_space_id"], ["care_spaces.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["carer_id"], ["carers.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["shift_instance_id"], ["shift_instances.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("shift_instance_id", name="uq_time_entries_shift_instance_id"),
    )
    op.create_index("ix_time_entries_care_space_id", "time_entries", ["care_space_id"])
    op.create_index("ix_time_entries_carer_id", "time_entries", ["carer_id"])
    op.create_index("ix_time_entries_start_ts", "time_entries", ["start_ts"])
    op.create_index("ix_time_entries_placeholder_bundle_id", "time_entries", ["placeholder_bundle_id"])
    op.execute(TOUCH_UPDATED_AT_FUNCTION)
    op.execute(TOUCH_UPDATED_AT_TRIGGER)

    op.create_table(
        "change_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("care_space_id", sa.Integer(), nullable=False),
        sa.Column("time_entry_id", sa.Integer(), nullable=True),
        sa.Column("requested_by", sa.String(length=255), nullable=False),
        sa.Column("new_start_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("new_end_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("new_shift_type", shift_type, nullable=False),
        sa.Column("reason", sa.String(length=1000), nullable=True),
        sa.Column("status", change_request_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("bundle_id", sa.String(length=36), nullable=True),
        sa.Column("original_snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("applied_by", sa.String(length=255), nullable=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("denied_by", sa.String(length=255), nullable=True),
        sa.Column("denied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("denial_reason", sa.String(length=1000), nullable=True),
        sa.Column("reverted_by", sa.String(length=255), nullable=True),
        sa.Column("reverted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_by", sa.String(length=255), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["care_space_id"], ["care_spaces.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["time_entry_id"], ["time_entries.id"], ondelete="SET NULL"),
        sa.CheckConstraint("new_start_ts < new_end_ts", name="ck_change_requests_window"),
    )
    op.create_index("ix_change_requests_care_space_id", "change_requests", ["care_space_id"])
    op.create_index("ix_change_requests_time_entry_id", "change_requests", ["time_entry_id"])
    op.create_index("ix_change_requests_status", "change_requests", ["status"])
    op.create_index("ix_change_requests_bundle_id", "change_requests", ["bundle_id"])

    op.create_table(
        "leave_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("care_space_id", sa.Integer(), nullable=False),
        sa.Column("carer_id", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("leave_type", shift_type, nullable=False),
        sa.Column("hours", sa.Float(), nullable=False, server_default=sa.text("8")),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("status", leave_request_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("reviewed_by", sa.String(length=255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["care_space_id"], ["care_spaces.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["carer_id"], ["carers.id"], ondelete="CASCADE"),
        sa.CheckConstraint("start_date <= end_date", name="ck_leave_requests_range"),
    )
    op.create_index("ix_leave_requests_care_space_id", "leave_requests", ["care_space_id"])
    op.create_index("ix_leave_requests_carer_id", "leave_requests", ["carer_id"])

    op.create_table(
        "leave_cancellation_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("care_space_id", sa.Integer(), nullable=False),
        sa.Column("time_entry_id", sa.Integer(), nullable=True),
        sa.Column("requested_by", sa.String(length=255), nullable=False),
        sa.Column("leave_date", sa.Date(), nullable=False),
        sa.Column("leave_type", shift_type, nullable=False),
        sa.Column(
            "conflict_shift_ids",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "conflict_details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("status", leave_cancellation_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("reviewed_by", sa.String(length=255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["care_space_id"], ["care_spaces.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["time_entry_id"], ["time_entries.id"], ondelete="SET NULL"),
    )
    op.create_index(
        "ix_leave_cancellation_requests_care_space_id",
        "leave_cancellation_requests",
        ["care_space_id"],
    )
    op.create_index(
        "ix_leave_cancellation_requests_time_entry_id",
        "leave_cancellation_requests",
        ["time_entry_id"],
    )
    op.create_index(
        "uq_leave_cancellation_requests_pending_entry",
        "leave_cancellation_requests",
        ["time_entry_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("leave_cancellation_requests")
    op.drop_table("leave_requests")
    op.drop_table("change_requests")
    op.execute(sa.text("DROP TRIGGER IF EXISTS trg_time_entries_touch_updated_at ON time_entries"))
    op.execute(sa.text("DROP FUNCTION IF EXISTS time_entries_touch_updated_at()"))
    op.drop_table("time_entries")
    op.drop_table("shift_instances")
    op.drop_table("shift_templates")
    op.drop_table("carers")
    op.drop_table("care_spaces")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
