from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import (
    DDL,
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from carerota.db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class ShiftType(str, enum.Enum):
    BASIC = "basic"
    COVER = "cover"
    SICKNESS = "sickness"
    ANNUAL_LEAVE = "annual_leave"
    PUBLIC_HOLIDAY = "public_holiday"
    TRAINING = "training"
    OTHER = "other"


LEAVE_SHIFT_TYPES: frozenset[ShiftType] = frozenset(
    {ShiftType.SICKNESS, ShiftType.ANNUAL_LEAVE, ShiftType.PUBLIC_HOLIDAY}
)
DEFAULT_WORK_SHIFT_TYPE = ShiftType.BASIC


class ShiftInstanceStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class ChangeRequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    DENIED = "denied"
    REVERTED = "reverted"
    ARCHIVED = "archived"


class LeaveRequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    CANCELLED = "cancelled"


class LeaveCancellationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class AuditActorType(str, enum.Enum):
    CARER = "CARER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class CareSpace(Base):
    __tablename__ = "care_spaces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    carers: Mapped[list[Carer]] = relationship(back_populates="care_space")


class Carer(Base):
    __tablename__ = "carers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    care_space_id: Mapped[int] = mapped_column(
        ForeignKey("care_spaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    care_space: Mapped[CareSpace] = relationship(back_populates="carers")
    templates: Mapped[list[ShiftTemplate]] = relationship(back_populates="carer")
    time_entries: Mapped[list[TimeEntry]] = relationship(back_populates="carer")


class ShiftTemplate(Base):
    __tablename__ = "shift_templates"
    __table_args__ = (CheckConstraint("weekday >= 0 AND weekday <= 6", name="ck_shift_templates_weekday"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    care_space_id: Mapped[int] = mapped_column(
        ForeignKey("care_spaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    carer_id: Mapped[int] = mapped_column(ForeignKey("carers.id", ondelete="CASCADE"), nullable=False, index=True)
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time_local: Mapped[time | None] = mapped_column(Time(timezone=False), nullable=True)
    end_time_local: Mapped[time | None] = mapped_column(Time(timezone=False), nullable=True)
    shift_type: Mapped[ShiftType] = mapped_column(
        Enum(ShiftType, name="shift_type", values_callable=_enum_values),
        nullable=False,
        default=ShiftType.BASIC,
    )
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    carer: Mapped[Carer] = relationship(back_populates="templates")
    instances: Mapped[list[ShiftInstance]] = relationship(back_populates="template")


class ShiftInstance(Base):
    __tablename__ = "shift_instances"
    __table_args__ = (
        UniqueConstraint("template_id", "scheduled_date", name="uq_shift_instances_template_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("shift_templates.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    care_space_id: Mapped[int] = mapped_column(
        ForeignKey("care_spaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    carer_id: Mapped[int] = mapped_column(ForeignKey("carers.id", ondelete="CASCADE"), nullable=False, index=True)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[ShiftInstanceStatus] = mapped_column(
        Enum(ShiftInstanceStatus, name="shift_instance_status", values_callable=_enum_values),
        nullable=False,
        default=ShiftInstanceStatus.SCHEDULED,
    )

    template: Mapped[ShiftTemplate] = relationship(back_populates="instances")
    time_entry: Mapped[TimeEntry | None] = relationship(back_populates="shift_instance", uselist=False)


class TimeEntry(Base):
    __tablename__ = "time_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    care_space_id: Mapped[int] = mapped_column(
        ForeignKey("care_spaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    carer_id: Mapped[int] = mapped_column(ForeignKey("carers.id", ondelete="CASCADE"), nullable=False, index=True)
    shift_instance_id: Mapped[int | None] = mapped_column(
        ForeignKey("shift_instances.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    start_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    end_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    shift_type: Mapped[ShiftType] = mapped_column(
        Enum(ShiftType, name="shift_type", values_callable=_enum_values),
        nullable=False,
        default=ShiftType.BASIC,
    )
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    # set when a bundle had to invent this entry for a day the carer had no shift
    placeholder_bundle_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    carer: Mapped[Carer] = relationship(back_populates="time_entries")
    shift_instance: Mapped[ShiftInstance | None] = relationship(back_populates="time_entry")


# Writes that leave updated_at untouched (raw SQL, other tools) still advance it,
# so revert conflict detection sees every modification.
TIME_ENTRY_TOUCH_FUNCTION_PG = """
CREATE OR REPLACE FUNCTION time_entries_touch_updated_at() RETURNS trigger AS $$
BEGIN
    IF NEW.updated_at IS NOT DISTINCT FROM OLD.updated_at THEN
        NEW.updated_at := now();
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
"""
TIME_ENTRY_TOUCH_TRIGGER_PG = """
CREATE TRIGGER trg_time_entries_touch_updated_at
BEFORE UPDATE ON time_entries
FOR EACH ROW EXECUTE FUNCTION time_entries_touch_updated_at()
"""
TIME_ENTRY_TOUCH_TRIGGER_SQLITE = """
CREATE TRIGGER trg_time_entries_touch_updated_at
AFTER UPDATE ON time_entries
FOR EACH ROW WHEN NEW.updated_at IS OLD.updated_at
BEGIN
    UPDATE time_entries SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
END
"""

event.listen(
    TimeEntry.__table__,
    "after_create",
    DDL(TIME_ENTRY_TOUCH_FUNCTION_PG).execute_if(dialect="postgresql"),
)
event.listen(
    TimeEntry.__table__,
    "after_create",
    DDL(TIME_ENTRY_TOUCH_TRIGGER_PG).execute_if(dialect="postgresql"),
)
event.listen(
    TimeEntry.__table__,
    "after_create",
    DDL(TIME_ENTRY_TOUCH_TRIGGER_SQLITE).execute_if(dialect="sqlite"),
)


class ChangeRequest(Base):
    __tablename__ = "change_requests"
    __table_args__ = (CheckConstraint("new_start_ts < new_end_ts", name="ck_change_requests_window"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    care_space_id: Mapped[int] = mapped_column(
        ForeignKey("care_spaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    time_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("time_entries.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    new_start_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    new_end_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    new_shift_type: Mapped[ShiftType] = mapped_column(
        Enum(ShiftType, name="shift_type", values_callable=_enum_values),
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    status: Mapped[ChangeRequestStatus] = mapped_column(
        Enum(ChangeRequestStatus, name="change_request_status", values_callable=_enum_values),
        nullable=False,
        default=ChangeRequestStatus.PENDING,
        server_default=text("'pending'"),
        index=True,
    )
    bundle_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    original_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    applied_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    denied_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    denied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    denial_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    reverted_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reverted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    time_entry: Mapped[TimeEntry | None] = relationship()


class LeaveRequest(Base):
    __tablename__ = "leave_requests"
    __table_args__ = (CheckConstraint("start_date <= end_date", name="ck_leave_requests_range"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    care_space_id: Mapped[int] = mapped_column(
        ForeignKey("care_spaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    carer_id: Mapped[int] = mapped_column(ForeignKey("carers.id", ondelete="CASCADE"), nullable=False, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    leave_type: Mapped[ShiftType] = mapped_column(
        Enum(ShiftType, name="shift_type", values_callable=_enum_values),
        nullable=False,
    )
    hours: Mapped[float] = mapped_column(Float, nullable=False, default=8.0)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    status: Mapped[LeaveRequestStatus] = mapped_column(
        Enum(LeaveRequestStatus, name="leave_request_status", values_callable=_enum_values),
        nullable=False,
        default=LeaveRequestStatus.PENDING,
        server_default=text("'pending'"),
    )
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )


class LeaveCancellationRequest(Base):
    __tablename__ = "leave_cancellation_requests"
    __table_args__ = (
        Index(
            "uq_leave_cancellation_requests_pending_entry",
            "time_entry_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    care_space_id: Mapped[int] = mapped_column(
        ForeignKey("care_spaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    time_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("time_entries.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    requested_by: Mapped[str] = mapped_column(String(255), nullable=False)
    leave_date: Mapped[date] = mapped_column(Date, nullable=False)
    leave_type: Mapped[ShiftType] = mapped_column(
        Enum(ShiftType, name="shift_type", values_callable=_enum_values),
        nullable=False,
    )
    conflict_shift_ids: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    conflict_details: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[LeaveCancellationStatus] = mapped_column(
        Enum(LeaveCancellationStatus, name="leave_cancellation_status", values_callable=_enum_values),
        nullable=False,
        default=LeaveCancellationStatus.PENDING,
        server_default=text("'pending'"),
    )
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
