from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from carerota.db import atomic
from carerota.errors import NotFoundError, StorageError, ValidationError
from carerota.models import (
    DEFAULT_WORK_SHIFT_TYPE,
    ShiftInstance,
    ShiftInstanceStatus,
    ShiftType,
    TimeEntry,
)
from carerota.services.notifications import NotificationSink, ScheduleChange, publish_change
from carerota.services.time_utils import combine_local
from carerota.settings import get_settings

logger = logging.getLogger("carerota.materializer")


def default_window(
    day_date: date,
    *,
    hours: float | None = None,
    start_hour: int | None = None,
) -> tuple[datetime, datetime]:
    settings = get_settings()
    resolved_start_hour = settings.default_shift_start_hour if start_hour is None else start_hour
    resolved_hours = settings.default_shift_hours if hours is None else hours
    if not 0 <= resolved_start_hour <= 23:
        raise ValidationError("start_hour must be between 0 and 23")
    if resolved_hours <= 0 or resolved_hours > 24:
        raise ValidationError("hours must be greater than 0 and at most 24")
    start_ts = combine_local(day_date, time(hour=resolved_start_hour))
    return start_ts, start_ts + timedelta(hours=resolved_hours)


def _instance_window(instance: ShiftInstance) -> tuple[datetime, datetime]:
    template = instance.template
    if template.start_time_local is None or template.end_time_local is None:
        return default_window(instance.scheduled_date)

    start_ts = combine_local(instance.scheduled_date, template.start_time_local)
    end_day = instance.scheduled_date
    if template.end_time_local <= template.start_time_local:
        end_day = end_day + timedelta(days=1)
    end_ts = combine_local(end_day, template.end_time_local)
    return start_ts, end_ts


def _load_instance(db: Session, instance_id: int) -> ShiftInstance:
    instance = db.scalar(
        select(ShiftInstance)
        .options(selectinload(ShiftInstance.template))
        .where(ShiftInstance.id == instance_id)
    )
    if instance is None:
        raise NotFoundError("Shift instance not found")
    return instance


def find_materialized_entry(db: Session, instance_id: int) -> TimeEntry | None:
    return db.scalar(select(TimeEntry).where(TimeEntry.shift_instance_id == instance_id))


def materialize_in_session(db: Session, instance_id: int) -> tuple[TimeEntry, bool]:
    """Flush (not commit) a concrete entry for the instance; the caller owns the transaction."""
    existing = find_materialized_entry(db, instance_id)
    if existing is not None:
        return existing, False

    instance = _load_instance(db, instance_id)
    if instance.status == ShiftInstanceStatus.CANCELLED:
        raise ValidationError("Cancelled shift instances cannot be edited")

    start_ts, end_ts = _instance_window(instance)
    entry = TimeEntry(
        care_space_id=instance.care_space_id,
        carer_id=instance.carer_id,
        shift_instance_id=instance.id,
        start_ts=start_ts,
        end_ts=end_ts,
        shift_type=instance.template.shift_type or DEFAULT_WORK_SHIFT_TYPE,
        notes=instance.template.title,
    )
    db.add(entry)
    db.flush()
    return entry, True


def create_placeholder_entry(
    db: Session,
    *,
    care_space_id: int,
    carer_id: int,
    day_date: date,
    hours: float | None = None,
    start_hour: int | None = None,
    placeholder_bundle_id: str | None = None,
) -> TimeEntry:
    start_ts, end_ts = default_window(day_date, hours=hours, start_hour=start_hour)
    entry = TimeEntry(
        care_space_id=care_space_id,
        carer_id=carer_id,
        start_ts=start_ts,
        end_ts=end_ts,
        shift_type=ShiftType.BASIC,
        placeholder_bundle_id=placeholder_bundle_id,
    )
    db.add(entry)
    db.flush()
    return entry


def materialize_instance(
    db: Session,
    instance_id: int,
    *,
    actor_id: str = "system",
    sink: NotificationSink | None = None,
) -> tuple[TimeEntry, bool]:
    try:
        with atomic(db):
            entry, created = materialize_in_session(db, instance_id)
    except StorageError as exc:
        if not isinstance(exc.__cause__, IntegrityError):
            raise
        # lost a concurrent first-edit race on the unique instance link
        existing = find_materialized_entry(db, instance_id)
        if existing is None:
            raise
        return existing, False

    if created:
        logger.info(
            "shift_instance_materialized",
            extra={"shift_instance_id": instance_id, "time_entry_id": entry.id, "actor_id": actor_id},
        )
        publish_change(
            sink,
            ScheduleChange(
                kind="time_entry_materialized",
                entity_type="time_entry",
                entity_ids=(entry.id,),
                actor_id=actor_id,
                time_entry_ids=(entry.id,),
                details={"shift_instance_id": instance_id},
            ),
        )
    return entry, created
