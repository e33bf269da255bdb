from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from carerota.audit import audit_request
from carerota.db import get_db
from carerota.errors import NotFoundError, ValidationError
from carerota.models import ShiftInstance, ShiftInstanceStatus, TimeEntry
from carerota.schemas import MaterializeResponse, ScheduleRangeResponse, ShiftInstanceRead, TimeEntryRead
from carerota.security import Actor, require_actor
from carerota.services.materializer import materialize_instance
from carerota.services.notifications import NotificationSink, get_notification_sink
from carerota.services.time_utils import local_days_bounds_utc
from carerota.settings import get_settings

router = APIRouter(tags=["schedule"])


@router.post("/api/schedule/instances/{instance_id}/materialize", response_model=MaterializeResponse)
def materialize_instance_endpoint(
    instance_id: int,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> MaterializeResponse:
    instance = db.get(ShiftInstance, instance_id)
    if instance is None or instance.care_space_id != actor.care_space_id:
        raise NotFoundError("Shift instance not found")

    entry, created = materialize_instance(db, instance_id, actor_id=actor.actor_id, sink=sink)
    response = MaterializeResponse(created=created, time_entry=TimeEntryRead.model_validate(entry))
    if created:
        audit_request(
            db,
            request,
            actor,
            action="SHIFT_INSTANCE_MATERIALIZED",
            entity_type="time_entry",
            entity_id=entry.id,
            details={"shift_instance_id": instance_id},
        )
    return response


@router.get("/api/schedule/time-entries", response_model=ScheduleRangeResponse)
def list_schedule_endpoint(
    start_date: date = Query(),
    end_date: date = Query(),
    carer_id: int | None = Query(default=None, ge=1),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> ScheduleRangeResponse:
    if end_date < start_date:
        raise ValidationError("end_date must be greater than or equal to start_date")
    if (end_date - start_date).days + 1 > get_settings().max_bundle_days:
        raise ValidationError("Requested range is too long")

    window_start, window_end = local_days_bounds_utc(start_date, end_date)
    entries_stmt = (
        select(TimeEntry)
        .where(
            TimeEntry.care_space_id == actor.care_space_id,
            TimeEntry.start_ts >= window_start,
            TimeEntry.start_ts < window_end,
        )
        .order_by(TimeEntry.start_ts.asc(), TimeEntry.id.asc())
    )
    # materialized instances are represented by their entry only
    instances_stmt = (
        select(ShiftInstance)
        .outerjoin(TimeEntry, TimeEntry.shift_instance_id == ShiftInstance.id)
        .where(
            ShiftInstance.care_space_id == actor.care_space_id,
            ShiftInstance.scheduled_date >= start_date,
            ShiftInstance.scheduled_date <= end_date,
            ShiftInstance.status != ShiftInstanceStatus.CANCELLED,
            TimeEntry.id.is_(None),
        )
        .order_by(ShiftInstance.scheduled_date.asc(), ShiftInstance.id.asc())
    )
    if carer_id is not None:
        entries_stmt = entries_stmt.where(TimeEntry.carer_id == carer_id)
        instances_stmt = instances_stmt.where(ShiftInstance.carer_id == carer_id)

    return ScheduleRangeResponse(
        time_entries=[TimeEntryRead.model_validate(item) for item in db.scalars(entries_stmt).all()],
        unmaterialized_instances=[ShiftInstanceRead.model_validate(item) for item in db.scalars(instances_stmt).all()],
    )
