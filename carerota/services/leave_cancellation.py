from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from carerota.db import atomic
from carerota.errors import AlreadyProcessedError, DuplicateRequestError, NotFoundError, ValidationError
from carerota.models import (
    DEFAULT_WORK_SHIFT_TYPE,
    LEAVE_SHIFT_TYPES,
    Carer,
    LeaveCancellationRequest,
    LeaveCancellationStatus,
    ShiftType,
    TimeEntry,
)
from carerota.services.notifications import NotificationSink, ScheduleChange, publish_change
from carerota.services.time_utils import local_date, local_days_bounds_utc, local_hhmm, normalize_ts

logger = logging.getLogger("carerota.leave_cancellation")


@dataclass(slots=True)
class LeaveCancellationOutcome:
    cancelled: bool
    entry: TimeEntry
    request: LeaveCancellationRequest | None = None


def _leave_day_span(entry: TimeEntry) -> tuple[datetime, datetime]:
    first_day = local_date(entry.start_ts)
    # an entry ending exactly at local midnight does not occupy the following day
    last_day = max(first_day, local_date(normalize_ts(entry.end_ts) - timedelta(microseconds=1)))
    return local_days_bounds_utc(first_day, last_day)


def find_cover_conflicts(db: Session, entry: TimeEntry) -> list[dict[str, Any]]:
    window_start, window_end = _leave_day_span(entry)
    rows = db.execute(
        select(TimeEntry, Carer.full_name)
        .join(Carer, Carer.id == TimeEntry.carer_id)
        .where(
            TimeEntry.care_space_id == entry.care_space_id,
            TimeEntry.carer_id != entry.carer_id,
            TimeEntry.shift_type == ShiftType.COVER,
            TimeEntry.start_ts < window_end,
            TimeEntry.end_ts > window_start,
        )
        .order_by(TimeEntry.start_ts.asc(), TimeEntry.id.asc())
    ).all()
    return [
        {
            "shift_id": cover.id,
            "carer_id": cover.carer_id,
            "carer_name": carer_name,
            "date": local_date(cover.start_ts).isoformat(),
            "time": f"{local_hhmm(cover.start_ts)}-{local_hhmm(cover.end_ts)}",
        }
        for cover, carer_name in rows
    ]


def _load_leave_entry(db: Session, time_entry_id: int, *, care_space_id: int | None) -> TimeEntry:
    entry = db.get(TimeEntry, time_entry_id, with_for_update=True)
    if entry is None or (care_space_id is not None and entry.care_space_id != care_space_id):
        raise NotFoundError("Time entry not found")
    if entry.shift_type not in LEAVE_SHIFT_TYPES:
        raise ValidationError(
            "Only leave entries can be cancelled",
            {"time_entry_id": time_entry_id, "shift_type": ShiftType(entry.shift_type).value},
        )
    return entry


def request_leave_cancellation(
    db: Session,
    *,
    time_entry_id: int,
    requester_id: str,
    care_space_id: int | None = None,
    now_utc: datetime | None = None,
    sink: NotificationSink | None = None,
) -> LeaveCancellationOutcome:
    written_at = normalize_ts(now_utc)
    with atomic(db):
        entry = _load_leave_entry(db, time_entry_id, care_space_id=care_space_id)
        leave_type = ShiftType(entry.shift_type)
        conflicts = find_cover_conflicts(db, entry)

        if not conflicts:
            entry.shift_type = DEFAULT_WORK_SHIFT_TYPE
            entry.updated_at = written_at
            cancellation = None
        else:
            existing_id = db.scalar(
                select(LeaveCancellationRequest.id).where(
                    LeaveCancellationRequest.time_entry_id == entry.id,
                    LeaveCancellationRequest.status == LeaveCancellationStatus.PENDING,
                )
            )
            if existing_id is not None:
                raise DuplicateRequestError(
                    "A cancellation for this leave is already awaiting review.",
                    existing_id=existing_id,
                )
            cancellation = LeaveCancellationRequest(
                care_space_id=entry.care_space_id,
                time_entry_id=entry.id,
                requested_by=requester_id,
                leave_date=local_date(entry.start_ts),
                leave_type=leave_type,
                conflict_shift_ids=[item["shift_id"] for item in conflicts],
                conflict_details=conflicts,
                status=LeaveCancellationStatus.PENDING,
            )
            db.add(cancellation)
            db.flush()

    if cancellation is None:
        logger.info(
            "leave_cancelled_immediately",
            extra={"time_entry_id": time_entry_id, "leave_type": leave_type, "actor_id": requester_id},
        )
        publish_change(
            sink,
            ScheduleChange(
                kind="leave_cancelled",
                entity_type="time_entry",
                entity_ids=(time_entry_id,),
                actor_id=requester_id,
                time_entry_ids=(time_entry_id,),
            ),
        )
        return LeaveCancellationOutcome(cancelled=True, entry=entry)

    logger.info(
        "leave_cancellation_requested",
        extra={
            "leave_cancellation_request_id": cancellation.id,
            "time_entry_id": time_entry_id,
            "conflict_shift_ids": cancellation.conflict_shift_ids,
            "actor_id": requester_id,
        },
    )
    publish_change(
        sink,
        ScheduleChange(
            kind="leave_cancellation_requested",
            entity_type="leave_cancellation_request",
            entity_ids=(cancellation.id,),
            actor_id=requester_id,
        ),
    )
    return LeaveCancellationOutcome(cancelled=False, entry=entry, request=cancellation)


def _review(
    db: Session,
    request_id: int,
    *,
    new_status: LeaveCancellationStatus,
    actor_id: str,
    reviewed_at: datetime,
) -> LeaveCancellationRequest:
    result = db.execute(
        update(LeaveCancellationRequest)
        .where(
            LeaveCancellationRequest.id == request_id,
            LeaveCancellationRequest.status == LeaveCancellationStatus.PENDING,
        )
        .values(status=new_status, reviewed_by=actor_id, reviewed_at=reviewed_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        current_status = db.scalar(
            select(LeaveCancellationRequest.status).where(LeaveCancellationRequest.id == request_id)
        )
        if current_status is None:
            raise NotFoundError("Leave cancellation request not found")
        raise AlreadyProcessedError(
            f"Leave cancellation request is already {current_status.value}.",
            current_status=current_status.value,
        )
    cancellation = db.get(LeaveCancellationRequest, request_id, populate_existing=True)
    if cancellation is None:
        raise NotFoundError("Leave cancellation request not found")
    return cancellation


def approve_leave_cancellation(
    db: Session,
    request_id: int,
    *,
    actor_id: str,
    now_utc: datetime | None = None,
    sink: NotificationSink | None = None,
) -> LeaveCancellationRequest:
    reviewed_at = normalize_ts(now_utc)
    with atomic(db):
        cancellation = _review(
            db,
            request_id,
            new_status=LeaveCancellationStatus.APPROVED,
            actor_id=actor_id,
            reviewed_at=reviewed_at,
        )
        entry = None
        if cancellation.time_entry_id is not None:
            entry = db.get(TimeEntry, cancellation.time_entry_id, with_for_update=True, populate_existing=True)
        if entry is None:
            raise NotFoundError("Leave entry no longer exists")
        entry.shift_type = DEFAULT_WORK_SHIFT_TYPE
        entry.updated_at = reviewed_at

        listed_ids = [int(item) for item in cancellation.conflict_shift_ids or []]
        deleted_ids: list[int] = []
        if listed_ids:
            # the list was captured at request time; only rows that are still somebody else's cover go
            window_start, window_end = _leave_day_span(entry)
            deleted_ids = list(
                db.scalars(
                    select(TimeEntry.id).where(
                        TimeEntry.id.in_(listed_ids),
                        TimeEntry.care_space_id == cancellation.care_space_id,
                        TimeEntry.carer_id != entry.carer_id,
                        TimeEntry.shift_type == ShiftType.COVER,
                        TimeEntry.start_ts < window_end,
                        TimeEntry.end_ts > window_start,
                    )
                )
            )
        if deleted_ids:
            db.execute(
                delete(TimeEntry)
                .where(TimeEntry.id.in_(deleted_ids))
                .execution_options(synchronize_session=False)
            )
        entry_id = entry.id

    logger.info(
        "leave_cancellation_approved",
        extra={
            "leave_cancellation_request_id": request_id,
            "time_entry_id": entry_id,
            "deleted_cover_ids": deleted_ids,
            "kept_cover_ids": sorted(set(listed_ids) - set(deleted_ids)),
            "actor_id": actor_id,
        },
    )
    publish_change(
        sink,
        ScheduleChange(
            kind="leave_cancellation_approved",
            entity_type="leave_cancellation_request",
            entity_ids=(request_id,),
            actor_id=actor_id,
            time_entry_ids=(entry_id, *deleted_ids),
        ),
    )
    return cancellation


def deny_leave_cancellation(
    db: Session,
    request_id: int,
    *,
    actor_id: str,
    now_utc: datetime | None = None,
    sink: NotificationSink | None = None,
) -> LeaveCancellationRequest:
    with atomic(db):
        cancellation = _review(
            db,
            request_id,
            new_status=LeaveCancellationStatus.DENIED,
            actor_id=actor_id,
            reviewed_at=normalize_ts(now_utc),
        )

    logger.info("leave_cancellation_denied", extra={"leave_cancellation_request_id": request_id, "actor_id": actor_id})
    publish_change(
        sink,
        ScheduleChange(
            kind="leave_cancellation_denied",
            entity_type="leave_cancellation_request",
            entity_ids=(request_id,),
            actor_id=actor_id,
        ),
    )
    return cancellation


def get_leave_cancellation_request(
    db: Session,
    request_id: int,
    *,
    care_space_id: int | None = None,
) -> LeaveCancellationRequest:
    cancellation = db.get(LeaveCancellationRequest, request_id)
    if cancellation is None or (care_space_id is not None and cancellation.care_space_id != care_space_id):
        raise NotFoundError("Leave cancellation request not found")
    return cancellation


def list_leave_cancellation_requests(
    db: Session,
    *,
    care_space_id: int,
    status: LeaveCancellationStatus | None = None,
) -> list[LeaveCancellationRequest]:
    stmt = (
        select(LeaveCancellationRequest)
        .where(LeaveCancellationRequest.care_space_id == care_space_id)
        .order_by(LeaveCancellationRequest.created_at.desc(), LeaveCancellationRequest.id.desc())
    )
    if status is not None:
        stmt = stmt.where(LeaveCancellationRequest.status == status)
    return list(db.scalars(stmt).all())
