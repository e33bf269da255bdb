from __future__ import annotations

import logging
from calendar import monthrange
from datetime import date, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from carerota.db import atomic
from carerota.errors import AlreadyProcessedError, NotFoundError, ValidationError
from carerota.models import LEAVE_SHIFT_TYPES, Carer, LeaveRequest, LeaveRequestStatus, ShiftType
from carerota.services.notifications import NotificationSink, ScheduleChange, publish_change
from carerota.services.time_utils import normalize_ts

logger = logging.getLogger("carerota.leaves")


def create_leave_request(
    db: Session,
    *,
    care_space_id: int,
    carer_id: int,
    start_date: date,
    end_date: date,
    leave_type: ShiftType,
    created_by: str,
    hours: float = 8.0,
    notes: str | None = None,
    sink: NotificationSink | None = None,
) -> LeaveRequest:
    carer = db.get(Carer, carer_id)
    if carer is None or carer.care_space_id != care_space_id:
        raise NotFoundError("Carer not found")

    if end_date < start_date:
        raise ValidationError("end_date must be greater than or equal to start_date")
    if leave_type not in LEAVE_SHIFT_TYPES:
        raise ValidationError("leave_type must be a leave shift type", {"leave_type": ShiftType(leave_type).value})
    if hours <= 0 or hours > 24:
        raise ValidationError("hours must be greater than 0 and at most 24")

    leave = LeaveRequest(
        care_space_id=care_space_id,
        carer_id=carer_id,
        start_date=start_date,
        end_date=end_date,
        leave_type=leave_type,
        hours=hours,
        notes=(notes or "").strip() or None,
        status=LeaveRequestStatus.PENDING,
        created_by=created_by,
    )
    with atomic(db):
        db.add(leave)
        db.flush()

    logger.info("leave_request_created", extra={"leave_request_id": leave.id, "carer_id": carer_id})
    publish_change(
        sink,
        ScheduleChange(
            kind="leave_request_created",
            entity_type="leave_request",
            entity_ids=(leave.id,),
            actor_id=created_by,
        ),
    )
    return leave


def list_leave_requests(
    db: Session,
    *,
    care_space_id: int,
    carer_id: int | None = None,
    status: LeaveRequestStatus | None = None,
    year: int | None = None,
    month: int | None = None,
) -> list[LeaveRequest]:
    if (year is None) != (month is None):
        raise ValidationError("year and month must be provided together")

    stmt = (
        select(LeaveRequest)
        .where(LeaveRequest.care_space_id == care_space_id)
        .order_by(LeaveRequest.start_date.asc(), LeaveRequest.id.asc())
    )
    if carer_id is not None:
        stmt = stmt.where(LeaveRequest.carer_id == carer_id)
    if status is not None:
        stmt = stmt.where(LeaveRequest.status == status)

    if year is not None and month is not None:
        days_in_month = monthrange(year, month)[1]
        start = date(year, month, 1)
        end = date(year, month, days_in_month)
        stmt = stmt.where(
            LeaveRequest.start_date <= end,
            LeaveRequest.end_date >= start,
        )

    return list(db.scalars(stmt).all())


def get_leave_request(db: Session, leave_id: int, *, care_space_id: int | None = None) -> LeaveRequest:
    leave = db.get(LeaveRequest, leave_id)
    if leave is None or (care_space_id is not None and leave.care_space_id != care_space_id):
        raise NotFoundError("Leave request not found")
    return leave


def _transition_leave(
    db: Session,
    leave_id: int,
    *,
    from_status: LeaveRequestStatus,
    to_status: LeaveRequestStatus,
    actor_id: str,
    now_utc: datetime | None,
    sink: NotificationSink | None,
) -> LeaveRequest:
    with atomic(db):
        result = db.execute(
            update(LeaveRequest)
            .where(LeaveRequest.id == leave_id, LeaveRequest.status == from_status)
            .values(status=to_status, reviewed_by=actor_id, reviewed_at=normalize_ts(now_utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            _raise_leave_transition_failed(db, leave_id)
        leave = db.get(LeaveRequest, leave_id, populate_existing=True)

    logger.info(
        "leave_request_reviewed",
        extra={"leave_request_id": leave_id, "status": to_status, "actor_id": actor_id},
    )
    publish_change(
        sink,
        ScheduleChange(
            kind=f"leave_request_{to_status.value}",
            entity_type="leave_request",
            entity_ids=(leave_id,),
            actor_id=actor_id,
        ),
    )
    return leave


def _raise_leave_transition_failed(db: Session, leave_id: int) -> None:
    current_status = db.scalar(select(LeaveRequest.status).where(LeaveRequest.id == leave_id))
    if current_status is None:
        raise NotFoundError("Leave request not found")
    raise AlreadyProcessedError(
        f"Leave request is already {current_status.value}.",
        current_status=current_status.value,
    )


def approve_leave_request(
    db: Session,
    leave_id: int,
    *,
    actor_id: str,
    now_utc: datetime | None = None,
    sink: NotificationSink | None = None,
) -> LeaveRequest:
    return _transition_leave(
        db,
        leave_id,
        from_status=LeaveRequestStatus.PENDING,
        to_status=LeaveRequestStatus.APPROVED,
        actor_id=actor_id,
        now_utc=now_utc,
        sink=sink,
    )


def deny_leave_request(
    db: Session,
    leave_id: int,
    *,
    actor_id: str,
    now_utc: datetime | None = None,
    sink: NotificationSink | None = None,
) -> LeaveRequest:
    return _transition_leave(
        db,
        leave_id,
        from_status=LeaveRequestStatus.PENDING,
        to_status=LeaveRequestStatus.DENIED,
        actor_id=actor_id,
        now_utc=now_utc,
        sink=sink,
    )


def cancel_leave_request(
    db: Session,
    leave_id: int,
    *,
    actor_id: str,
    now_utc: datetime | None = None,
    sink: NotificationSink | None = None,
) -> LeaveRequest:
    return _transition_leave(
        db,
        leave_id,
        from_status=LeaveRequestStatus.APPROVED,
        to_status=LeaveRequestStatus.CANCELLED,
        actor_id=actor_id,
        now_utc=now_utc,
        sink=sink,
    )


def delete_leave_request(db: Session, leave_id: int, *, actor_id: str, sink: NotificationSink | None = None) -> None:
    with atomic(db):
        result = db.execute(
            delete(LeaveRequest)
            .where(LeaveRequest.id == leave_id, LeaveRequest.status == LeaveRequestStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            _raise_leave_transition_failed(db, leave_id)

    logger.info("leave_request_deleted", extra={"leave_request_id": leave_id, "actor_id": actor_id})
    publish_change(
        sink,
        ScheduleChange(
            kind="leave_request_deleted",
            entity_type="leave_request",
            entity_ids=(leave_id,),
            actor_id=actor_id,
        ),
    )
