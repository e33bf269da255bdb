from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from carerota.db import atomic
from carerota.errors import AlreadyProcessedError, ConflictError, NotFoundError, ValidationError
from carerota.models import (
    ChangeRequest,
    ChangeRequestStatus,
    LeaveCancellationRequest,
    LeaveCancellationStatus,
    ShiftType,
    TimeEntry,
)
from carerota.services.conflicts import check_revert_conflict
from carerota.services.materializer import materialize_in_session
from carerota.services.notifications import NotificationSink, ScheduleChange, publish_change
from carerota.services.snapshots import Snapshot, capture_snapshot, restore_snapshot
from carerota.services.time_utils import normalize_ts

logger = logging.getLogger("carerota.change_requests")

ACTIVE_STATUSES: tuple[ChangeRequestStatus, ...] = (
    ChangeRequestStatus.PENDING,
    ChangeRequestStatus.APPLIED,
    ChangeRequestStatus.DENIED,
    ChangeRequestStatus.REVERTED,
)
ARCHIVABLE_STATUSES: tuple[ChangeRequestStatus, ...] = (
    ChangeRequestStatus.APPLIED,
    ChangeRequestStatus.DENIED,
    ChangeRequestStatus.REVERTED,
)


def _raise_transition_failed(db: Session, request_id: int, *, action: str) -> None:
    current_status = db.scalar(select(ChangeRequest.status).where(ChangeRequest.id == request_id))
    if current_status is None:
        raise NotFoundError("Change request not found")
    raise AlreadyProcessedError(
        f"Change request cannot be {action}; it is already {current_status.value}.",
        current_status=current_status.value,
    )


def _transition(
    db: Session,
    request_id: int,
    *,
    from_statuses: Iterable[ChangeRequestStatus],
    values: dict[str, Any],
    action: str,
) -> ChangeRequest:
    # the status guard in the WHERE clause is the optimistic re-check; it runs inside the caller's transaction
    result = db.execute(
        update(ChangeRequest)
        .where(ChangeRequest.id == request_id, ChangeRequest.status.in_(tuple(from_statuses)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        _raise_transition_failed(db, request_id, action=action)

    change_request = db.get(ChangeRequest, request_id, populate_existing=True)
    if change_request is None:
        raise NotFoundError("Change request not found")
    return change_request


def _load_target_entry(db: Session, change_request: ChangeRequest) -> TimeEntry:
    entry = None
    if change_request.time_entry_id is not None:
        entry = db.get(TimeEntry, change_request.time_entry_id, with_for_update=True, populate_existing=True)
    if entry is None:
        raise NotFoundError("Target time entry no longer exists")
    return entry


def _discard_unused_placeholder(
    db: Session,
    time_entry_id: int | None,
    *,
    request_id: int,
) -> int | None:
    """Drop an entry a bundle invented once the last request pointing at it is gone."""
    if time_entry_id is None:
        return None
    # denied and undone requests are history; their link is nulled by the foreign key
    still_in_effect = or_(
        ChangeRequest.status.in_((ChangeRequestStatus.PENDING, ChangeRequestStatus.APPLIED)),
        and_(
            ChangeRequest.status == ChangeRequestStatus.ARCHIVED,
            ChangeRequest.applied_at.is_not(None),
            ChangeRequest.reverted_at.is_(None),
        ),
    )
    other_requests = db.scalar(
        select(func.count())
        .select_from(ChangeRequest)
        .where(ChangeRequest.time_entry_id == time_entry_id, ChangeRequest.id != request_id, still_in_effect)
    )
    cancellations = db.scalar(
        select(func.count())
        .select_from(LeaveCancellationRequest)
        .where(
            LeaveCancellationRequest.time_entry_id == time_entry_id,
            LeaveCancellationRequest.status != LeaveCancellationStatus.DENIED,
        )
    )
    if other_requests or cancellations:
        return None
    result = db.execute(
        delete(TimeEntry)
        .where(TimeEntry.id == time_entry_id, TimeEntry.placeholder_bundle_id.is_not(None))
        .execution_options(synchronize_session=False)
    )
    return time_entry_id if result.rowcount else None


def _validate_window(new_start_ts: datetime, new_end_ts: datetime) -> tuple[datetime, datetime]:
    start_ts = normalize_ts(new_start_ts)
    end_ts = normalize_ts(new_end_ts)
    if start_ts >= end_ts:
        raise ValidationError("new_start must be earlier than new_end")
    return start_ts, end_ts


def apply_proposed_values(change_request: ChangeRequest, entry: TimeEntry, *, written_at: datetime) -> None:
    entry.start_ts = normalize_ts(change_request.new_start_ts)
    entry.end_ts = normalize_ts(change_request.new_end_ts)
    entry.shift_type = change_request.new_shift_type
    entry.updated_at = written_at


def insert_change_request_in_session(
    db: Session,
    *,
    entry: TimeEntry,
    new_start_ts: datetime,
    new_end_ts: datetime,
    new_shift_type: ShiftType | None,
    reason: str | None,
    requested_by: str,
    bundle_id: str | None = None,
) -> ChangeRequest:
    start_ts, end_ts = _validate_window(new_start_ts, new_end_ts)
    change_request = ChangeRequest(
        care_space_id=entry.care_space_id,
        time_entry_id=entry.id,
        requested_by=requested_by,
        new_start_ts=start_ts,
        new_end_ts=end_ts,
        new_shift_type=new_shift_type or entry.shift_type,
        reason=(reason or "").strip() or None,
        status=ChangeRequestStatus.PENDING,
        bundle_id=bundle_id,
    )
    db.add(change_request)
    db.flush()
    return change_request


def create_change_request(
    db: Session,
    *,
    requested_by: str,
    new_start_ts: datetime,
    new_end_ts: datetime,
    time_entry_id: int | None = None,
    shift_instance_id: int | None = None,
    new_shift_type: ShiftType | None = None,
    reason: str | None = None,
    bundle_id: str | None = None,
    care_space_id: int | None = None,
    sink: NotificationSink | None = None,
) -> ChangeRequest:
    if (time_entry_id is None) == (shift_instance_id is None):
        raise ValidationError("Exactly one of time_entry_id or shift_instance_id is required")
    _validate_window(new_start_ts, new_end_ts)

    with atomic(db):
        if shift_instance_id is not None:
            entry, _ = materialize_in_session(db, shift_instance_id)
        else:
            entry = db.get(TimeEntry, time_entry_id)
            if entry is None:
                raise ValidationError("Target time entry does not exist", {"time_entry_id": time_entry_id})
        if care_space_id is not None and entry.care_space_id != care_space_id:
            raise NotFoundError("Time entry not found")

        change_request = insert_change_request_in_session(
            db,
            entry=entry,
            new_start_ts=new_start_ts,
            new_end_ts=new_end_ts,
            new_shift_type=new_shift_type,
            reason=reason,
            requested_by=requested_by,
            bundle_id=bundle_id,
        )

    logger.info(
        "change_request_created",
        extra={
            "change_request_id": change_request.id,
            "time_entry_id": change_request.time_entry_id,
            "bundle_id": change_request.bundle_id,
            "requested_by": requested_by,
        },
    )
    publish_change(
        sink,
        ScheduleChange(
            kind="change_request_created",
            entity_type="change_request",
            entity_ids=(change_request.id,),
            actor_id=requested_by,
        ),
    )
    return change_request


def approve_change_request(
    db: Session,
    request_id: int,
    *,
    actor_id: str,
    now_utc: datetime | None = None,
    sink: NotificationSink | None = None,
) -> ChangeRequest:
    applied_at = normalize_ts(now_utc)
    with atomic(db):
        change_request = _transition(
            db,
            request_id,
            from_statuses=(ChangeRequestStatus.PENDING,),
            values={"status": ChangeRequestStatus.APPLIED, "applied_by": actor_id, "applied_at": applied_at},
            action="approved",
        )
        entry = _load_target_entry(db, change_request)
        change_request.original_snapshot = capture_snapshot(entry, captured_at=applied_at).to_dict()
        apply_proposed_values(change_request, entry, written_at=applied_at)

    logger.info(
        "change_request_applied",
        extra={"change_request_id": request_id, "time_entry_id": entry.id, "actor_id": actor_id},
    )
    publish_change(
        sink,
        ScheduleChange(
            kind="change_request_applied",
            entity_type="change_request",
            entity_ids=(request_id,),
            actor_id=actor_id,
            time_entry_ids=(entry.id,),
        ),
    )
    return change_request


def deny_change_request(
    db: Session,
    request_id: int,
    *,
    actor_id: str,
    reason: str | None = None,
    now_utc: datetime | None = None,
    sink: NotificationSink | None = None,
) -> ChangeRequest:
    with atomic(db):
        change_request = _transition(
            db,
            request_id,
            from_statuses=(ChangeRequestStatus.PENDING,),
            values={
                "status": ChangeRequestStatus.DENIED,
                "denied_by": actor_id,
                "denied_at": normalize_ts(now_utc),
                "denial_reason": (reason or "").strip() or None,
            },
            action="denied",
        )
        discarded_id = _discard_unused_placeholder(db, change_request.time_entry_id, request_id=request_id)

    logger.info(
        "change_request_denied",
        extra={"change_request_id": request_id, "actor_id": actor_id, "discarded_time_entry_id": discarded_id},
    )
    publish_change(
        sink,
        ScheduleChange(
            kind="change_request_denied",
            entity_type="change_request",
            entity_ids=(request_id,),
            actor_id=actor_id,
            time_entry_ids=(discarded_id,) if discarded_id is not None else (),
        ),
    )
    return change_request


def revert_change_request(
    db: Session,
    request_id: int,
    *,
    actor_id: str,
    force: bool = False,
    now_utc: datetime | None = None,
    sink: NotificationSink | None = None,
) -> ChangeRequest:
    reverted_at = normalize_ts(now_utc)
    with atomic(db):
        change_request = _transition(
            db,
            request_id,
            from_statuses=(ChangeRequestStatus.APPLIED,),
            values={"status": ChangeRequestStatus.REVERTED, "reverted_by": actor_id, "reverted_at": reverted_at},
            action="reverted",
        )
        entry = _load_target_entry(db, change_request)
        entry_id = entry.id
        check = check_revert_conflict(change_request, entry)
        if not check.ok and not force:
            raise ConflictError(
                "The shift has been modified since this change was applied.",
                applied_at=check.applied_at,
                modified_at=check.modified_at,
            )
        if change_request.original_snapshot is None:
            raise ValidationError("Applied change request has no snapshot to restore")

        # a bundle placeholder nobody else points at goes back to not existing
        discarded_id = _discard_unused_placeholder(db, entry_id, request_id=request_id)
        if discarded_id is None:
            restore_snapshot(Snapshot.from_dict(change_request.original_snapshot), entry)
            entry.updated_at = reverted_at

    logger.info(
        "change_request_reverted",
        extra={
            "change_request_id": request_id,
            "time_entry_id": entry_id,
            "actor_id": actor_id,
            "forced": not check.ok,
            "placeholder_discarded": discarded_id is not None,
        },
    )
    publish_change(
        sink,
        ScheduleChange(
            kind="change_request_reverted",
            entity_type="change_request",
            entity_ids=(request_id,),
            actor_id=actor_id,
            time_entry_ids=(entry_id,),
            details={"forced": not check.ok, "placeholder_discarded": discarded_id is not None},
        ),
    )
    return change_request


def archive_change_request(
    db: Session,
    request_id: int,
    *,
    actor_id: str,
    now_utc: datetime | None = None,
    sink: NotificationSink | None = None,
) -> ChangeRequest:
    with atomic(db):
        change_request = _transition(
            db,
            request_id,
            from_statuses=ARCHIVABLE_STATUSES,
            values={
                "status": ChangeRequestStatus.ARCHIVED,
                "archived_by": actor_id,
                "archived_at": normalize_ts(now_utc),
            },
            action="archived",
        )

    logger.info("change_request_archived", extra={"change_request_id": request_id, "actor_id": actor_id})
    publish_change(
        sink,
        ScheduleChange(
            kind="change_request_archived",
            entity_type="change_request",
            entity_ids=(request_id,),
            actor_id=actor_id,
        ),
    )
    return change_request


def delete_change_request(
    db: Session,
    request_id: int,
    *,
    actor_id: str,
    sink: NotificationSink | None = None,
) -> None:
    with atomic(db):
        time_entry_id = db.scalar(select(ChangeRequest.time_entry_id).where(ChangeRequest.id == request_id))
        result = db.execute(
            delete(ChangeRequest)
            .where(ChangeRequest.id == request_id, ChangeRequest.status == ChangeRequestStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            _raise_transition_failed(db, request_id, action="deleted")
        discarded_id = _discard_unused_placeholder(db, time_entry_id, request_id=request_id)

    logger.info(
        "change_request_deleted",
        extra={"change_request_id": request_id, "actor_id": actor_id, "discarded_time_entry_id": discarded_id},
    )
    publish_change(
        sink,
        ScheduleChange(
            kind="change_request_deleted",
            entity_type="change_request",
            entity_ids=(request_id,),
            actor_id=actor_id,
            time_entry_ids=(discarded_id,) if discarded_id is not None else (),
        ),
    )


def get_change_request(db: Session, request_id: int, *, care_space_id: int | None = None) -> ChangeRequest:
    change_request = db.get(ChangeRequest, request_id)
    if change_request is None or (care_space_id is not None and change_request.care_space_id != care_space_id):
        raise NotFoundError("Change request not found")
    return change_request


def list_change_requests(
    db: Session,
    *,
    care_space_id: int,
    statuses: Iterable[ChangeRequestStatus] | None = None,
    carer_id: int | None = None,
    bundle_id: str | None = None,
    include_archived: bool = False,
) -> list[ChangeRequest]:
    stmt = (
        select(ChangeRequest)
        .where(ChangeRequest.care_space_id == care_space_id)
        .order_by(ChangeRequest.created_at.desc(), ChangeRequest.id.desc())
    )
    status_filter = tuple(statuses or ())
    if status_filter:
        stmt = stmt.where(ChangeRequest.status.in_(status_filter))
    elif not include_archived:
        stmt = stmt.where(ChangeRequest.status.in_(ACTIVE_STATUSES))
    if carer_id is not None:
        stmt = stmt.join(TimeEntry, TimeEntry.id == ChangeRequest.time_entry_id).where(TimeEntry.carer_id == carer_id)
    if bundle_id is not None:
        stmt = stmt.where(ChangeRequest.bundle_id == bundle_id)
    return list(db.scalars(stmt).all())
