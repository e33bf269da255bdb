from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from carerota.db import atomic
from carerota.errors import ApiError, NotFoundError, ValidationError
from carerota.models import Carer, ChangeRequest, ShiftInstance, ShiftInstanceStatus, ShiftType, TimeEntry
from carerota.services.change_requests import (
    approve_change_request,
    delete_change_request,
    deny_change_request,
    insert_change_request_in_session,
)
from carerota.services.materializer import create_placeholder_entry, default_window, materialize_in_session
from carerota.services.notifications import NotificationSink, ScheduleChange, publish_change
from carerota.services.time_utils import iter_days, local_date, local_days_bounds_utc
from carerota.settings import get_settings

logger = logging.getLogger("carerota.bundles")


@dataclass(slots=True)
class BundleCreateResult:
    bundle_id: str
    requests: list[ChangeRequest]


@dataclass(slots=True)
class BundleOperationResult:
    bundle_id: str
    succeeded: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass(slots=True)
class BundleSummary:
    bundle_id: str
    start_date: date
    end_date: date
    member_count: int
    request_ids: list[int]
    status_counts: dict[str, int]
    new_shift_type: ShiftType | None
    requested_by: str


def _resolve_entry_for_day(
    db: Session,
    *,
    care_space_id: int,
    carer_id: int,
    day_date: date,
    hours: float | None,
    start_hour: int | None,
    bundle_id: str,
) -> TimeEntry:
    day_start, day_end = local_days_bounds_utc(day_date, day_date)
    existing = db.scalar(
        select(TimeEntry)
        .where(
            TimeEntry.care_space_id == care_space_id,
            TimeEntry.carer_id == carer_id,
            TimeEntry.start_ts >= day_start,
            TimeEntry.start_ts < day_end,
        )
        .order_by(TimeEntry.start_ts.asc(), TimeEntry.id.asc())
        .limit(1)
    )
    if existing is not None:
        return existing

    instance_id = db.scalar(
        select(ShiftInstance.id)
        .where(
            ShiftInstance.care_space_id == care_space_id,
            ShiftInstance.carer_id == carer_id,
            ShiftInstance.scheduled_date == day_date,
            ShiftInstance.status != ShiftInstanceStatus.CANCELLED,
        )
        .order_by(ShiftInstance.id.asc())
        .limit(1)
    )
    if instance_id is not None:
        entry, _ = materialize_in_session(db, instance_id)
        return entry

    return create_placeholder_entry(
        db,
        care_space_id=care_space_id,
        carer_id=carer_id,
        day_date=day_date,
        hours=hours,
        start_hour=start_hour,
        placeholder_bundle_id=bundle_id,
    )


def create_bundle(
    db: Session,
    *,
    care_space_id: int,
    carer_id: int,
    start_date: date,
    end_date: date,
    new_shift_type: ShiftType,
    requested_by: str,
    reason: str | None = None,
    hours: float | None = None,
    start_hour: int | None = None,
    sink: NotificationSink | None = None,
) -> BundleCreateResult:
    if end_date < start_date:
        raise ValidationError("end_date must be greater than or equal to start_date")
    days = iter_days(start_date, end_date)
    max_days = get_settings().max_bundle_days
    if len(days) > max_days:
        raise ValidationError(f"A bundle may span at most {max_days} days", {"requested_days": len(days)})

    carer = db.get(Carer, carer_id)
    if carer is None or carer.care_space_id != care_space_id:
        raise NotFoundError("Carer not found")

    bundle_id = str(uuid4())
    requests: list[ChangeRequest] = []
    with atomic(db):
        for day_date in days:
            entry = _resolve_entry_for_day(
                db,
                care_space_id=care_space_id,
                carer_id=carer_id,
                day_date=day_date,
                hours=hours,
                start_hour=start_hour,
                bundle_id=bundle_id,
            )
            if hours is not None or start_hour is not None:
                new_start_ts, new_end_ts = default_window(day_date, hours=hours, start_hour=start_hour)
            else:
                new_start_ts, new_end_ts = entry.start_ts, entry.end_ts
            requests.append(
                insert_change_request_in_session(
                    db,
                    entry=entry,
                    new_start_ts=new_start_ts,
                    new_end_ts=new_end_ts,
                    new_shift_type=new_shift_type,
                    reason=reason,
                    requested_by=requested_by,
                    bundle_id=bundle_id,
                )
            )

    request_ids = [item.id for item in requests]
    logger.info(
        "bundle_created",
        extra={
            "bundle_id": bundle_id,
            "member_count": len(request_ids),
            "carer_id": carer_id,
            "start_date": start_date,
            "end_date": end_date,
        },
    )
    publish_change(
        sink,
        ScheduleChange(
            kind="bundle_created",
            entity_type="change_request",
            entity_ids=tuple(request_ids),
            actor_id=requested_by,
            time_entry_ids=tuple(item.time_entry_id for item in requests if item.time_entry_id is not None),
            details={"bundle_id": bundle_id},
        ),
    )
    return BundleCreateResult(bundle_id=bundle_id, requests=requests)


def list_bundle_members(db: Session, bundle_id: str, *, care_space_id: int | None = None) -> list[ChangeRequest]:
    stmt = select(ChangeRequest).where(ChangeRequest.bundle_id == bundle_id).order_by(ChangeRequest.id.asc())
    if care_space_id is not None:
        stmt = stmt.where(ChangeRequest.care_space_id == care_space_id)
    members = list(db.scalars(stmt).all())
    if not members:
        raise NotFoundError("Bundle not found")
    return members


def summarize_bundles(
    requests: Iterable[ChangeRequest],
    *,
    entries_by_id: dict[int, TimeEntry] | None = None,
) -> tuple[list[BundleSummary], list[ChangeRequest]]:
    """Collapse bundle members into one reviewer item each; loose requests pass through."""
    grouped: dict[str, list[ChangeRequest]] = {}
    singles: list[ChangeRequest] = []
    for item in requests:
        if item.bundle_id:
            grouped.setdefault(item.bundle_id, []).append(item)
        else:
            singles.append(item)

    summaries: list[BundleSummary] = []
    for bundle_id, members in grouped.items():
        members.sort(key=lambda member: member.id)
        member_dates = []
        for member in members:
            entry = (entries_by_id or {}).get(member.time_entry_id) if member.time_entry_id is not None else None
            member_dates.append(local_date(entry.start_ts if entry is not None else member.new_start_ts))
        shift_types = {member.new_shift_type for member in members}
        summaries.append(
            BundleSummary(
                bundle_id=bundle_id,
                start_date=min(member_dates),
                end_date=max(member_dates),
                member_count=len(members),
                request_ids=[member.id for member in members],
                status_counts=dict(Counter(member.status.value for member in members)),
                new_shift_type=shift_types.pop() if len(shift_types) == 1 else None,
                requested_by=members[0].requested_by,
            )
        )
    summaries.sort(key=lambda summary: (summary.start_date, summary.bundle_id))
    return summaries, singles


def _run_for_members(
    db: Session,
    bundle_id: str,
    *,
    operation: str,
    actor_id: str,
    care_space_id: int | None,
    apply: Callable[[int], Any],
    sink: NotificationSink | None,
) -> BundleOperationResult:
    member_ids = [member.id for member in list_bundle_members(db, bundle_id, care_space_id=care_space_id)]
    result = BundleOperationResult(bundle_id=bundle_id)
    for member_id in member_ids:
        try:
            apply(member_id)
        except ApiError as exc:
            result.failed.append(member_id)
            result.errors[member_id] = exc.code
            logger.warning(
                "bundle_member_failed",
                extra={"bundle_id": bundle_id, "operation": operation, "change_request_id": member_id, "code": exc.code},
            )
        else:
            result.succeeded.append(member_id)

    log = logger.info if result.ok else logger.warning
    log(
        "bundle_operation_completed",
        extra={
            "bundle_id": bundle_id,
            "operation": operation,
            "actor_id": actor_id,
            "succeeded": result.succeeded,
            "failed": result.failed,
        },
    )
    if result.succeeded:
        publish_change(
            sink,
            ScheduleChange(
                kind=f"bundle_{operation}",
                entity_type="change_request",
                entity_ids=tuple(result.succeeded),
                actor_id=actor_id,
                details={"bundle_id": bundle_id, "failed": list(result.failed)},
            ),
        )
    return result


def approve_bundle(
    db: Session,
    bundle_id: str,
    *,
    actor_id: str,
    care_space_id: int | None = None,
    sink: NotificationSink | None = None,
) -> BundleOperationResult:
    return _run_for_members(
        db,
        bundle_id,
        operation="approved",
        actor_id=actor_id,
        care_space_id=care_space_id,
        apply=lambda member_id: approve_change_request(db, member_id, actor_id=actor_id, sink=sink),
        sink=sink,
    )


def deny_bundle(
    db: Session,
    bundle_id: str,
    *,
    actor_id: str,
    reason: str | None = None,
    care_space_id: int | None = None,
    sink: NotificationSink | None = None,
) -> BundleOperationResult:
    return _run_for_members(
        db,
        bundle_id,
        operation="denied",
        actor_id=actor_id,
        care_space_id=care_space_id,
        apply=lambda member_id: deny_change_request(db, member_id, actor_id=actor_id, reason=reason, sink=sink),
        sink=sink,
    )


def delete_bundle(
    db: Session,
    bundle_id: str,
    *,
    actor_id: str,
    care_space_id: int | None = None,
    sink: NotificationSink | None = None,
) -> BundleOperationResult:
    return _run_for_members(
        db,
        bundle_id,
        operation="deleted",
        actor_id=actor_id,
        care_space_id=care_space_id,
        apply=lambda member_id: delete_change_request(db, member_id, actor_id=actor_id, sink=sink),
        sink=sink,
    )
