from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from carerota.db import atomic
from carerota.errors import ApiError
from carerota.models import (
    ChangeRequest,
    ChangeRequestStatus,
    LeaveCancellationRequest,
    LeaveCancellationStatus,
    LeaveRequest,
    LeaveRequestStatus,
)
from carerota.services.time_utils import normalize_ts
from carerota.settings import get_settings

logger = logging.getLogger("carerota.archiver")

SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True, slots=True)
class ArchiveSweepResult:
    archived_change_requests: int
    deleted_leave_requests: int
    deleted_leave_cancellations: int

    @property
    def total(self) -> int:
        return self.archived_change_requests + self.deleted_leave_requests + self.deleted_leave_cancellations


def sweep_stale_denied(
    db: Session,
    *,
    care_space_id: int | None = None,
    now_utc: datetime | None = None,
) -> ArchiveSweepResult:
    now = normalize_ts(now_utc)
    cutoff = now - timedelta(days=get_settings().denied_request_retention_days)

    archive_stmt = (
        update(ChangeRequest)
        .where(
            ChangeRequest.status == ChangeRequestStatus.DENIED,
            ChangeRequest.denied_at.is_not(None),
            ChangeRequest.denied_at < cutoff,
        )
        .values(status=ChangeRequestStatus.ARCHIVED, archived_by=SYSTEM_ACTOR_ID, archived_at=now)
        .execution_options(synchronize_session=False)
    )
    leave_stmt = delete(LeaveRequest).where(
        LeaveRequest.status == LeaveRequestStatus.DENIED,
        LeaveRequest.reviewed_at.is_not(None),
        LeaveRequest.reviewed_at < cutoff,
    )
    cancellation_stmt = delete(LeaveCancellationRequest).where(
        LeaveCancellationRequest.status == LeaveCancellationStatus.DENIED,
        LeaveCancellationRequest.reviewed_at.is_not(None),
        LeaveCancellationRequest.reviewed_at < cutoff,
    )
    if care_space_id is not None:
        archive_stmt = archive_stmt.where(ChangeRequest.care_space_id == care_space_id)
        leave_stmt = leave_stmt.where(LeaveRequest.care_space_id == care_space_id)
        cancellation_stmt = cancellation_stmt.where(LeaveCancellationRequest.care_space_id == care_space_id)

    with atomic(db):
        archived = db.execute(archive_stmt).rowcount
        deleted_leaves = db.execute(leave_stmt.execution_options(synchronize_session=False)).rowcount
        deleted_cancellations = db.execute(cancellation_stmt.execution_options(synchronize_session=False)).rowcount

    result = ArchiveSweepResult(
        archived_change_requests=archived,
        deleted_leave_requests=deleted_leaves,
        deleted_leave_cancellations=deleted_cancellations,
    )
    if result.total:
        logger.info(
            "auto_archive_sweep",
            extra={
                "care_space_id": care_space_id,
                "cutoff": cutoff,
                "archived_change_requests": archived,
                "deleted_leave_requests": deleted_leaves,
                "deleted_leave_cancellations": deleted_cancellations,
            },
        )
    return result


def maybe_sweep(db: Session, *, care_space_id: int | None = None) -> ArchiveSweepResult | None:
    """Run the sweep alongside a read; a failure is logged and never fails the read."""
    if not get_settings().auto_archive_enabled:
        return None
    try:
        return sweep_stale_denied(db, care_space_id=care_space_id)
    except ApiError:
        logger.exception("auto_archive_sweep_failed", extra={"care_space_id": care_space_id})
        return None
