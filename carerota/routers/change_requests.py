from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from carerota.audit import audit_request
from carerota.db import get_db
from carerota.models import ChangeRequestStatus, TimeEntry
from carerota.schemas import (
    BundleSummaryRead,
    ChangeRequestCreate,
    ChangeRequestDenyRequest,
    ChangeRequestQueueResponse,
    ChangeRequestRead,
    ChangeRequestRevertRequest,
)
from carerota.security import Actor, require_actor, require_owner_or_reviewer, require_reviewer
from carerota.services.archiver import maybe_sweep
from carerota.services.bundles import summarize_bundles
from carerota.services.change_requests import (
    approve_change_request,
    archive_change_request,
    create_change_request,
    delete_change_request,
    deny_change_request,
    get_change_request,
    list_change_requests,
    revert_change_request,
)
from carerota.services.notifications import NotificationSink, get_notification_sink

router = APIRouter(tags=["change-requests"])


@router.post(
    "/api/change-requests",
    response_model=ChangeRequestRead,
    status_code=status.HTTP_201_CREATED,
)
def create_change_request_endpoint(
    payload: ChangeRequestCreate,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> ChangeRequestRead:
    change_request = create_change_request(
        db,
        requested_by=actor.actor_id,
        new_start_ts=payload.new_start_ts,
        new_end_ts=payload.new_end_ts,
        time_entry_id=payload.time_entry_id,
        shift_instance_id=payload.shift_instance_id,
        new_shift_type=payload.new_shift_type,
        reason=payload.reason,
        bundle_id=payload.bundle_id,
        care_space_id=actor.care_space_id,
        sink=sink,
    )
    audit_request(
        db,
        request,
        actor,
        action="CHANGE_REQUEST_CREATED",
        entity_type="change_request",
        entity_id=change_request.id,
        details={"time_entry_id": change_request.time_entry_id, "bundle_id": change_request.bundle_id},
    )
    return change_request


@router.get("/api/change-requests", response_model=ChangeRequestQueueResponse)
def list_change_requests_endpoint(
    status_filter: list[ChangeRequestStatus] | None = Query(default=None, alias="status"),
    carer_id: int | None = Query(default=None, ge=1),
    bundle_id: str | None = Query(default=None, max_length=36),
    include_archived: bool = Query(default=False),
    group_bundles: bool = Query(default=False),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> ChangeRequestQueueResponse:
    maybe_sweep(db, care_space_id=actor.care_space_id)
    requests = list_change_requests(
        db,
        care_space_id=actor.care_space_id,
        statuses=status_filter,
        carer_id=carer_id,
        bundle_id=bundle_id,
        include_archived=include_archived,
    )
    if not group_bundles:
        return ChangeRequestQueueResponse(
            bundles=[],
            requests=[ChangeRequestRead.model_validate(item) for item in requests],
        )

    entry_ids = {item.time_entry_id for item in requests if item.bundle_id and item.time_entry_id is not None}
    entries_by_id = {}
    if entry_ids:
        entries_by_id = {entry.id: entry for entry in db.scalars(select(TimeEntry).where(TimeEntry.id.in_(entry_ids)))}
    summaries, singles = summarize_bundles(requests, entries_by_id=entries_by_id)
    return ChangeRequestQueueResponse(
        bundles=[BundleSummaryRead.model_validate(item) for item in summaries],
        requests=[ChangeRequestRead.model_validate(item) for item in singles],
    )


@router.get("/api/change-requests/{request_id}", response_model=ChangeRequestRead)
def get_change_request_endpoint(
    request_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> ChangeRequestRead:
    return get_change_request(db, request_id, care_space_id=actor.care_space_id)


@router.post("/api/change-requests/{request_id}/approve", response_model=ChangeRequestRead)
def approve_change_request_endpoint(
    request_id: int,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> ChangeRequestRead:
    get_change_request(db, request_id, care_space_id=actor.care_space_id)
    change_request = approve_change_request(db, request_id, actor_id=actor.actor_id, sink=sink)
    audit_request(
        db,
        request,
        actor,
        action="CHANGE_REQUEST_APPLIED",
        entity_type="change_request",
        entity_id=request_id,
        details={"time_entry_id": change_request.time_entry_id},
    )
    return change_request


@router.post("/api/change-requests/{request_id}/deny", response_model=ChangeRequestRead)
def deny_change_request_endpoint(
    request_id: int,
    request: Request,
    payload: ChangeRequestDenyRequest | None = None,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> ChangeRequestRead:
    get_change_request(db, request_id, care_space_id=actor.care_space_id)
    reason = payload.reason if payload is not None else None
    change_request = deny_change_request(db, request_id, actor_id=actor.actor_id, reason=reason, sink=sink)
    audit_request(
        db,
        request,
        actor,
        action="CHANGE_REQUEST_DENIED",
        entity_type="change_request",
        entity_id=request_id,
        details={"reason": reason},
    )
    return change_request


@router.post("/api/change-requests/{request_id}/revert", response_model=ChangeRequestRead)
def revert_change_request_endpoint(
    request_id: int,
    request: Request,
    payload: ChangeRequestRevertRequest | None = None,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> ChangeRequestRead:
    get_change_request(db, request_id, care_space_id=actor.care_space_id)
    force = payload.force if payload is not None else False
    change_request = revert_change_request(db, request_id, actor_id=actor.actor_id, force=force, sink=sink)
    audit_request(
        db,
        request,
        actor,
        action="CHANGE_REQUEST_REVERTED",
        entity_type="change_request",
        entity_id=request_id,
        details={"force": force},
    )
    return change_request


@router.post("/api/change-requests/{request_id}/archive", response_model=ChangeRequestRead)
def archive_change_request_endpoint(
    request_id: int,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> ChangeRequestRead:
    get_change_request(db, request_id, care_space_id=actor.care_space_id)
    change_request = archive_change_request(db, request_id, actor_id=actor.actor_id, sink=sink)
    audit_request(
        db,
        request,
        actor,
        action="CHANGE_REQUEST_ARCHIVED",
        entity_type="change_request",
        entity_id=request_id,
    )
    return change_request


@router.delete("/api/change-requests/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_change_request_endpoint(
    request_id: int,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> None:
    existing = get_change_request(db, request_id, care_space_id=actor.care_space_id)
    require_owner_or_reviewer(actor, existing.requested_by)
    delete_change_request(db, request_id, actor_id=actor.actor_id, sink=sink)
    audit_request(
        db,
        request,
        actor,
        action="CHANGE_REQUEST_DELETED",
        entity_type="change_request",
        entity_id=request_id,
    )
