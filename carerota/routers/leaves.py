from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from carerota.audit import audit_request
from carerota.db import get_db
from carerota.models import LeaveCancellationStatus, LeaveRequestStatus
from carerota.schemas import (
    LeaveCancellationOutcomeRead,
    LeaveCancellationRequestRead,
    LeaveRequestCreate,
    LeaveRequestRead,
    TimeEntryRead,
)
from carerota.security import Actor, require_actor, require_owner_or_reviewer, require_reviewer
from carerota.services.archiver import maybe_sweep
from carerota.services.leave_cancellation import (
    approve_leave_cancellation,
    deny_leave_cancellation,
    get_leave_cancellation_request,
    list_leave_cancellation_requests,
    request_leave_cancellation,
)
from carerota.services.leaves import (
    approve_leave_request,
    cancel_leave_request,
    create_leave_request,
    delete_leave_request,
    deny_leave_request,
    get_leave_request,
    list_leave_requests,
)
from carerota.services.notifications import NotificationSink, get_notification_sink

router = APIRouter(tags=["leaves"])


@router.post(
    "/api/leave-requests",
    response_model=LeaveRequestRead,
    status_code=status.HTTP_201_CREATED,
)
def create_leave_request_endpoint(
    payload: LeaveRequestCreate,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> LeaveRequestRead:
    leave = create_leave_request(
        db,
        care_space_id=actor.care_space_id,
        carer_id=payload.carer_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        leave_type=payload.leave_type,
        hours=payload.hours,
        notes=payload.notes,
        created_by=actor.actor_id,
        sink=sink,
    )
    audit_request(
        db,
        request,
        actor,
        action="LEAVE_REQUEST_CREATED",
        entity_type="leave_request",
        entity_id=leave.id,
        details={"carer_id": leave.carer_id, "leave_type": leave.leave_type.value},
    )
    return leave


@router.get("/api/leave-requests", response_model=list[LeaveRequestRead])
def list_leave_requests_endpoint(
    carer_id: int | None = Query(default=None, ge=1),
    status_filter: LeaveRequestStatus | None = Query(default=None, alias="status"),
    year: int | None = Query(default=None, ge=1970),
    month: int | None = Query(default=None, ge=1, le=12),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[LeaveRequestRead]:
    maybe_sweep(db, care_space_id=actor.care_space_id)
    return list_leave_requests(
        db,
        care_space_id=actor.care_space_id,
        carer_id=carer_id,
        status=status_filter,
        year=year,
        month=month,
    )


def _review_leave_request(
    action: str,
    leave_id: int,
    request: Request,
    actor: Actor,
    db: Session,
    sink: NotificationSink,
) -> LeaveRequestRead:
    get_leave_request(db, leave_id, care_space_id=actor.care_space_id)
    operations = {
        "approve": (approve_leave_request, "LEAVE_REQUEST_APPROVED"),
        "deny": (deny_leave_request, "LEAVE_REQUEST_DENIED"),
        "cancel": (cancel_leave_request, "LEAVE_REQUEST_CANCELLED"),
    }
    operation, audit_action = operations[action]
    leave = operation(db, leave_id, actor_id=actor.actor_id, sink=sink)
    audit_request(db, request, actor, action=audit_action, entity_type="leave_request", entity_id=leave_id)
    return leave


@router.post("/api/leave-requests/{leave_id}/approve", response_model=LeaveRequestRead)
def approve_leave_request_endpoint(
    leave_id: int,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> LeaveRequestRead:
    return _review_leave_request("approve", leave_id, request, actor, db, sink)


@router.post("/api/leave-requests/{leave_id}/deny", response_model=LeaveRequestRead)
def deny_leave_request_endpoint(
    leave_id: int,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> LeaveRequestRead:
    return _review_leave_request("deny", leave_id, request, actor, db, sink)


@router.post("/api/leave-requests/{leave_id}/cancel", response_model=LeaveRequestRead)
def cancel_leave_request_endpoint(
    leave_id: int,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> LeaveRequestRead:
    return _review_leave_request("cancel", leave_id, request, actor, db, sink)


@router.delete("/api/leave-requests/{leave_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_leave_request_endpoint(
    leave_id: int,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> None:
    existing = get_leave_request(db, leave_id, care_space_id=actor.care_space_id)
    require_owner_or_reviewer(actor, existing.created_by)
    delete_leave_request(db, leave_id, actor_id=actor.actor_id, sink=sink)
    audit_request(db, request, actor, action="LEAVE_REQUEST_DELETED", entity_type="leave_request", entity_id=leave_id)


@router.post("/api/time-entries/{time_entry_id}/leave-cancellation", response_model=LeaveCancellationOutcomeRead)
def request_leave_cancellation_endpoint(
    time_entry_id: int,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> LeaveCancellationOutcomeRead:
    outcome = request_leave_cancellation(
        db,
        time_entry_id=time_entry_id,
        requester_id=actor.actor_id,
        care_space_id=actor.care_space_id,
        sink=sink,
    )
    response = LeaveCancellationOutcomeRead(
        cancelled=outcome.cancelled,
        time_entry=TimeEntryRead.model_validate(outcome.entry),
        request=LeaveCancellationRequestRead.model_validate(outcome.request) if outcome.request is not None else None,
    )
    audit_request(
        db,
        request,
        actor,
        action="LEAVE_CANCELLED" if outcome.cancelled else "LEAVE_CANCELLATION_REQUESTED",
        entity_type="time_entry",
        entity_id=time_entry_id,
        details={"leave_cancellation_request_id": outcome.request.id if outcome.request is not None else None},
    )
    return response


@router.get("/api/leave-cancellation-requests", response_model=list[LeaveCancellationRequestRead])
def list_leave_cancellation_requests_endpoint(
    status_filter: LeaveCancellationStatus | None = Query(default=None, alias="status"),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[LeaveCancellationRequestRead]:
    maybe_sweep(db, care_space_id=actor.care_space_id)
    return list_leave_cancellation_requests(db, care_space_id=actor.care_space_id, status=status_filter)


@router.post(
    "/api/leave-cancellation-requests/{request_id}/approve",
    response_model=LeaveCancellationRequestRead,
)
def approve_leave_cancellation_endpoint(
    request_id: int,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> LeaveCancellationRequestRead:
    get_leave_cancellation_request(db, request_id, care_space_id=actor.care_space_id)
    cancellation = approve_leave_cancellation(db, request_id, actor_id=actor.actor_id, sink=sink)
    audit_request(
        db,
        request,
        actor,
        action="LEAVE_CANCELLATION_APPROVED",
        entity_type="leave_cancellation_request",
        entity_id=request_id,
        details={"conflict_shift_ids": list(cancellation.conflict_shift_ids or [])},
    )
    return cancellation


@router.post(
    "/api/leave-cancellation-requests/{request_id}/deny",
    response_model=LeaveCancellationRequestRead,
)
def deny_leave_cancellation_endpoint(
    request_id: int,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> LeaveCancellationRequestRead:
    get_leave_cancellation_request(db, request_id, care_space_id=actor.care_space_id)
    cancellation = deny_leave_cancellation(db, request_id, actor_id=actor.actor_id, sink=sink)
    audit_request(
        db,
        request,
        actor,
        action="LEAVE_CANCELLATION_DENIED",
        entity_type="leave_cancellation_request",
        entity_id=request_id,
    )
    return cancellation
