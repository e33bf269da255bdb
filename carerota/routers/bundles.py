from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from carerota.audit import audit_request
from carerota.db import get_db
from carerota.schemas import (
    BundleCreateRequest,
    BundleCreateResponse,
    BundleDenyRequest,
    BundleOperationResponse,
    ChangeRequestRead,
)
from carerota.security import Actor, require_actor, require_owner_or_reviewer, require_reviewer
from carerota.services.bundles import (
    BundleOperationResult,
    approve_bundle,
    create_bundle,
    delete_bundle,
    deny_bundle,
    list_bundle_members,
)
from carerota.services.notifications import NotificationSink, get_notification_sink

router = APIRouter(tags=["change-request-bundles"])


def _to_operation_response(result: BundleOperationResult) -> BundleOperationResponse:
    return BundleOperationResponse(
        bundle_id=result.bundle_id,
        succeeded=list(result.succeeded),
        failed=list(result.failed),
        errors=dict(result.errors),
        ok=result.ok,
    )


def _audit_bundle_operation(
    db: Session,
    request: Request,
    actor: Actor,
    *,
    action: str,
    result: BundleOperationResult,
) -> None:
    audit_request(
        db,
        request,
        actor,
        action=action,
        entity_type="change_request_bundle",
        entity_id=result.bundle_id,
        success=result.ok,
        details={"succeeded": result.succeeded, "failed": result.failed, "errors": result.errors},
    )


@router.post(
    "/api/change-request-bundles",
    response_model=BundleCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_bundle_endpoint(
    payload: BundleCreateRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> BundleCreateResponse:
    result = create_bundle(
        db,
        care_space_id=actor.care_space_id,
        carer_id=payload.carer_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        new_shift_type=payload.new_shift_type,
        reason=payload.reason,
        requested_by=actor.actor_id,
        hours=payload.hours,
        start_hour=payload.start_hour,
        sink=sink,
    )
    response = BundleCreateResponse(
        bundle_id=result.bundle_id,
        requests=[ChangeRequestRead.model_validate(item) for item in result.requests],
    )
    audit_request(
        db,
        request,
        actor,
        action="CHANGE_REQUEST_BUNDLE_CREATED",
        entity_type="change_request_bundle",
        entity_id=result.bundle_id,
        details={
            "carer_id": payload.carer_id,
            "start_date": payload.start_date.isoformat(),
            "end_date": payload.end_date.isoformat(),
            "member_count": len(result.requests),
        },
    )
    return response


@router.post("/api/change-request-bundles/{bundle_id}/approve", response_model=BundleOperationResponse)
def approve_bundle_endpoint(
    bundle_id: str,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> BundleOperationResponse:
    result = approve_bundle(db, bundle_id, actor_id=actor.actor_id, care_space_id=actor.care_space_id, sink=sink)
    _audit_bundle_operation(db, request, actor, action="CHANGE_REQUEST_BUNDLE_APPROVED", result=result)
    return _to_operation_response(result)


@router.post("/api/change-request-bundles/{bundle_id}/deny", response_model=BundleOperationResponse)
def deny_bundle_endpoint(
    bundle_id: str,
    request: Request,
    payload: BundleDenyRequest | None = None,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> BundleOperationResponse:
    result = deny_bundle(
        db,
        bundle_id,
        actor_id=actor.actor_id,
        reason=payload.reason if payload is not None else None,
        care_space_id=actor.care_space_id,
        sink=sink,
    )
    _audit_bundle_operation(db, request, actor, action="CHANGE_REQUEST_BUNDLE_DENIED", result=result)
    return _to_operation_response(result)


@router.delete("/api/change-request-bundles/{bundle_id}", response_model=BundleOperationResponse)
def delete_bundle_endpoint(
    bundle_id: str,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    sink: NotificationSink = Depends(get_notification_sink),
) -> BundleOperationResponse:
    for member in list_bundle_members(db, bundle_id, care_space_id=actor.care_space_id):
        require_owner_or_reviewer(actor, member.requested_by)
    result = delete_bundle(db, bundle_id, actor_id=actor.actor_id, care_space_id=actor.care_space_id, sink=sink)
    _audit_bundle_operation(db, request, actor, action="CHANGE_REQUEST_BUNDLE_DELETED", result=result)
    return _to_operation_response(result)
