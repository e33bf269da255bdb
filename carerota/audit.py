from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from fastapi import Request
from sqlalchemy.orm import Session

from carerota.models import AuditActorType, AuditLog

if TYPE_CHECKING:
    from carerota.security import Actor

logger = logging.getLogger("carerota.audit")


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    """Append an audit row in its own commit; a failed write is logged, never raised."""
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=ip,
        user_agent=user_agent,
        success=success,
        details=details or {},
    )
    db.add(audit)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_type": actor_type.value,
                "actor_id": actor_id,
                "success": success,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor_type": actor_type.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "ip": ip,
            "success": success,
            "details": details or {},
        },
    )


def audit_request(
    db: Session,
    request: Request,
    actor: Actor,
    *,
    action: str,
    entity_type: str,
    entity_id: str | int | None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN if actor.is_reviewer else AuditActorType.CARER,
        actor_id=actor.actor_id,
        action=action,
        success=success,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )
