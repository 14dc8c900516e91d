from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from timeguard.models import AuditActorType, AuditLog

logger = logging.getLogger("timeguard.audit")


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
    """Persist one audit row in its own commit.

    Attendance and admin changes are already committed when this runs, so a
    failed audit write is logged and rolled back without failing the request.
    """
    event = {
        "actor_type": actor_type,
        "actor_id": actor_id,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "success": success,
        "details": dict(details or {}),
    }
    db.add(AuditLog(ts_utc=datetime.now(timezone.utc), ip=ip, user_agent=user_agent, **event))
    log_extra = {**event, "actor_type": actor_type.value, "request_id": request_id}
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("audit_log_write_failed", extra=log_extra)
        return
    logger.info("audit_event", extra={**log_extra, "ip": ip})


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded_for.split(",")[0].strip()
    if first_hop:
        return first_hop
    return request.client.host if request.client else None


def log_request_audit(
    db: Session,
    request: Request,
    *,
    action: str,
    entity_type: str | None = None,
    entity_id: object | None = None,
    success: bool = True,
    details: dict[str, Any] | None = None,
) -> None:
    """Audit an action taken by the authenticated caller of ``request``."""
    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(getattr(request.state, "actor_id", "system")),
        action=action,
        success=success,
        entity_type=entity_type,
        entity_id=None if entity_id is None else str(entity_id),
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )
