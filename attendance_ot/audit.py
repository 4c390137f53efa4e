from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from attendance_ot.errors import InfrastructureError
from attendance_ot.models import ActivityLog, AuditActorType
from attendance_ot.repository import AttendanceRepository

logger = logging.getLogger("attendance_ot.audit")


def log_audit(
    repository: AttendanceRepository,
    *,
    actor_type: AuditActorType,
    actor_id: str | int,
    action: str,
    success: bool = True,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    entry = ActivityLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=str(actor_id),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        details=details or {},
    )
    try:
        repository.create_activity_log(entry)
    except InfrastructureError:
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_type": actor_type.value,
                "actor_id": str(actor_id),
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
            "actor_id": str(actor_id),
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": details or {},
        },
    )


def notify(
    repository: AttendanceRepository,
    *,
    user_id: int,
    type: str,
    title: str,
    message: str,
) -> None:
    """Best-effort employee notification; delivery failures never undo a transition."""
    try:
        repository.create_notification(user_id=user_id, type=type, title=title, message=message)
    except InfrastructureError:
        logger.exception("notification_write_failed", extra={"user_id": user_id, "type": type})
