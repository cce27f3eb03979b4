"""Audit log for staff and reconciliation actions."""

from typing import Any

from datamart.core.logging import get_logger
from datamart.models.audit_log import AuditLog

log = get_logger(__name__)


async def log_event(
    actor_id: str | None,
    action: str,
    entity_type: str,
    target_id: str | None = None,
    details: dict[str, Any] | None = None,
    actor_role: str | None = None,
) -> None:
    """Append to audit_logs. Never raises: a lost audit row must not undo a committed business change."""
    try:
        await AuditLog(
            actor_id=actor_id,
            actor_role=actor_role,
            action=action,
            entity_type=entity_type,
            target_id=target_id,
            details=details or {},
        ).insert()
    except Exception:
        log.exception("audit_append_failed", action=action, entity_type=entity_type, target_id=target_id)
