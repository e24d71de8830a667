"""
Audit logging helpers.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.features.audit.models import AuditLog
from access_engine.utils import get_logger


log = get_logger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return value


def record_audit(
    db: AsyncSession,
    actor_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Stage an audit log entry in the caller's transaction.

    The caller commits; if the change rolls back, so does its audit row.

    Args:
        db: Database session
        actor_id: User performing the action
        action: Action performed (e.g., "create", "assign", "sync")
        resource_type: Type of resource (e.g., "permission", "role", "user")
        resource_id: ID of the resource
        details: Additional details
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=_jsonable(details) if details else None,
    )
    db.add(audit_log)

    log.info(f"Audit: actor={actor_id} action={action} resource={resource_type}:{resource_id}")

    return audit_log


async def list_audit_logs(
    db: AsyncSession,
    skip: int = 0,
    limit: int = 50,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
) -> tuple[list[AuditLog], int]:
    """Return one page of audit rows (newest first) and the total match count."""
    stmt = select(AuditLog)

    if actor_id:
        stmt = stmt.where(AuditLog.actor_id == actor_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditLog.resource_id == resource_id)

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = (await db.execute(count_stmt)).scalar() or 0

    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all()), total
