"""
Audit log API routes.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.core.database.engine import get_db, storage_errors
from access_engine.features.audit.schemas import AuditLogListResponse, AuditLogResponse
from access_engine.features.audit.service import list_audit_logs
from access_engine.features.resolution.dependencies import require_permission


router = APIRouter()


@router.get("", response_model=AuditLogListResponse)
async def get_audit_logs(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user_id: str = Depends(require_permission("AUDIT.READ")),
):
    """Get audit logs, newest first."""
    with storage_errors("list audit logs"):
        logs, total = await list_audit_logs(
            db,
            skip=skip,
            limit=limit,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
        )

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        skip=skip,
        limit=limit,
    )
