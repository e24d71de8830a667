"""
Bulk edge operation API routes.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.core.clock import Clock
from access_engine.core.database.engine import get_db
from access_engine.features.assignments.store import OwnerType
from access_engine.features.bulk.manager import BulkOperationsManager
from access_engine.features.bulk.schemas import (
    BulkAssignRequest,
    BulkRemoveRequest,
    BulkResultResponse,
    CopyRequest,
    SyncRequest,
)
from access_engine.features.resolution.dependencies import get_clock, require_permission


router = APIRouter()


async def get_bulk_manager(
    db: AsyncSession = Depends(get_db), clock: Clock = Depends(get_clock)
) -> BulkOperationsManager:
    return BulkOperationsManager(db, clock=clock)


@router.post("/{owner_type}/copy", response_model=BulkResultResponse)
async def copy_permissions(
    owner_type: OwnerType,
    copy: CopyRequest,
    manager: BulkOperationsManager = Depends(get_bulk_manager),
    current_user_id: str = Depends(require_permission("PERMISSIONS.ASSIGN")),
):
    """Make the target's edge set match the source's current edges."""
    result = await manager.copy(
        owner_type,
        copy.source_owner_id,
        copy.target_owner_id,
        assigned_by=current_user_id,
        allow_empty=copy.allow_empty,
    )
    return result.to_dict()


@router.post("/{owner_type}/{owner_id}/assign", response_model=BulkResultResponse)
async def bulk_assign(
    owner_type: OwnerType,
    owner_id: str,
    assignment: BulkAssignRequest,
    manager: BulkOperationsManager = Depends(get_bulk_manager),
    current_user_id: str = Depends(require_permission("PERMISSIONS.ASSIGN")),
):
    """Assign several permissions to one owner, all or nothing."""
    result = await manager.bulk_assign(
        owner_type,
        owner_id,
        assignment.permission_ids,
        is_granted=assignment.is_granted,
        expires_at=assignment.expires_at,
        assigned_by=current_user_id,
        reason=assignment.reason,
    )
    return result.to_dict()


@router.post("/{owner_type}/{owner_id}/remove", response_model=BulkResultResponse)
async def bulk_remove(
    owner_type: OwnerType,
    owner_id: str,
    removal: BulkRemoveRequest,
    manager: BulkOperationsManager = Depends(get_bulk_manager),
    current_user_id: str = Depends(require_permission("PERMISSIONS.ASSIGN")),
):
    result = await manager.bulk_remove(owner_type, owner_id, removal.permission_ids, removed_by=current_user_id)
    return result.to_dict()


@router.post("/{owner_type}/{owner_id}/sync", response_model=BulkResultResponse)
async def sync_permissions(
    owner_type: OwnerType,
    owner_id: str,
    desired: SyncRequest,
    manager: BulkOperationsManager = Depends(get_bulk_manager),
    current_user_id: str = Depends(require_permission("PERMISSIONS.ASSIGN")),
):
    """Replace the owner's current edge set with the desired one."""
    result = await manager.sync(owner_type, owner_id, desired.permission_ids, assigned_by=current_user_id)
    return result.to_dict()
