"""
Role and user permission edge API routes.

Both routers come from one factory; they differ only in the store they use.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.core import config
from access_engine.core.clock import Clock
from access_engine.core.database.engine import get_db
from access_engine.features.assignments.schemas import (
    AssignPermissionRequest,
    EdgeListResponse,
    EdgeResponse,
    RemoveEdgeResponse,
)
from access_engine.features.assignments.store import EdgeStore, OwnerType, store_for
from access_engine.features.resolution.dependencies import get_clock, require_permission


def edge_routes(owner_type: OwnerType) -> APIRouter:
    router = APIRouter()

    async def get_store(db: AsyncSession = Depends(get_db), clock: Clock = Depends(get_clock)) -> EdgeStore:
        return store_for(owner_type, db, clock=clock)

    @router.post("/{owner_id}", response_model=EdgeResponse, status_code=status.HTTP_201_CREATED)
    async def assign_permission(
        owner_id: str,
        assignment: AssignPermissionRequest,
        store: EdgeStore = Depends(get_store),
        current_user_id: str = Depends(require_permission("PERMISSIONS.ASSIGN")),
    ):
        """Create or replace the owner's edge for one permission."""
        view = await store.assign(
            owner_id,
            assignment.permission_id,
            is_granted=assignment.is_granted,
            expires_at=assignment.expires_at,
            assigned_by=current_user_id,
            reason=assignment.reason,
        )
        return EdgeResponse.model_validate(view)

    @router.delete("/{owner_id}/{permission_id}", response_model=RemoveEdgeResponse)
    async def remove_permission(
        owner_id: str,
        permission_id: str,
        store: EdgeStore = Depends(get_store),
        current_user_id: str = Depends(require_permission("PERMISSIONS.ASSIGN")),
    ):
        """Remove an edge. Removing a missing edge succeeds with removed=false."""
        removed = await store.remove(owner_id, permission_id, removed_by=current_user_id)
        return RemoveEdgeResponse(owner_id=owner_id, permission_id=permission_id, removed=removed)

    @router.get("/{owner_id}", response_model=EdgeListResponse)
    async def list_permissions(
        owner_id: str,
        module: Optional[str] = None,
        action: Optional[str] = None,
        is_granted: Optional[bool] = None,
        search: Optional[str] = None,
        include_expired: bool = True,
        page: int = Query(1, ge=1),
        page_size: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
        store: EdgeStore = Depends(get_store),
        current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
    ):
        """List the owner's edges, newest-assigned first."""
        result = await store.list(
            owner_id,
            page=page,
            page_size=page_size,
            module=module,
            action=action,
            is_granted=is_granted,
            search=search,
            include_expired=include_expired,
        )
        return EdgeListResponse(
            items=[EdgeResponse.model_validate(view) for view in result.items],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
            pages=result.pages,
        )

    return router


role_permission_router = edge_routes(OwnerType.ROLE)
user_permission_router = edge_routes(OwnerType.USER)
