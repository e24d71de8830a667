"""
Permission catalog and role API routes.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status

from access_engine.core import config
from access_engine.core.exceptions import NotFoundError
from access_engine.features.permissions.catalog import PermissionCatalog
from access_engine.features.permissions.dependencies import get_catalog
from access_engine.features.permissions.schemas import (
    PermissionCreate,
    PermissionUpdate,
    PermissionResponse,
    PermissionListResponse,
    PermissionStatistics,
    RoleCreate,
    RoleResponse,
)
from access_engine.features.resolution.dependencies import require_permission, require_any_permission
from access_engine.utils import get_logger


log = get_logger(__name__)
router = APIRouter()
role_router = APIRouter()


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.CREATE")),
):
    """Create a new catalog entry."""
    return await catalog.create(**permission.model_dump(), created_by=current_user_id)


@router.get("", response_model=PermissionListResponse)
async def list_permissions(
    module: Optional[str] = None,
    action: Optional[str] = None,
    resource_template: Optional[str] = None,
    code: Optional[str] = None,
    code_prefix: Optional[str] = None,
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    sort_by: str = "name",
    sort_direction: str = Query("asc", pattern="^(asc|desc)$"),
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    """List permissions with filtering, sorting and pagination."""
    result = await catalog.query(
        module=module,
        action=action,
        resource_template=resource_template,
        code=code,
        code_prefix=code_prefix,
        search=search,
        is_active=is_active,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_direction=sort_direction,
    )
    return PermissionListResponse(
        items=[PermissionResponse.model_validate(p) for p in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        pages=result.pages,
    )


@router.get("/modules", response_model=List[str])
async def list_modules(
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    return await catalog.available_modules()


@router.get("/actions", response_model=List[str])
async def list_actions(
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    return await catalog.available_actions()


@router.get("/resources", response_model=List[str])
async def list_resources(
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    return await catalog.available_resources()


@router.get("/statistics", response_model=PermissionStatistics)
async def permission_statistics(
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    return await catalog.statistics()


@router.get("/by-code/{code}", response_model=PermissionResponse)
async def get_permission_by_code(
    code: str,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    """Get a permission by its code."""
    permission = await catalog.find_by_code(code)
    if permission is None:
        raise NotFoundError("Permission", code)
    return permission


@router.get("/by-module/{module}", response_model=List[PermissionResponse])
async def get_permissions_by_module(
    module: str,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    """Active permissions of one module."""
    return await catalog.by_module(module)


@router.get("/by-action/{action}", response_model=List[PermissionResponse])
async def get_permissions_by_action(
    action: str,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    """Active permissions for one action."""
    return await catalog.by_action(action)


@router.get("/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    """Get permission by ID."""
    return await catalog.get(permission_id)


@router.put("/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.UPDATE")),
):
    """Update a permission; only the fields present in the body change."""
    return await catalog.update(
        permission_id, permission_update.model_dump(exclude_unset=True), updated_by=current_user_id
    )


@router.post("/{permission_id}/deactivate", response_model=PermissionResponse)
async def deactivate_permission(
    permission_id: str,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.UPDATE")),
):
    """Deactivate a permission. Its edges stay but resolve as denied."""
    return await catalog.deactivate(permission_id, updated_by=current_user_id)


@router.post("/{permission_id}/activate", response_model=PermissionResponse)
async def activate_permission(
    permission_id: str,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("PERMISSIONS.UPDATE")),
):
    return await catalog.activate(permission_id, updated_by=current_user_id)


# ============================================================================
# Role Routes
# ============================================================================

@role_router.post("", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("ROLES.MANAGE")),
):
    """Create a new role."""
    return await catalog.create_role(role.name, role.description, created_by=current_user_id)


@role_router.get("", response_model=List[RoleResponse])
async def list_roles(
    include_inactive: bool = False,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_any_permission(["ROLES.READ", "ROLES.MANAGE"])),
):
    return await catalog.list_roles(include_inactive=include_inactive)


@role_router.get("/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_any_permission(["ROLES.READ", "ROLES.MANAGE"])),
):
    return await catalog.get_role(role_id)


@role_router.post("/{role_id}/deactivate", response_model=RoleResponse)
async def deactivate_role(
    role_id: str,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("ROLES.MANAGE")),
):
    """Deactivate a role. Its edges stop contributing to resolution."""
    return await catalog.set_role_active(role_id, False, updated_by=current_user_id)


@role_router.post("/{role_id}/activate", response_model=RoleResponse)
async def activate_role(
    role_id: str,
    catalog: PermissionCatalog = Depends(get_catalog),
    current_user_id: str = Depends(require_permission("ROLES.MANAGE")),
):
    return await catalog.set_role_active(role_id, True, updated_by=current_user_id)
