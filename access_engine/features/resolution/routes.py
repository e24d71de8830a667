"""
Permission check API routes.

Checks answer 200 with granted=false for denials; an unavailable evaluation
is reported as 503 so it is never mistaken for a denial.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status

from access_engine.features.resolution.dependencies import (
    RETRY_AFTER_SECONDS,
    get_resolution_engine,
    require_permission,
)
from access_engine.features.resolution.effects import PermissionDecision
from access_engine.features.resolution.engine import ResolutionEngine
from access_engine.features.resolution.schemas import (
    EffectivePermissionsResponse,
    PermissionCheckRequest,
    PermissionDecisionResponse,
)
from access_engine.features.users.dependencies import get_current_user_id


router = APIRouter()


def decision_response(decision: PermissionDecision) -> PermissionDecisionResponse:
    if decision.evaluation_unavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Permission evaluation unavailable",
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        )
    return PermissionDecisionResponse.model_validate(decision)


@router.post("/check", response_model=PermissionDecisionResponse)
async def check_permission(
    check: PermissionCheckRequest,
    engine: ResolutionEngine = Depends(get_resolution_engine),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    """Check whether a user holds a permission code."""
    decision = await engine.has_permission(check.user_id, check.code, resource=check.resource, now=check.at)
    return decision_response(decision)


@router.get("/users/{user_id}/check/{code}", response_model=PermissionDecisionResponse)
async def check_user_permission(
    user_id: str,
    code: str,
    resource: Optional[str] = None,
    engine: ResolutionEngine = Depends(get_resolution_engine),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    decision = await engine.has_permission(user_id, code, resource=resource)
    return decision_response(decision)


@router.get("/users/{user_id}/effective", response_model=EffectivePermissionsResponse)
async def get_user_effective_permissions(
    user_id: str,
    engine: ResolutionEngine = Depends(get_resolution_engine),
    current_user_id: str = Depends(require_permission("PERMISSIONS.READ")),
):
    """All permissions a user currently holds, by source and by module."""
    return await engine.get_effective_permissions(user_id)


@router.get("/me/effective", response_model=EffectivePermissionsResponse)
async def get_my_effective_permissions(
    engine: ResolutionEngine = Depends(get_resolution_engine),
    current_user_id: str = Depends(get_current_user_id),
):
    return await engine.get_effective_permissions(current_user_id)


@router.get("/me/check/{code}", response_model=PermissionDecisionResponse)
async def check_my_permission(
    code: str,
    resource: Optional[str] = None,
    engine: ResolutionEngine = Depends(get_resolution_engine),
    current_user_id: str = Depends(get_current_user_id),
):
    decision = await engine.has_permission(current_user_id, code, resource=resource)
    return decision_response(decision)
