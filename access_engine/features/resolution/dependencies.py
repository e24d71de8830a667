"""
FastAPI dependencies for route protection.

A denied decision is 403; a decision that could not be evaluated is 503 so
clients retry instead of treating the user as unauthorized.
"""
from typing import List
from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from access_engine.core.clock import Clock, SystemClock
from access_engine.core.database.engine import get_session_factory
from access_engine.core.exception_handlers import RETRY_AFTER_SECONDS
from access_engine.features.resolution.effects import PermissionDecision
from access_engine.features.resolution.engine import ResolutionEngine
from access_engine.features.users.dependencies import get_current_user_id, is_superuser
from access_engine.utils import get_logger


log = get_logger(__name__)

system_clock = SystemClock()


def get_clock() -> Clock:
    return system_clock


def get_resolution_engine(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> ResolutionEngine:
    return ResolutionEngine(session_factory, clock=clock)


def raise_for_decision(decision: PermissionDecision, detail: str) -> None:
    if decision.granted:
        return
    if decision.evaluation_unavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Permission evaluation unavailable",
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        )
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def require_permission(code: str):
    """
    FastAPI dependency to require a specific permission code.

    Usage:
        @router.delete("/employees/{employee_id}")
        async def delete_employee(
            employee_id: str,
            user_id: str = Depends(require_permission("EMPLOYEE.DELETE"))
        ):
            ...

    Returns:
        Dependency function that returns the current user id if the permission is granted

    Raises:
        HTTPException: 403 if denied, 503 if the decision could not be evaluated
    """
    async def permission_dependency(
        user_id: str = Depends(get_current_user_id),
        engine: ResolutionEngine = Depends(get_resolution_engine),
    ) -> str:
        if is_superuser(user_id):
            log.debug(f"Superuser {user_id} bypassed check for {code}")
            return user_id

        decision = await engine.has_permission(user_id, code)
        raise_for_decision(decision, f"Permission denied: {code}")
        return user_id

    return permission_dependency


def require_any_permission(codes: List[str]):
    """
    FastAPI dependency to require ANY of the given permission codes.

    Usage:
        @router.get("/reports")
        async def get_reports(
            user_id: str = Depends(require_any_permission(["REPORTS.READ", "REPORTS.ADMIN"]))
        ):
            ...
    """
    async def permission_dependency(
        user_id: str = Depends(get_current_user_id),
        engine: ResolutionEngine = Depends(get_resolution_engine),
    ) -> str:
        if is_superuser(user_id):
            return user_id

        decision = await engine.has_any_permission(user_id, codes)
        raise_for_decision(decision, f"Permission denied: requires one of {codes}")
        return user_id

    return permission_dependency
