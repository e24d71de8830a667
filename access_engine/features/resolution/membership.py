"""
Role membership: which roles a user currently holds.

Membership is owned by the identity side; this service only reads UserRole
rows. assign_user_role exists for seeding and tests.
"""
from datetime import datetime
from typing import Optional, Protocol
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.core.clock import as_utc
from access_engine.core.database.base import generate_ulid
from access_engine.core.exceptions import NotFoundError, ValidationError
from access_engine.features.audit.service import record_audit
from access_engine.features.permissions.models import Role, UserRole
from access_engine.utils import get_logger


log = get_logger(__name__)


class RoleMembershipProvider(Protocol):
    async def active_role_ids(self, db: AsyncSession, user_id: str, now: datetime) -> list[str]:
        ...


class SQLRoleMembership:
    """Active memberships whose role is also active and whose expiry lies in the future."""

    async def active_role_ids(self, db: AsyncSession, user_id: str, now: datetime) -> list[str]:
        stmt = (
            select(UserRole.role_id)
            .join(Role, Role.id == UserRole.role_id)
            .where(
                UserRole.user_id == user_id,
                UserRole.is_active.is_(True),
                Role.is_active.is_(True),
                or_(UserRole.expires_at.is_(None), UserRole.expires_at > as_utc(now)),
            )
            .order_by(UserRole.role_id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())


async def assign_user_role(
    db: AsyncSession,
    user_id: str,
    role_id: str,
    assigned_by: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> UserRole:
    if not user_id:
        raise ValidationError("user_id is required", {"field": "user_id"})
    if await db.get(Role, role_id) is None:
        raise NotFoundError("Role", role_id)

    result = await db.execute(
        select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
    )
    membership = result.scalars().first()
    if membership is None:
        membership = UserRole(id=generate_ulid(), user_id=user_id, role_id=role_id)
        db.add(membership)
    membership.is_active = True
    membership.assigned_by = assigned_by
    membership.expires_at = as_utc(expires_at)

    record_audit(db, assigned_by, "assign_role", "user", user_id, {"role_id": role_id, "expires_at": expires_at})
    await db.commit()
    await db.refresh(membership)

    log.info(f"User {user_id} added to role {role_id} by {assigned_by}")
    return membership
