"""
Role Store and User Override Store.

Both stores have the same operation shape and differ only in the owner they
key on. A write is a single upsert-by-unique-key statement; multi-edge work
(see access_engine.features.bulk) additionally holds the per-owner lock.
"""
import asyncio
import enum
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Optional
from sqlalchemy import select, delete, func, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.core import config
from access_engine.core.clock import Clock, SystemClock, as_utc
from access_engine.core.database.base import generate_ulid
from access_engine.core.database.engine import storage_errors
from access_engine.core.exceptions import NotFoundError, ValidationError
from access_engine.core.pagination import Page, check_paging
from access_engine.features.audit.service import record_audit
from access_engine.features.permissions.models import Permission, Role, RolePermission, UserPermission
from access_engine.utils import get_logger


log = get_logger(__name__)


class OwnerType(str, enum.Enum):
    ROLE = "role"
    USER = "user"


class OwnerLockRegistry:
    """
    One asyncio.Lock per (owner type, owner id), created on demand and
    dropped when nobody holds or waits for it. Different owners never contend.
    """

    def __init__(self):
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._holders: defaultdict[tuple[str, str], int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, owner_type: OwnerType, owner_id: str) -> AsyncIterator[None]:
        key = (owner_type.value, owner_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


# Process-wide registry; edits to one owner are serialized within this node
owner_locks = OwnerLockRegistry()


@dataclass
class EdgeView:
    """An edge joined with its permission's metadata (None when the permission is gone)."""
    id: str
    owner_type: OwnerType
    owner_id: str
    permission_id: str
    is_granted: bool
    assigned_at: datetime
    assigned_by: Optional[str]
    expires_at: Optional[datetime]
    reason: Optional[str]
    is_expired: bool
    permission_code: Optional[str] = None
    permission_name: Optional[str] = None
    module: Optional[str] = None
    action: Optional[str] = None
    resource_template: Optional[str] = None
    permission_active: Optional[bool] = None


def is_expired_at(expires_at: Optional[datetime], now: datetime) -> bool:
    # Half-open validity: [assigned_at, expires_at)
    return expires_at is not None and as_utc(now) >= as_utc(expires_at)


class EdgeStore:
    owner_type: OwnerType
    model: type
    owner_column_name: str
    records_reason: bool = False

    def __init__(
        self,
        db: AsyncSession,
        clock: Optional[Clock] = None,
        locks: Optional[OwnerLockRegistry] = None,
        allow_inactive_permissions: Optional[bool] = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.locks = locks if locks is not None else owner_locks
        self.allow_inactive_permissions = (
            config.ALLOW_ASSIGN_TO_INACTIVE_PERMISSION
            if allow_inactive_permissions is None
            else allow_inactive_permissions
        )

    @property
    def owner_column(self):
        return getattr(self.model, self.owner_column_name)

    def _edge_filter(self, owner_id: str, permission_id: str):
        return and_(self.owner_column == owner_id, self.model.permission_id == permission_id)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_assignment(
        self,
        owner_id: str,
        permission_id: str,
        expires_at: Optional[datetime],
        reason: Optional[str],
        now: datetime,
    ) -> Optional[datetime]:
        """Reject malformed input before touching storage; returns expires_at in UTC."""
        self.validate_owner_id(owner_id)
        if not permission_id or not str(permission_id).strip():
            raise ValidationError("permission_id is required", {"field": "permission_id"})
        if reason is not None and not self.records_reason:
            raise ValidationError(
                f"reason is only recorded for user overrides, not {self.owner_type.value} edges",
                {"field": "reason"},
            )
        if reason is not None and len(reason) > 500:
            raise ValidationError("reason must be at most 500 characters", {"field": "reason"})
        expires_at = as_utc(expires_at)
        if expires_at is not None and expires_at <= now:
            raise ValidationError(
                "expires_at must be in the future", {"field": "expires_at", "expires_at": expires_at.isoformat()}
            )
        return expires_at

    def validate_owner_id(self, owner_id: str) -> None:
        if not owner_id or not str(owner_id).strip():
            raise ValidationError(f"{self.owner_type.value} id is required", {"field": "owner_id"})

    async def check_owner(self, owner_id: str) -> None:
        """Owners that the catalog is authoritative for must exist."""
        return None

    async def check_permission(self, permission_id: str) -> Permission:
        permission = await self.db.get(Permission, permission_id)
        if permission is None:
            raise NotFoundError("Permission", permission_id)
        if not permission.is_active:
            if not self.allow_inactive_permissions:
                raise ValidationError(
                    f"Permission '{permission.code}' is inactive and cannot be assigned",
                    {"permission_id": permission_id},
                )
            log.warning(f"Assigning inactive permission {permission.code} to {self.owner_type.value}")
        return permission

    # ------------------------------------------------------------------
    # Low-level writes: execute only, the caller owns the transaction
    # ------------------------------------------------------------------

    def _insert_construct(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
            return insert
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
            return insert
        return None

    async def upsert_edge(
        self,
        owner_id: str,
        permission_id: str,
        is_granted: bool,
        expires_at: Optional[datetime],
        assigned_by: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> None:
        values = {
            "is_granted": bool(is_granted),
            "assigned_at": now,
            "assigned_by": assigned_by,
            "expires_at": expires_at,
        }
        if self.records_reason:
            values["reason"] = reason

        insert = self._insert_construct()
        if insert is not None:
            stmt = insert(self.model).values(
                id=generate_ulid(),
                permission_id=permission_id,
                **{self.owner_column_name: owner_id},
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[self.owner_column_name, "permission_id"],
                set_={key: stmt.excluded[key] for key in values},
            )
            await self.db.execute(stmt)
            return

        # No native upsert: select-then-write, serialized by the owner lock
        existing = await self.get(owner_id, permission_id)
        if existing is None:
            self.db.add(self.model(
                id=generate_ulid(),
                permission_id=permission_id,
                **{self.owner_column_name: owner_id},
                **values,
            ))
        else:
            for key, value in values.items():
                setattr(existing, key, value)
        await self.db.flush()

    async def delete_edge(self, owner_id: str, permission_id: str) -> bool:
        result = await self.db.execute(delete(self.model).where(self._edge_filter(owner_id, permission_id)))
        return (result.rowcount or 0) > 0

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def assign(
        self,
        owner_id: str,
        permission_id: str,
        is_granted: bool = True,
        expires_at: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> EdgeView:
        """
        Create the edge, or replace its effect, expiry, assigner and reason
        (bumping assigned_at) when the (owner, permission) pair already exists.
        """
        now = self.clock.now()
        expires_at = self.validate_assignment(owner_id, permission_id, expires_at, reason, now)

        async with self.locks.hold(self.owner_type, owner_id):
            with storage_errors(f"assign {self.owner_type.value} permission"):
                try:
                    await self.check_owner(owner_id)
                    await self.check_permission(permission_id)
                    created = await self.get(owner_id, permission_id) is None
                    await self.upsert_edge(owner_id, permission_id, is_granted, expires_at, assigned_by, reason, now)
                    record_audit(
                        self.db, assigned_by, "assign_permission", self.owner_type.value, owner_id,
                        {
                            "permission_id": permission_id,
                            "is_granted": bool(is_granted),
                            "expires_at": expires_at,
                            "reason": reason,
                            "created": created,
                        },
                    )
                    await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    raise

        log.info(
            f"{self.owner_type.value.capitalize()} permission {'assigned' if created else 'reassigned'}: "
            f"{self.owner_type.value} {owner_id}, permission {permission_id}, "
            f"granted={bool(is_granted)} by {assigned_by}"
        )
        view = await self.view(owner_id, permission_id)
        if view is None:
            raise NotFoundError(f"{self.owner_type.value.capitalize()} permission", f"{owner_id}/{permission_id}")
        return view

    async def remove(self, owner_id: str, permission_id: str, removed_by: Optional[str] = None) -> bool:
        """Idempotent: removing a missing edge is a no-op that returns False."""
        self.validate_owner_id(owner_id)

        async with self.locks.hold(self.owner_type, owner_id):
            with storage_errors(f"remove {self.owner_type.value} permission"):
                try:
                    deleted = await self.delete_edge(owner_id, permission_id)
                    if deleted:
                        record_audit(
                            self.db, removed_by, "remove_permission", self.owner_type.value, owner_id,
                            {"permission_id": permission_id},
                        )
                    await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    raise

        if deleted:
            log.info(
                f"{self.owner_type.value.capitalize()} permission removed: "
                f"{self.owner_type.value} {owner_id}, permission {permission_id} by {removed_by}"
            )
        else:
            log.debug(f"No {self.owner_type.value} edge {owner_id}/{permission_id} to remove")
        return deleted

    async def get(self, owner_id: str, permission_id: str):
        stmt = (
            select(self.model)
            .where(self._edge_filter(owner_id, permission_id))
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def current_edges(self, owner_id: str, now: Optional[datetime] = None) -> list:
        """Every non-expired edge of the owner, dangling references included."""
        now = as_utc(now) or self.clock.now()
        stmt = (
            select(self.model)
            .where(self.owner_column == owner_id)
            .execution_options(populate_existing=True)
        )
        with storage_errors(f"load {self.owner_type.value} edges"):
            result = await self.db.execute(stmt)
        return [edge for edge in result.scalars().all() if not is_expired_at(edge.expires_at, now)]

    def _to_view(self, edge, permission: Optional[Permission], now: datetime) -> EdgeView:
        view = EdgeView(
            id=edge.id,
            owner_type=self.owner_type,
            owner_id=getattr(edge, self.owner_column_name),
            permission_id=edge.permission_id,
            is_granted=edge.is_granted,
            assigned_at=edge.assigned_at,
            assigned_by=edge.assigned_by,
            expires_at=edge.expires_at,
            reason=getattr(edge, "reason", None),
            is_expired=is_expired_at(edge.expires_at, now),
        )
        if permission is not None:
            view.permission_code = permission.code
            view.permission_name = permission.name
            view.module = permission.module
            view.action = permission.action
            view.resource_template = permission.resource_template
            view.permission_active = permission.is_active
        return view

    def _joined(self):
        return select(self.model, Permission).outerjoin(Permission, Permission.id == self.model.permission_id)

    async def view(self, owner_id: str, permission_id: str) -> Optional[EdgeView]:
        stmt = self._joined().where(self._edge_filter(owner_id, permission_id)).execution_options(
            populate_existing=True
        )
        with storage_errors(f"load {self.owner_type.value} edge"):
            row = (await self.db.execute(stmt)).first()
        if row is None:
            return None
        return self._to_view(row[0], row[1], self.clock.now())

    async def list(
        self,
        owner_id: str,
        page: int = 1,
        page_size: int = config.DEFAULT_PAGE_SIZE,
        module: Optional[str] = None,
        action: Optional[str] = None,
        is_granted: Optional[bool] = None,
        search: Optional[str] = None,
        include_expired: bool = True,
    ) -> Page[EdgeView]:
        """Edges joined with permission metadata, newest-assigned first."""
        check_paging(page, page_size)
        now = self.clock.now()
        stmt = self._joined().where(self.owner_column == owner_id)

        if module:
            stmt = stmt.where(Permission.module == module)
        if action:
            stmt = stmt.where(Permission.action == action.lower())
        if is_granted is not None:
            stmt = stmt.where(self.model.is_granted == is_granted)
        if search:
            stmt = stmt.where(
                or_(
                    Permission.name.icontains(search, autoescape=True),
                    Permission.code.icontains(search, autoescape=True),
                )
            )
        if not include_expired:
            stmt = stmt.where(or_(self.model.expires_at.is_(None), self.model.expires_at > now))

        result_page: Page[EdgeView] = Page(page=page, page_size=page_size)
        with storage_errors(f"list {self.owner_type.value} edges"):
            count_stmt = select(func.count()).select_from(stmt.subquery())
            result_page.total = (await self.db.execute(count_stmt)).scalar() or 0
            rows = await self.db.execute(
                stmt.order_by(self.model.assigned_at.desc(), self.model.id.desc())
                .offset(result_page.offset)
                .limit(page_size)
                .execution_options(populate_existing=True)
            )
        result_page.items = [self._to_view(edge, permission, now) for edge, permission in rows.all()]
        return result_page


class RolePermissionStore(EdgeStore):
    owner_type = OwnerType.ROLE
    model = RolePermission
    owner_column_name = "role_id"
    records_reason = False

    async def check_owner(self, owner_id: str) -> None:
        if await self.db.get(Role, owner_id) is None:
            raise NotFoundError("Role", owner_id)


class UserPermissionStore(EdgeStore):
    """User ids belong to the identity provider and are not checked here."""
    owner_type = OwnerType.USER
    model = UserPermission
    owner_column_name = "user_id"
    records_reason = True


STORES: dict[OwnerType, type[EdgeStore]] = {
    OwnerType.ROLE: RolePermissionStore,
    OwnerType.USER: UserPermissionStore,
}


def store_for(
    owner_type: OwnerType,
    db: AsyncSession,
    clock: Optional[Clock] = None,
    locks: Optional[OwnerLockRegistry] = None,
) -> EdgeStore:
    return STORES[OwnerType(owner_type)](db, clock=clock, locks=locks)
