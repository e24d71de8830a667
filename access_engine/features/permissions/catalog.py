"""
Permission catalog: canonical registry of permission codes, plus the role registry.

Catalog methods commit their own unit of work. Deactivation never deletes;
resolution filters inactive permissions at read time.
"""
import re
from typing import Any, Iterable, Optional
from sqlalchemy import select, func, or_, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.core.database.engine import storage_errors
from access_engine.core.exceptions import ConflictError, DuplicateCodeError, NotFoundError, ValidationError
from access_engine.core.pagination import Page, check_paging
from access_engine.core import config
from access_engine.core.database.base import generate_ulid
from access_engine.features.audit.service import record_audit
from access_engine.features.permissions.models import Permission, Role, RolePermission, UserPermission
from access_engine.utils import get_logger


log = get_logger(__name__)

CODE_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]+$")

UPDATABLE_FIELDS = frozenset({"code", "name", "description", "module", "action", "resource_template", "is_active"})

SORT_COLUMNS = {
    "name": Permission.name,
    "code": Permission.code,
    "module": Permission.module,
    "createdat": Permission.created_at,
    "created_at": Permission.created_at,
}


def _require_text(field: str, value: Optional[str], max_length: int) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field} is required", {"field": field})
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters", {"field": field})
    return value


def validate_code(code: Optional[str]) -> str:
    code = _require_text("code", code, 100)
    if not CODE_PATTERN.match(code):
        raise ValidationError(
            "Permission code must contain only letters, digits, underscores, dots, colons and hyphens",
            {"code": code},
        )
    return code


class PermissionCatalog:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def create(
        self,
        code: str,
        name: str,
        module: str,
        action: str,
        resource_template: str = "",
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Permission:
        code = validate_code(code)
        permission = Permission(
            id=generate_ulid(),
            code=code,
            name=_require_text("name", name, 100),
            module=_require_text("module", module, 50),
            action=_require_text("action", action, 50).lower(),
            resource_template=(resource_template or "").strip(),
            description=description,
            created_by=created_by,
        )

        with storage_errors("create permission"):
            if await self.find_by_code(code) is not None:
                raise DuplicateCodeError(code)

            self.db.add(permission)
            record_audit(
                self.db, created_by, "create", "permission", permission.id,
                {"code": code, "module": permission.module, "action": permission.action},
            )
            try:
                await self.db.commit()
            except IntegrityError:
                # Lost a race with a concurrent create of the same code
                await self.db.rollback()
                raise DuplicateCodeError(code)
            await self.db.refresh(permission)

        log.info(f"Permission created: {code} by {created_by}")
        return permission

    async def get(self, permission_id: str) -> Permission:
        with storage_errors("load permission"):
            permission = await self.db.get(Permission, permission_id)
        if permission is None:
            raise NotFoundError("Permission", permission_id)
        return permission

    async def find_by_code(self, code: str) -> Optional[Permission]:
        """Weak lookup: absence is a normal answer, not an error."""
        with storage_errors("load permission by code"):
            result = await self.db.execute(select(Permission).where(Permission.code == code))
        return result.scalars().first()

    async def is_referenced(self, permission_id: str) -> bool:
        stmt = select(
            or_(
                exists().where(RolePermission.permission_id == permission_id),
                exists().where(UserPermission.permission_id == permission_id),
            )
        )
        with storage_errors("check permission references"):
            return bool((await self.db.execute(stmt)).scalar())

    async def existing_ids(self, permission_ids: Iterable[str]) -> dict[str, Permission]:
        ids = list(set(permission_ids))
        if not ids:
            return {}
        with storage_errors("load permissions"):
            result = await self.db.execute(select(Permission).where(Permission.id.in_(ids)))
        return {permission.id: permission for permission in result.scalars().all()}

    async def update(self, permission_id: str, fields: dict[str, Any], updated_by: Optional[str] = None) -> Permission:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {sorted(unknown)}", {"fields": sorted(unknown)})

        changes: dict[str, Any] = {}
        new_code = validate_code(fields["code"]) if fields.get("code") is not None else None
        for field, max_length in (("name", 100), ("module", 50), ("action", 50)):
            if fields.get(field) is not None:
                value = _require_text(field, fields[field], max_length)
                changes[field] = value.lower() if field == "action" else value
        if "description" in fields:
            changes["description"] = fields["description"]
        if fields.get("resource_template") is not None:
            changes["resource_template"] = fields["resource_template"].strip()
        if fields.get("is_active") is not None:
            changes["is_active"] = bool(fields["is_active"])

        permission = await self.get(permission_id)
        if new_code is not None and new_code != permission.code:
            # Codes are immutable in meaning once any edge references them
            if await self.is_referenced(permission_id):
                raise ConflictError(
                    f"Permission '{permission.code}' is referenced by role or user edges; its code cannot change",
                    {"code": permission.code},
                )
            if await self.find_by_code(new_code) is not None:
                raise DuplicateCodeError(new_code)
            changes["code"] = new_code

        for key, value in changes.items():
            setattr(permission, key, value)
        permission.updated_by = updated_by

        final_code = permission.code
        record_audit(self.db, updated_by, "update", "permission", permission_id, changes)
        with storage_errors("update permission"):
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                raise DuplicateCodeError(final_code)
            await self.db.refresh(permission)

        log.info(f"Permission updated: {final_code} by {updated_by}")
        return permission

    async def deactivate(self, permission_id: str, updated_by: Optional[str] = None) -> Permission:
        return await self.update(permission_id, {"is_active": False}, updated_by)

    async def activate(self, permission_id: str, updated_by: Optional[str] = None) -> Permission:
        return await self.update(permission_id, {"is_active": True}, updated_by)

    async def query(
        self,
        module: Optional[str] = None,
        action: Optional[str] = None,
        resource_template: Optional[str] = None,
        code: Optional[str] = None,
        code_prefix: Optional[str] = None,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: int = 1,
        page_size: int = config.DEFAULT_PAGE_SIZE,
        sort_by: str = "name",
        sort_direction: str = "asc",
    ) -> Page[Permission]:
        check_paging(page, page_size)
        stmt = select(Permission)

        if module:
            stmt = stmt.where(Permission.module == module)
        if action:
            stmt = stmt.where(Permission.action == action.lower())
        if resource_template is not None:
            stmt = stmt.where(Permission.resource_template == resource_template)
        if code:
            stmt = stmt.where(Permission.code == code)
        if code_prefix:
            stmt = stmt.where(Permission.code.startswith(code_prefix, autoescape=True))
        if search:
            stmt = stmt.where(
                or_(
                    Permission.name.icontains(search, autoescape=True),
                    Permission.code.icontains(search, autoescape=True),
                    Permission.description.icontains(search, autoescape=True),
                )
            )
        if is_active is not None:
            stmt = stmt.where(Permission.is_active == is_active)

        column = SORT_COLUMNS.get((sort_by or "name").lower(), Permission.name)
        ordering = column.desc() if (sort_direction or "asc").lower() == "desc" else column.asc()

        result_page: Page[Permission] = Page(page=page, page_size=page_size)
        with storage_errors("query permissions"):
            count_stmt = select(func.count()).select_from(stmt.subquery())
            result_page.total = (await self.db.execute(count_stmt)).scalar() or 0
            result = await self.db.execute(
                stmt.order_by(ordering, Permission.id).offset(result_page.offset).limit(page_size)
            )
        result_page.items = list(result.scalars().all())
        return result_page

    async def by_module(self, module: str) -> list[Permission]:
        stmt = select(Permission).where(Permission.module == module, Permission.is_active.is_(True))
        with storage_errors("list permissions by module"):
            result = await self.db.execute(stmt.order_by(Permission.name))
        return list(result.scalars().all())

    async def by_action(self, action: str) -> list[Permission]:
        stmt = select(Permission).where(Permission.action == action.lower(), Permission.is_active.is_(True))
        with storage_errors("list permissions by action"):
            result = await self.db.execute(stmt.order_by(Permission.name))
        return list(result.scalars().all())

    async def _distinct(self, column) -> list[str]:
        with storage_errors("list distinct catalog values"):
            result = await self.db.execute(select(column).distinct().order_by(column))
        return [value for value in result.scalars().all() if value]

    async def available_modules(self) -> list[str]:
        return await self._distinct(Permission.module)

    async def available_actions(self) -> list[str]:
        return await self._distinct(Permission.action)

    async def available_resources(self) -> list[str]:
        return await self._distinct(Permission.resource_template)

    async def statistics(self) -> dict[str, Any]:
        with storage_errors("compute catalog statistics"):
            total = (await self.db.execute(select(func.count(Permission.id)))).scalar() or 0
            active = (
                await self.db.execute(select(func.count(Permission.id)).where(Permission.is_active.is_(True)))
            ).scalar() or 0
            role_edges = (await self.db.execute(select(func.count(RolePermission.id)))).scalar() or 0
            user_edges = (await self.db.execute(select(func.count(UserPermission.id)))).scalar() or 0
            rows = await self.db.execute(
                select(Permission.module, func.count(Permission.id)).group_by(Permission.module)
            )
            by_module = {module: count for module, count in rows.all()}

        return {
            "total_permissions": total,
            "active_permissions": active,
            "inactive_permissions": total - active,
            "role_edges": role_edges,
            "user_edges": user_edges,
            "permissions_by_module": by_module,
        }

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def create_role(self, name: str, description: Optional[str] = None, created_by: Optional[str] = None) -> Role:
        role = Role(id=generate_ulid(), name=_require_text("name", name, 50), description=description)

        with storage_errors("create role"):
            existing = await self.db.execute(select(Role).where(Role.name == role.name))
            if existing.scalars().first() is not None:
                raise ConflictError(f"Role with name '{role.name}' already exists", {"name": role.name})

            self.db.add(role)
            record_audit(self.db, created_by, "create", "role", role.id, {"name": role.name})
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                raise ConflictError(f"Role with name '{role.name}' already exists", {"name": role.name})
            await self.db.refresh(role)

        log.info(f"Role created: {role.name} by {created_by}")
        return role

    async def get_role(self, role_id: str) -> Role:
        with storage_errors("load role"):
            role = await self.db.get(Role, role_id)
        if role is None:
            raise NotFoundError("Role", role_id)
        return role

    async def list_roles(self, include_inactive: bool = False) -> list[Role]:
        stmt = select(Role)
        if not include_inactive:
            stmt = stmt.where(Role.is_active.is_(True))
        with storage_errors("list roles"):
            result = await self.db.execute(stmt.order_by(Role.name))
        return list(result.scalars().all())

    async def set_role_active(self, role_id: str, active: bool, updated_by: Optional[str] = None) -> Role:
        role = await self.get_role(role_id)
        role.is_active = active
        record_audit(self.db, updated_by, "activate" if active else "deactivate", "role", role_id)
        with storage_errors("update role"):
            await self.db.commit()
            await self.db.refresh(role)
        log.info(f"Role {role.name} {'activated' if active else 'deactivated'} by {updated_by}")
        return role
