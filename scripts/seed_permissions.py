"""
Seed script to populate default permissions and roles.

Run this script after database initialization to create:
- Default permission catalog
- Default roles
- Initial role-permission grants

Existing codes and roles are reused and each default role is synced back to
its default grants, so the script can be re-run.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_engine.core.database.engine import AsyncSessionLocal, init_db
from access_engine.features.assignments.store import OwnerType
from access_engine.features.bulk.manager import BulkOperationsManager
from access_engine.features.permissions.catalog import PermissionCatalog
from access_engine.features.permissions.models import Permission, Role
from access_engine.utils import get_logger


log = get_logger(__name__)

SEED_ACTOR = "system:seed"

DEFAULT_PERMISSIONS = [
    # Employees
    ("EMPLOYEE.CREATE", "Create employees", "employees", "create", ""),
    ("EMPLOYEE.READ", "View employees", "employees", "read", "company/{company_id}/employees"),
    ("EMPLOYEE.UPDATE", "Update employees", "employees", "update", "company/{company_id}/employees"),
    ("EMPLOYEE.DELETE", "Delete employees", "employees", "delete", "company/{company_id}/employees"),
    ("EMPLOYEE.EXPORT", "Export employees", "employees", "export", ""),

    # Companies
    ("COMPANY.CREATE", "Create companies", "companies", "create", ""),
    ("COMPANY.READ", "View companies", "companies", "read", ""),
    ("COMPANY.UPDATE", "Update companies", "companies", "update", "company/{company_id}"),
    ("COMPANY.DELETE", "Delete companies", "companies", "delete", "company/{company_id}"),

    # Departments and designations
    ("DEPARTMENT.CREATE", "Create departments", "departments", "create", ""),
    ("DEPARTMENT.READ", "View departments", "departments", "read", ""),
    ("DEPARTMENT.UPDATE", "Update departments", "departments", "update", ""),
    ("DEPARTMENT.DELETE", "Delete departments", "departments", "delete", ""),
    ("DESIGNATION.READ", "View designations", "departments", "read", ""),
    ("DESIGNATION.MANAGE", "Manage designations", "departments", "manage", ""),

    # Attendance
    ("ATTENDANCE.READ", "View attendance", "attendance", "read", "company/{company_id}/attendance"),
    ("ATTENDANCE.UPDATE", "Correct attendance records", "attendance", "update", "company/{company_id}/attendance"),
    ("ATTENDANCE.APPROVE", "Approve attendance", "attendance", "approve", "company/{company_id}/attendance"),

    # Reports
    ("REPORTS.READ", "View reports", "reports", "read", ""),
    ("REPORTS.EXPORT", "Export reports", "reports", "export", ""),

    # Permission administration (used by this service's own routes)
    ("PERMISSIONS.READ", "View permissions and grants", "permissions", "read", ""),
    ("PERMISSIONS.CREATE", "Create permissions", "permissions", "create", ""),
    ("PERMISSIONS.UPDATE", "Update permissions", "permissions", "update", ""),
    ("PERMISSIONS.ASSIGN", "Assign permissions to roles and users", "permissions", "assign", ""),
    ("ROLES.READ", "View roles", "roles", "read", ""),
    ("ROLES.MANAGE", "Create and deactivate roles", "roles", "manage", ""),
    ("AUDIT.READ", "View audit logs", "audit", "read", ""),
]


DEFAULT_ROLES = {
    "Admin": {
        "description": "Administrator with every permission",
        "permissions": "ALL",
    },
    "HR Manager": {
        "description": "Human resources manager",
        "permissions": [
            "EMPLOYEE.CREATE", "EMPLOYEE.READ", "EMPLOYEE.UPDATE", "EMPLOYEE.DELETE", "EMPLOYEE.EXPORT",
            "COMPANY.READ",
            "DEPARTMENT.CREATE", "DEPARTMENT.READ", "DEPARTMENT.UPDATE",
            "DESIGNATION.READ", "DESIGNATION.MANAGE",
            "ATTENDANCE.READ", "ATTENDANCE.UPDATE", "ATTENDANCE.APPROVE",
            "REPORTS.READ", "REPORTS.EXPORT",
            "PERMISSIONS.READ", "ROLES.READ",
        ],
    },
    "Manager": {
        "description": "Line manager",
        "permissions": [
            "EMPLOYEE.READ", "EMPLOYEE.UPDATE", "EMPLOYEE.DELETE",
            "DEPARTMENT.READ", "DESIGNATION.READ",
            "ATTENDANCE.READ", "ATTENDANCE.APPROVE",
            "REPORTS.READ",
        ],
    },
    "IT": {
        "description": "IT staff administering the permission system",
        "permissions": [
            "PERMISSIONS.READ", "PERMISSIONS.CREATE", "PERMISSIONS.UPDATE", "PERMISSIONS.ASSIGN",
            "ROLES.READ", "ROLES.MANAGE", "AUDIT.READ",
            "DESIGNATION.READ", "DESIGNATION.MANAGE",
        ],
    },
    "Employee": {
        "description": "Regular employee",
        "permissions": ["COMPANY.READ", "DEPARTMENT.READ", "ATTENDANCE.READ"],
    },
}


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """Create missing catalog entries; returns every seeded permission by code."""
    catalog = PermissionCatalog(db)
    permissions_map: dict[str, Permission] = {}

    for code, name, module, action, resource_template in DEFAULT_PERMISSIONS:
        permission = await catalog.find_by_code(code)
        if permission is None:
            permission = await catalog.create(
                code=code,
                name=name,
                module=module,
                action=action,
                resource_template=resource_template,
                created_by=SEED_ACTOR,
            )
        else:
            log.debug(f"Permission '{code}' already exists")
        permissions_map[code] = permission

    log.info(f"Catalog holds {len(permissions_map)} default permissions")
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]) -> None:
    """Create missing roles and sync each one to its default permission set."""
    catalog = PermissionCatalog(db)
    bulk = BulkOperationsManager(db)

    for role_name, role_config in DEFAULT_ROLES.items():
        result = await db.execute(select(Role).where(Role.name == role_name))
        role = result.scalars().first()
        if role is None:
            role = await catalog.create_role(role_name, role_config["description"], created_by=SEED_ACTOR)

        if role_config["permissions"] == "ALL":
            codes = list(permissions_map)
        else:
            codes = []
            for code in role_config["permissions"]:
                if code in permissions_map:
                    codes.append(code)
                else:
                    log.warning(f"Permission '{code}' not found for role '{role_name}'")

        outcome = await bulk.sync(
            OwnerType.ROLE, role.id, [permissions_map[code].id for code in codes], assigned_by=SEED_ACTOR
        )
        log.info(f"Role '{role_name}': {outcome.summary()}")


async def main():
    """Main function to seed permissions and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        permissions_map = await seed_permissions(db)
        await seed_roles(db, permissions_map)

    log.info("Permission seeding completed successfully!")
    log.info("")
    log.info("Default roles:")
    for role_name, role_config in DEFAULT_ROLES.items():
        log.info(f"  - {role_name}: {role_config['description']}")


if __name__ == "__main__":
    asyncio.run(main())
