"""
Permission catalog, roles and the two permission edge tables.

- Permission: catalog entry identified by a stable, globally unique code
- Role: named bundle of permission edges
- RolePermission / UserPermission: grant or deny edges, unique per (owner, permission)
- UserRole: role membership; owned by the identity side, only read here
"""
from datetime import datetime
from sqlalchemy import String, Boolean, ForeignKey, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from access_engine.core.database.base import Base, TimestampMixin, UTCDateTime, generate_ulid


class Permission(Base, TimestampMixin):
    """
    Atomic named capability.

    Examples:
    - code="EMPLOYEE.DELETE", module="employees", action="delete"
    - code="ATTENDANCE.READ", module="attendance", action="read",
      resource_template="company/{company_id}/attendance"
    """
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    module: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Empty string when the permission is not resource-scoped
    resource_template: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    # Deactivated permissions stay referenced but resolve as denied
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, code={self.code!r}, active={self.is_active})>"


class Role(Base, TimestampMixin):
    """
    Role model for grouping permission edges.

    Examples: Admin, HR Manager, Manager, Employee
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, active={self.is_active})>"


class RolePermission(Base):
    __tablename__ = "role_permissions"
    __table_args__ = (UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # No FK: edges may outlive their permission and are treated as weak references
    permission_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)

    is_granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())
    assigned_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<RolePermission(role_id={self.role_id}, permission_id={self.permission_id}, granted={self.is_granted})>"


class UserPermission(Base):
    """Direct override; always outranks role-derived results for the same permission."""
    __tablename__ = "user_permissions"
    __table_args__ = (UniqueConstraint("user_id", "permission_id", name="uq_user_permission"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    # Opaque id from the identity provider
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    permission_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)

    is_granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())
    assigned_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<UserPermission(user_id={self.user_id}, permission_id={self.permission_id}, granted={self.is_granted})>"


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_user_role"),)

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())
    assigned_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<UserRole(user_id={self.user_id}, role_id={self.role_id})>"
