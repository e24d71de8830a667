"""
Pydantic schemas for the permission catalog and roles.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from access_engine.features.permissions.catalog import CODE_PATTERN


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    code: str = Field(..., min_length=1, max_length=100, description="Stable unique code (e.g., 'EMPLOYEE.DELETE')")
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    module: str = Field(..., min_length=1, max_length=50, description="Owning module (e.g., 'employees')")
    action: str = Field(..., min_length=1, max_length=50, description="Action (e.g., 'read', 'delete')")
    resource_template: str = Field("", max_length=100, description="Resource pattern; empty when not resource-scoped")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        """Validate permission code format."""
        if not CODE_PATTERN.match(v.strip()):
            raise ValueError('Permission code must contain only letters, digits, underscores, dots, colons and hyphens')
        return v.strip()

    @field_validator('action')
    @classmethod
    def action_lowercase(cls, v: str) -> str:
        """Ensure action is lowercase."""
        return v.lower()


class PermissionUpdate(BaseModel):
    """Schema for updating a permission. Code changes are refused once the permission is referenced."""
    code: Optional[str] = Field(None, min_length=1, max_length=100)
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    module: Optional[str] = Field(None, min_length=1, max_length=50)
    action: Optional[str] = Field(None, min_length=1, max_length=50)
    resource_template: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str
    is_active: bool
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PermissionListResponse(BaseModel):
    items: List[PermissionResponse]
    total: int
    page: int
    page_size: int
    pages: int


class PermissionStatistics(BaseModel):
    total_permissions: int
    active_permissions: int
    inactive_permissions: int
    role_edges: int
    user_edges: int
    permissions_by_module: Dict[str, int]


# ============================================================================
# Role Schemas
# ============================================================================

class RoleCreate(BaseModel):
    """Schema for creating a new role."""
    name: str = Field(..., min_length=1, max_length=50, description="Unique role name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")

    @field_validator('name')
    @classmethod
    def name_format(cls, v: str) -> str:
        """Validate role name format."""
        if not v.replace('_', '').replace('-', '').replace(' ', '').isalnum():
            raise ValueError('Role name must contain only alphanumeric characters, spaces, underscores, and hyphens')
        return v.strip()


class RoleResponse(BaseModel):
    """Schema for role response."""
    id: str
    name: str
    description: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
