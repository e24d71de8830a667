"""
Pydantic schemas for role and user permission edges.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict

from access_engine.features.assignments.store import OwnerType


class AssignPermissionRequest(BaseModel):
    """Grant or deny one permission to a role or user."""
    permission_id: str = Field(..., min_length=1, max_length=64)
    is_granted: bool = Field(True, description="False records an explicit deny")
    expires_at: Optional[datetime] = Field(None, description="Edge stops applying at this instant")
    reason: Optional[str] = Field(None, max_length=500, description="User overrides only")


class EdgeResponse(BaseModel):
    """An edge with its permission's metadata; metadata is null when the permission no longer exists."""
    id: str
    owner_type: OwnerType
    owner_id: str
    permission_id: str
    is_granted: bool
    assigned_at: datetime
    assigned_by: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None
    is_expired: bool
    permission_code: Optional[str] = None
    permission_name: Optional[str] = None
    module: Optional[str] = None
    action: Optional[str] = None
    resource_template: Optional[str] = None
    permission_active: Optional[bool] = None

    model_config = ConfigDict(from_attributes=True)


class EdgeListResponse(BaseModel):
    items: List[EdgeResponse]
    total: int
    page: int
    page_size: int
    pages: int


class RemoveEdgeResponse(BaseModel):
    owner_id: str
    permission_id: str
    removed: bool
