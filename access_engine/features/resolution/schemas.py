"""
Pydantic schemas for permission checks and effective permission sets.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict

from access_engine.features.resolution.effects import DecisionSource


class PermissionCheckRequest(BaseModel):
    """Schema for checking if a user holds a permission code."""
    user_id: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1, max_length=100, description="Permission code (e.g., 'EMPLOYEE.DELETE')")
    resource: Optional[str] = Field(None, description="Resource instance the caller intends to act on")
    at: Optional[datetime] = Field(None, description="Evaluate at this instant instead of now")


class PermissionDecisionResponse(BaseModel):
    granted: bool
    source: DecisionSource
    reason: str
    code: Optional[str] = None
    permission_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    override_reason: Optional[str] = None
    resource_template: str = ""
    resource: Optional[str] = None
    evaluation_unavailable: bool = False

    model_config = ConfigDict(from_attributes=True)


class EffectivePermissionResponse(BaseModel):
    permission_id: str
    code: str
    name: str
    module: str
    action: str
    resource_template: str
    source: DecisionSource
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EffectivePermissionsResponse(BaseModel):
    """Granted permissions partitioned by where the grant came from."""
    user_id: str
    evaluated_at: datetime
    role_ids: List[str]
    direct: List[EffectivePermissionResponse]
    role: List[EffectivePermissionResponse]
    effective: List[EffectivePermissionResponse]
    by_module: Dict[str, List[str]]

    model_config = ConfigDict(from_attributes=True)
