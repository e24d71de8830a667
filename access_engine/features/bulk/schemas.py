"""
Pydantic schemas for bulk edge operations.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class BulkAssignRequest(BaseModel):
    permission_ids: List[str] = Field(..., min_length=1, description="Duplicates are ignored")
    is_granted: bool = True
    expires_at: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=500, description="User overrides only")


class BulkRemoveRequest(BaseModel):
    permission_ids: List[str] = Field(..., min_length=1)


class SyncRequest(BaseModel):
    """The complete desired set; an empty list removes every current edge."""
    permission_ids: List[str] = Field(default_factory=list)


class CopyRequest(BaseModel):
    source_owner_id: str = Field(..., min_length=1, max_length=64)
    target_owner_id: str = Field(..., min_length=1, max_length=64)
    allow_empty: bool = Field(False, description="Allow clearing the target when the source has no edges")


class BulkResultResponse(BaseModel):
    added: List[str]
    removed: List[str]
    updated: List[str]
    unchanged: List[str]
