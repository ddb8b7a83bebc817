"""
Marker capabilities.

Entities opt into soft deletion and creation stamping by deriving from these
mixins. Fields declared here are excluded from entity equality, and the change
tracker stamps them on save.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SoftDeleteEntity(BaseModel):
    """Entity that is deactivated instead of physically removed."""
    active: bool = Field(default=True, description="False marks the entity as logically deleted")
    updated: Optional[datetime] = Field(default=None, description="Last save timestamp (UTC)")
    updated_by: str = Field(default="", max_length=50, description="Actor of the last save")


class AuditableEntity(BaseModel):
    """Entity that records who created it and when."""
    created_by: str = Field(default="", max_length=50)
    created_on: Optional[datetime] = None
