from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AccessLogCreate(BaseModel):
    action: str = Field(min_length=1, max_length=50)
    data_type: str = Field(min_length=1, max_length=50)
    resource_id: Optional[str] = Field(default=None, max_length=128)
    success: bool = True
    error_message: Optional[str] = None


class AccessLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contract_id: UUID
    actor_id: str
    action: str
    data_type: str
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime
    success: bool
    error_message: Optional[str] = None


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contract_id: UUID
    action: str
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    changed_by: str
    change_reason: Optional[str] = None
    timestamp: datetime
