from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from models.contract import ContractStatus, RuleAction


class RuleIn(BaseModel):
    rule_id: Optional[str] = Field(default=None, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    condition: str = Field(min_length=1, max_length=2000)
    action: RuleAction
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    is_active: bool = True


class ContractCreate(BaseModel):
    patient_id: str = Field(min_length=1, max_length=64)
    requester_id: str = Field(min_length=1, max_length=64)
    data_types: list[str] = Field(min_length=1)
    purpose: str = Field(min_length=1)
    duration: str = Field(min_length=1, max_length=50)
    conditions: dict[str, Any] = Field(default_factory=dict)
    rules: list[RuleIn] = Field(default_factory=list)


class RuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: str
    name: str
    condition: str
    action: RuleAction
    parameters: dict[str, Any]
    priority: int
    is_active: bool


class ContractOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contract_id: str
    patient_id: str
    requester_id: str
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    data_types: list[str]
    purpose: str
    duration: str
    conditions: dict[str, Any]
    status: ContractStatus
    rules: list[RuleOut] = Field(default_factory=list)
    created_by: str
    created_at: datetime
    approved_at: Optional[datetime] = None
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    updated_at: datetime


class ExecuteRequest(BaseModel):
    action: str = Field(min_length=1, max_length=100)
    parameters: dict[str, Any] = Field(default_factory=dict)


class ExecutedRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: str
    action: str
    outcome: str
    reason: Optional[str] = None


class RuleWarningOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: str
    message: str


class ExecutionOut(BaseModel):
    contract_id: str
    action: str
    executed_rules: list[ExecutedRuleOut]
    actions: list[str]
    warnings: list[RuleWarningOut]
    status_changed: bool
    previous_status: ContractStatus
    new_status: Optional[ContractStatus] = None
    notifications_queued: int = 0
    notifications_delivered: int = 0
    executed_at: datetime


class RevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class RecentContractOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    contract_id: str
    status: str
    purpose: str
    created_at: Optional[datetime] = None
    patient_name: Optional[str] = None
    requester_name: Optional[str] = None


class DashboardOverviewOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_contracts: int
    status_counts: dict[str, int]
    data_type_counts: dict[str, int]
    recent_contracts: list[RecentContractOut]
    audit_activity: dict[str, int]
    generated_at: datetime
