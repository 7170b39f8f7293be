"""Immutable values passed between the rule engine components.

Rule evaluation never touches ORM rows: the lifecycle manager loads a contract
once, freezes it into a ``ContractSnapshot`` and hands that snapshot to the
engine, so concurrent requests can evaluate freely and only the final
compare-and-set touches the store.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from models.contract import ConsentContract, ContractRule, ContractStatus, RuleAction


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _frozen_mapping(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class ContractSnapshot:
    id: uuid.UUID
    contract_id: str
    patient_id: str
    requester_id: str
    data_types: tuple[str, ...]
    purpose: str
    duration: str
    conditions: Mapping[str, Any]
    status: ContractStatus
    created_at: datetime | None
    expires_at: datetime
    approved_at: datetime | None = None
    revoked_at: datetime | None = None
    revocation_reason: str | None = None

    @classmethod
    def from_model(cls, contract: ConsentContract) -> "ContractSnapshot":
        return cls(
            id=contract.id,
            contract_id=contract.contract_id,
            patient_id=contract.patient_id,
            requester_id=contract.requester_id,
            data_types=tuple(contract.data_types or ()),
            purpose=contract.purpose,
            duration=contract.duration,
            conditions=_frozen_mapping(contract.conditions),
            status=ContractStatus(contract.status),
            created_at=as_utc(contract.created_at),
            expires_at=as_utc(contract.expires_at),
            approved_at=as_utc(contract.approved_at),
            revoked_at=as_utc(contract.revoked_at),
            revocation_reason=contract.revocation_reason,
        )

    def as_context_dict(self) -> dict[str, Any]:
        """Fields a rule condition may reference under ``contract.``."""
        return {
            "id": str(self.id),
            "contract_id": self.contract_id,
            "patient_id": self.patient_id,
            "requester_id": self.requester_id,
            "data_types": list(self.data_types),
            "purpose": self.purpose,
            "duration": self.duration,
            "conditions": dict(self.conditions),
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
        }


@dataclass(frozen=True)
class RuleDefinition:
    rule_id: str
    name: str
    condition: str
    action: RuleAction
    parameters: Mapping[str, Any] = field(default_factory=dict)
    priority: int = 0
    is_active: bool = True

    @classmethod
    def from_model(cls, rule: ContractRule) -> "RuleDefinition":
        return cls(
            rule_id=rule.rule_id,
            name=rule.name,
            condition=rule.condition,
            action=RuleAction(rule.action),
            parameters=_frozen_mapping(rule.parameters),
            priority=int(rule.priority),
            is_active=bool(rule.is_active),
        )


@dataclass(frozen=True)
class Transition:
    from_status: ContractStatus
    to_status: ContractStatus
    rule_id: str


@dataclass(frozen=True)
class NotificationRequest:
    recipient: str
    message: str
    contract_id: str
    rule_id: str
