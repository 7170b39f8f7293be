"""Store interfaces consumed by the engine and their SQLAlchemy implementations.

Every SQL store wraps one request-scoped ``Session``; committing and rolling
back is the unit of work's job (the same session), never a store's.
"""

from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Protocol, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from core.contract_types import RuleDefinition
from core.failure_modes import store_guard
from models.access_log import AccessLogEntry
from models.audit import AuditTrailEntry
from models.contract import ConsentContract, ContractRule, ContractStatus
from models.party import Patient, User


@dataclass(frozen=True)
class AuditRecord:
    contract_uuid: uuid.UUID
    action: str
    old_values: Mapping[str, Any] | None
    new_values: Mapping[str, Any] | None
    changed_by: str
    change_reason: str
    timestamp: datetime


@dataclass(frozen=True)
class AccessLogRecord:
    contract_uuid: uuid.UUID
    actor_id: str
    action: str
    data_type: str
    timestamp: datetime
    resource_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    success: bool = True
    error_message: str | None = None


@dataclass
class Page:
    items: list[Any]
    count: int
    limit: int
    offset: int


class UnitOfWork(Protocol):
    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class ContractStore(Protocol):
    def add(self, contract: ConsentContract) -> ConsentContract: ...

    def get(self, contract_uuid: uuid.UUID) -> ConsentContract | None: ...

    def get_by_reference(self, reference: str) -> ConsentContract | None: ...

    def list_for_patient(
        self, patient_id: str, *, status: ContractStatus | None, limit: int, offset: int
    ) -> Page: ...

    def compare_and_set_status(
        self,
        contract_uuid: uuid.UUID,
        expected: ContractStatus,
        new: ContractStatus,
        changes: Mapping[str, Any],
    ) -> bool: ...

    def status_counts(self) -> dict[str, int]: ...

    def data_type_counts(self) -> dict[str, int]: ...

    def recent_with_parties(self, limit: int = 10) -> list[tuple[ConsentContract, Patient | None, User | None]]: ...


class RuleStore(Protocol):
    def add_rules(self, contract_uuid: uuid.UUID, rules: Sequence[RuleDefinition]) -> None: ...

    def rules_for(self, contract_uuid: uuid.UUID) -> list[RuleDefinition]: ...


class AuditStore(Protocol):
    def append(self, record: AuditRecord) -> Any: ...

    def list_for(self, contract_uuid: uuid.UUID, *, limit: int, offset: int) -> Page: ...

    def action_counts_since(self, since: datetime) -> dict[str, int]: ...


class AccessLogStore(Protocol):
    def append(self, record: AccessLogRecord) -> Any: ...

    def list_for(self, contract_uuid: uuid.UUID, *, limit: int, offset: int) -> Page: ...


class PartyDirectory(Protocol):
    def patient_exists(self, patient_id: str) -> bool: ...

    def requester_exists(self, requester_id: str) -> bool: ...


class SqlContractStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def add(self, contract: ConsentContract) -> ConsentContract:
        with store_guard("contracts.add"):
            self.db.add(contract)
            self.db.flush()
        return contract

    def get(self, contract_uuid: uuid.UUID) -> ConsentContract | None:
        with store_guard("contracts.get"):
            return self.db.scalar(
                select(ConsentContract)
                .where(ConsentContract.id == contract_uuid)
                .execution_options(populate_existing=True)
            )

    def get_by_reference(self, reference: str) -> ConsentContract | None:
        with store_guard("contracts.get_by_reference"):
            return self.db.scalar(
                select(ConsentContract)
                .where(ConsentContract.contract_id == reference)
                .execution_options(populate_existing=True)
            )

    def list_for_patient(
        self, patient_id: str, *, status: ContractStatus | None, limit: int, offset: int
    ) -> Page:
        stmt = select(ConsentContract).where(ConsentContract.patient_id == patient_id)
        count_stmt = select(func.count()).select_from(ConsentContract).where(ConsentContract.patient_id == patient_id)
        if status is not None:
            stmt = stmt.where(ConsentContract.status == status)
            count_stmt = count_stmt.where(ConsentContract.status == status)
        with store_guard("contracts.list_for_patient"):
            total = int(self.db.scalar(count_stmt) or 0)
            items = list(
                self.db.scalars(
                    stmt.order_by(ConsentContract.created_at.desc(), ConsentContract.contract_id.desc())
                    .offset(offset)
                    .limit(limit)
                ).all()
            )
        return Page(items=items, count=total, limit=limit, offset=offset)

    def compare_and_set_status(
        self,
        contract_uuid: uuid.UUID,
        expected: ContractStatus,
        new: ContractStatus,
        changes: Mapping[str, Any],
    ) -> bool:
        stmt = (
            update(ConsentContract)
            .where(ConsentContract.id == contract_uuid, ConsentContract.status == expected)
            .values(status=new, **dict(changes))
            .execution_options(synchronize_session=False)
        )
        with store_guard("contracts.compare_and_set_status"):
            result = self.db.execute(stmt)
        return result.rowcount == 1

    def status_counts(self) -> dict[str, int]:
        with store_guard("contracts.status_counts"):
            rows = self.db.execute(
                select(ConsentContract.status, func.count()).group_by(ConsentContract.status)
            ).all()
        return {ContractStatus(status).value: int(count) for status, count in rows}

    def data_type_counts(self) -> dict[str, int]:
        counter: Counter[str] = Counter()
        with store_guard("contracts.data_type_counts"):
            for data_types in self.db.scalars(select(ConsentContract.data_types)):
                counter.update(data_types or [])
        return dict(counter.most_common())

    def recent_with_parties(self, limit: int = 10) -> list[tuple[ConsentContract, Patient | None, User | None]]:
        stmt = (
            select(ConsentContract, Patient, User)
            .outerjoin(Patient, ConsentContract.patient_id == Patient.id)
            .outerjoin(User, ConsentContract.requester_id == User.id)
            .order_by(ConsentContract.created_at.desc(), ConsentContract.contract_id.desc())
            .limit(limit)
        )
        with store_guard("contracts.recent"):
            return [tuple(row) for row in self.db.execute(stmt).all()]


class SqlRuleStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def add_rules(self, contract_uuid: uuid.UUID, rules: Sequence[RuleDefinition]) -> None:
        with store_guard("rules.add"):
            for position, rule in enumerate(rules):
                self.db.add(
                    ContractRule(
                        contract_uuid=contract_uuid,
                        rule_id=rule.rule_id,
                        position=position,
                        name=rule.name,
                        condition=rule.condition,
                        action=rule.action,
                        parameters=dict(rule.parameters),
                        priority=rule.priority,
                        is_active=rule.is_active,
                    )
                )
            self.db.flush()

    def rules_for(self, contract_uuid: uuid.UUID) -> list[RuleDefinition]:
        with store_guard("rules.rules_for"):
            rows = self.db.scalars(
                select(ContractRule)
                .where(ContractRule.contract_uuid == contract_uuid)
                .order_by(ContractRule.position.asc())
            ).all()
        return [RuleDefinition.from_model(row) for row in rows]


class SqlAuditStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def append(self, record: AuditRecord) -> AuditTrailEntry:
        entry = AuditTrailEntry(
            contract_id=record.contract_uuid,
            action=record.action,
            old_values=dict(record.old_values) if record.old_values is not None else None,
            new_values=dict(record.new_values) if record.new_values is not None else None,
            changed_by=record.changed_by,
            change_reason=record.change_reason,
            timestamp=record.timestamp,
        )
        with store_guard("audit.append"):
            self.db.add(entry)
            self.db.flush()
        return entry

    def list_for(self, contract_uuid: uuid.UUID, *, limit: int, offset: int) -> Page:
        base_filter = AuditTrailEntry.contract_id == contract_uuid
        with store_guard("audit.list_for"):
            total = int(self.db.scalar(select(func.count()).select_from(AuditTrailEntry).where(base_filter)) or 0)
            items = list(
                self.db.scalars(
                    select(AuditTrailEntry)
                    .where(base_filter)
                    .order_by(AuditTrailEntry.timestamp.asc(), AuditTrailEntry.id.asc())
                    .offset(offset)
                    .limit(limit)
                ).all()
            )
        return Page(items=items, count=total, limit=limit, offset=offset)

    def action_counts_since(self, since: datetime) -> dict[str, int]:
        with store_guard("audit.action_counts_since"):
            rows = self.db.execute(
                select(AuditTrailEntry.action, func.count())
                .where(AuditTrailEntry.timestamp >= since)
                .group_by(AuditTrailEntry.action)
                .order_by(func.count().desc())
            ).all()
        return {action: int(count) for action, count in rows}


class SqlAccessLogStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def append(self, record: AccessLogRecord) -> AccessLogEntry:
        entry = AccessLogEntry(
            contract_id=record.contract_uuid,
            actor_id=record.actor_id,
            action=record.action,
            data_type=record.data_type,
            resource_id=record.resource_id,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            timestamp=record.timestamp,
            success=record.success,
            error_message=record.error_message,
        )
        with store_guard("access_logs.append"):
            self.db.add(entry)
            self.db.flush()
        return entry

    def list_for(self, contract_uuid: uuid.UUID, *, limit: int, offset: int) -> Page:
        base_filter = AccessLogEntry.contract_id == contract_uuid
        with store_guard("access_logs.list_for"):
            total = int(self.db.scalar(select(func.count()).select_from(AccessLogEntry).where(base_filter)) or 0)
            items = list(
                self.db.scalars(
                    select(AccessLogEntry)
                    .where(base_filter)
                    .order_by(AccessLogEntry.timestamp.desc(), AccessLogEntry.id.desc())
                    .offset(offset)
                    .limit(limit)
                ).all()
            )
        return Page(items=items, count=total, limit=limit, offset=offset)


class SqlPartyDirectory:
    def __init__(self, db: Session) -> None:
        self.db = db

    def patient_exists(self, patient_id: str) -> bool:
        with store_guard("parties.patient_exists"):
            return self.db.get(Patient, patient_id) is not None

    def requester_exists(self, requester_id: str) -> bool:
        with store_guard("parties.requester_exists"):
            return self.db.get(User, requester_id) is not None
