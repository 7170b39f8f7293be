"""Consent contract lifecycle: create, execute rules, revoke, query.

The lifecycle manager is the only component that changes a contract's status,
and it does so with a compare-and-set keyed on ``(id, expected status)``. A
miss means another request transitioned the contract after our snapshot was
taken; the whole execution is rolled back and reported as a conflict, never
retried here.
"""

from __future__ import annotations

import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy.orm import Session

from core.actions import ActionExecutor, oversized_access_fields
from core.audit_trail import SYSTEM_ACTOR, AuditRecorder
from core.conditions import ConditionEvaluator
from core.contract_types import ContractSnapshot, RuleDefinition, utc_now
from core.errors import ConflictError, ConsentEngineError, ContractValidationError, NotFoundError
from core.expiry import calculate_expiry, validate_duration
from core.failure_modes import record_operation_failure
from core.logging_utils import log_structured
from core.notifications import NotificationSink, LoggingNotificationSink, deliver_notifications
from core.observability import METRIC_TRANSITION_COMMITTED, METRIC_TRANSITION_CONFLICT, increment_metric
from core.rule_engine import ExecutedRule, RuleEngine, RuleWarning
from core.state_machine import REVOCABLE_STATUSES, can_transition
from core.stores import (
    AccessLogRecord,
    AccessLogStore,
    AuditStore,
    ContractStore,
    Page,
    PartyDirectory,
    RuleStore,
    SqlAccessLogStore,
    SqlAuditStore,
    SqlContractStore,
    SqlPartyDirectory,
    SqlRuleStore,
    UnitOfWork,
)
from models.contract import ConsentContract, ContractStatus, RuleAction

DEFAULT_REVOCATION_REASON = "No reason provided"
RECENT_CONTRACT_LIMIT = 10
AUDIT_ACTIVITY_WINDOW = timedelta(days=30)
MAX_PAGE_LIMIT = 100
_REFERENCE_ALPHABET = string.ascii_lowercase + string.digits


def generate_contract_reference(now: datetime) -> str:
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(9))
    return f"CONTRACT-{int(now.timestamp() * 1000)}-{suffix}"


@dataclass(frozen=True)
class ExecutionResult:
    contract_uuid: uuid.UUID
    contract_id: str
    action: str
    executed_rules: list[ExecutedRule]
    warnings: list[RuleWarning]
    status_changed: bool
    previous_status: ContractStatus
    new_status: ContractStatus | None
    executed_at: datetime
    notifications_delivered: int = 0
    notifications_queued: int = 0

    @property
    def executed_rule_ids(self) -> list[str]:
        return [item.rule_id for item in self.executed_rules]

    @property
    def actions(self) -> list[str]:
        return [item.action for item in self.executed_rules]


@dataclass(frozen=True)
class RecentContract:
    contract_id: str
    status: str
    purpose: str
    created_at: datetime | None
    patient_name: str | None
    requester_name: str | None


@dataclass(frozen=True)
class DashboardOverview:
    total_contracts: int
    status_counts: dict[str, int]
    data_type_counts: dict[str, int]
    recent_contracts: list[RecentContract]
    audit_activity: dict[str, int]
    generated_at: datetime


@dataclass
class _NormalizedRequest:
    patient_id: str
    requester_id: str
    data_types: list[str]
    purpose: str
    duration: str
    conditions: dict[str, Any] = field(default_factory=dict)
    rules: list[RuleDefinition] = field(default_factory=list)


def _require_text(name: str, value: Any) -> str:
    if value is None or not str(value).strip():
        raise ContractValidationError(f"Missing required field: {name}")
    return str(value).strip()


def normalize_rules(raw_rules: Sequence[RuleDefinition | Mapping[str, Any]] | None) -> list[RuleDefinition]:
    definitions: list[RuleDefinition] = []
    seen: set[str] = set()
    for position, raw in enumerate(raw_rules or []):
        if isinstance(raw, RuleDefinition):
            definition = raw
        else:
            action_name = raw.get("action")
            try:
                action = RuleAction(action_name)
            except ValueError:
                raise ContractValidationError(f"Unknown rule action: {action_name}") from None
            priority = raw.get("priority", 0)
            if isinstance(priority, bool) or not isinstance(priority, int):
                raise ContractValidationError(f"Rule priority must be an integer: {priority!r}")
            parameters = raw.get("parameters") or {}
            if not isinstance(parameters, Mapping):
                raise ContractValidationError("Rule parameters must be an object")
            rule_id = raw.get("rule_id") or raw.get("id") or f"rule-{position + 1:03d}"
            definition = RuleDefinition(
                rule_id=str(rule_id),
                name=_require_text("rules.name", raw.get("name")),
                condition=str(raw.get("condition") or ""),
                action=action,
                parameters=dict(parameters),
                priority=priority,
                is_active=bool(raw.get("is_active", True)),
            )
        if definition.action == RuleAction.LOG_ACCESS:
            oversized = oversized_access_fields(definition.parameters)
            if oversized:
                raise ContractValidationError(
                    f"Rule {definition.rule_id} parameters too long: {', '.join(oversized)}"
                )
        if definition.rule_id in seen:
            raise ContractValidationError(f"Duplicate rule id: {definition.rule_id}")
        seen.add(definition.rule_id)
        definitions.append(definition)
    return definitions


def _normalize_data_types(value: Any) -> list[str]:
    if not value or isinstance(value, (str, bytes)):
        raise ContractValidationError("Missing required field: data_types")
    normalized: list[str] = []
    for item in value:
        text = _require_text("data_types", item)
        if text not in normalized:
            normalized.append(text)
    return normalized


def _page_bounds(limit: int, offset: int) -> tuple[int, int]:
    if not 1 <= limit <= MAX_PAGE_LIMIT:
        raise ContractValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
    if offset < 0:
        raise ContractValidationError("offset must be >= 0")
    return limit, offset


class ContractLifecycleManager:
    def __init__(
        self,
        *,
        uow: UnitOfWork,
        contracts: ContractStore,
        rules: RuleStore,
        audit: AuditStore,
        access_logs: AccessLogStore,
        directory: PartyDirectory,
        notifier: NotificationSink | None = None,
        engine: RuleEngine | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.uow = uow
        self.contracts = contracts
        self.rules = rules
        self.audit_store = audit
        self.access_log_store = access_logs
        self.directory = directory
        self.notifier = notifier or LoggingNotificationSink()
        self.clock = clock
        self.engine = engine or RuleEngine(ConditionEvaluator(), ActionExecutor(access_logs, clock=clock))
        self.recorder = AuditRecorder(audit, clock=clock)

    # -- queries ---------------------------------------------------------

    def get(self, contract_ref: uuid.UUID | str) -> ConsentContract:
        contract = None
        try:
            contract_uuid = contract_ref if isinstance(contract_ref, uuid.UUID) else uuid.UUID(str(contract_ref))
        except ValueError:
            contract = self.contracts.get_by_reference(str(contract_ref))
        else:
            contract = self.contracts.get(contract_uuid)
        if contract is None:
            raise NotFoundError("Consent contract not found")
        return contract

    def list_for_patient(
        self,
        patient_id: str,
        *,
        status: ContractStatus | str | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Page:
        limit, offset = _page_bounds(limit, offset)
        status_filter = None
        if status:
            try:
                status_filter = ContractStatus(status)
            except ValueError:
                raise ContractValidationError(f"Unknown contract status: {status}") from None
        return self.contracts.list_for_patient(patient_id, status=status_filter, limit=limit, offset=offset)

    def access_logs(self, contract_ref: uuid.UUID | str, *, limit: int = 50, offset: int = 0) -> Page:
        limit, offset = _page_bounds(limit, offset)
        contract = self.get(contract_ref)
        return self.access_log_store.list_for(contract.id, limit=limit, offset=offset)

    def audit_trail(self, contract_ref: uuid.UUID | str, *, limit: int = 50, offset: int = 0) -> Page:
        limit, offset = _page_bounds(limit, offset)
        contract = self.get(contract_ref)
        return self.audit_store.list_for(contract.id, limit=limit, offset=offset)

    def overview(self) -> DashboardOverview:
        now = self.clock()
        status_counts = self.contracts.status_counts()
        recent = [
            RecentContract(
                contract_id=contract.contract_id,
                status=ContractStatus(contract.status).value,
                purpose=contract.purpose,
                created_at=contract.created_at,
                patient_name=patient.display_name if patient is not None else None,
                requester_name=requester.display_name if requester is not None else None,
            )
            for contract, patient, requester in self.contracts.recent_with_parties(RECENT_CONTRACT_LIMIT)
        ]
        return DashboardOverview(
            total_contracts=sum(status_counts.values()),
            status_counts={status.value: status_counts.get(status.value, 0) for status in ContractStatus},
            data_type_counts=self.contracts.data_type_counts(),
            recent_contracts=recent,
            audit_activity=self.audit_store.action_counts_since(now - AUDIT_ACTIVITY_WINDOW),
            generated_at=now,
        )

    # -- commands --------------------------------------------------------

    def create(
        self,
        *,
        patient_id: str,
        requester_id: str,
        data_types: Sequence[str],
        purpose: str,
        duration: str,
        conditions: Mapping[str, Any] | None = None,
        rules: Sequence[RuleDefinition | Mapping[str, Any]] | None = None,
        actor_id: str | None = None,
    ) -> ConsentContract:
        request = _NormalizedRequest(
            patient_id=_require_text("patient_id", patient_id),
            requester_id=_require_text("requester_id", requester_id),
            data_types=_normalize_data_types(data_types),
            purpose=_require_text("purpose", purpose),
            duration=validate_duration(_require_text("duration", duration)),
            conditions=dict(conditions or {}),
            rules=normalize_rules(rules),
        )
        if not self.directory.patient_exists(request.patient_id):
            raise NotFoundError("Patient not found")
        if not self.directory.requester_exists(request.requester_id):
            raise NotFoundError("Requester not found")

        now = self.clock()
        contract = ConsentContract(
            id=uuid.uuid4(),
            contract_id=generate_contract_reference(now),
            patient_id=request.patient_id,
            requester_id=request.requester_id,
            data_types=request.data_types,
            purpose=request.purpose,
            duration=request.duration,
            conditions=request.conditions,
            status=ContractStatus.PENDING,
            created_by=actor_id or SYSTEM_ACTOR,
            created_at=now,
            updated_at=now,
            expires_at=calculate_expiry(request.duration, now),
        )
        try:
            self.contracts.add(contract)
            self.rules.add_rules(contract.id, request.rules)
            self.recorder.record_created(
                contract.id,
                {
                    "contract_id": contract.contract_id,
                    "patient_id": request.patient_id,
                    "requester_id": request.requester_id,
                    "data_types": request.data_types,
                    "purpose": request.purpose,
                    "duration": request.duration,
                    "conditions": request.conditions,
                    "rule_ids": [rule.rule_id for rule in request.rules],
                    "status": ContractStatus.PENDING.value,
                },
                actor_id,
            )
            self.uow.commit()
        except Exception as exc:
            self.uow.rollback()
            record_operation_failure(operation="contract.create", exc=exc, resource_type="consent_contract")
            raise
        log_structured("contract.created", contract_id=contract.contract_id, actor_id=actor_id or SYSTEM_ACTOR)
        return self.get(contract.id)

    def execute(
        self,
        contract_ref: uuid.UUID | str,
        *,
        action: str,
        parameters: Mapping[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> ExecutionResult:
        action = _require_text("action", action)
        oversized = oversized_access_fields(parameters or {}, ("data_type", "resource_id"))
        if oversized:
            raise ContractValidationError(f"Execution parameters too long: {', '.join(oversized)}")
        actor = actor_id or SYSTEM_ACTOR
        snapshot = ContractSnapshot.from_model(self.get(contract_ref))
        rules = self.rules.rules_for(snapshot.id)
        now = self.clock()

        try:
            evaluation = self.engine.evaluate(
                snapshot,
                rules,
                action=action,
                parameters=dict(parameters or {}),
                actor_id=actor,
                now=now,
            )
            transition = evaluation.transition
            if transition is not None:
                if not can_transition(transition.from_status, transition.to_status):
                    raise ConflictError(
                        f"Transition {transition.from_status.value} -> {transition.to_status.value} is not allowed",
                        current_status=snapshot.status.value,
                    )
                changes: dict[str, Any] = {"updated_at": now}
                if transition.to_status == ContractStatus.APPROVED:
                    changes["approved_at"] = now
                swapped = self.contracts.compare_and_set_status(
                    snapshot.id, snapshot.status, transition.to_status, changes
                )
                if not swapped:
                    raise ConflictError(
                        "Consent contract was modified concurrently",
                        current_status=snapshot.status.value,
                    )
                self.recorder.record_transition(
                    snapshot.id, transition.from_status, transition.to_status, actor, transition.rule_id
                )
            self.uow.commit()
        except Exception as exc:
            self.uow.rollback()
            if isinstance(exc, ConflictError):
                increment_metric(METRIC_TRANSITION_CONFLICT, reason="execute")
                exc.current_status = self._current_status(snapshot.id) or exc.current_status
            record_operation_failure(
                operation="contract.execute",
                exc=exc,
                resource_type="consent_contract",
                resource_id=snapshot.contract_id,
            )
            raise

        if transition is not None:
            increment_metric(METRIC_TRANSITION_COMMITTED, reason=transition.to_status.value)
            log_structured(
                "contract.transition_committed",
                contract_id=snapshot.contract_id,
                rule_id=transition.rule_id,
                old_status=transition.from_status.value,
                new_status=transition.to_status.value,
                actor_id=actor,
            )
        delivered = deliver_notifications(self.notifier, evaluation.notifications)
        log_structured(
            "contract.executed",
            contract_id=snapshot.contract_id,
            action=action,
            executed_rules=",".join(evaluation.executed_rule_ids) or "-",
            warnings=len(evaluation.warnings),
        )
        return ExecutionResult(
            contract_uuid=snapshot.id,
            contract_id=snapshot.contract_id,
            action=action,
            executed_rules=list(evaluation.executed_rules),
            warnings=list(evaluation.warnings),
            status_changed=transition is not None,
            previous_status=snapshot.status,
            new_status=transition.to_status if transition is not None else None,
            executed_at=now,
            notifications_delivered=delivered,
            notifications_queued=len(evaluation.notifications),
        )

    def revoke(
        self,
        contract_ref: uuid.UUID | str,
        *,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> ConsentContract:
        snapshot = ContractSnapshot.from_model(self.get(contract_ref))
        if snapshot.status == ContractStatus.REVOKED:
            raise ConflictError("Consent contract is already revoked", current_status=snapshot.status.value)
        if snapshot.status not in REVOCABLE_STATUSES:
            raise ConflictError(
                f"Consent contract is {snapshot.status.value} and cannot be revoked",
                current_status=snapshot.status.value,
            )
        reason = (reason or "").strip() or DEFAULT_REVOCATION_REASON
        now = self.clock()
        try:
            swapped = self.contracts.compare_and_set_status(
                snapshot.id,
                snapshot.status,
                ContractStatus.REVOKED,
                {"revoked_at": now, "revocation_reason": reason, "updated_at": now},
            )
            if not swapped:
                raise ConflictError("Consent contract was modified concurrently")
            self.recorder.record_revocation(snapshot.id, snapshot.status, reason, actor_id)
            self.uow.commit()
        except Exception as exc:
            self.uow.rollback()
            if isinstance(exc, ConflictError):
                increment_metric(METRIC_TRANSITION_CONFLICT, reason="revoke")
                current = self._current_status(snapshot.id)
                exc.current_status = current
                if current == ContractStatus.REVOKED.value:
                    exc.message = "Consent contract is already revoked"
                    exc.args = (exc.message,)
            record_operation_failure(
                operation="contract.revoke",
                exc=exc,
                resource_type="consent_contract",
                resource_id=snapshot.contract_id,
            )
            raise
        log_structured(
            "contract.revoked",
            contract_id=snapshot.contract_id,
            old_status=snapshot.status.value,
            actor_id=actor_id or SYSTEM_ACTOR,
        )
        return self.get(snapshot.id)

    def log_access(
        self,
        contract_ref: uuid.UUID | str,
        *,
        actor_id: str,
        action: str,
        data_type: str,
        resource_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> Any:
        record_action = _require_text("action", action)
        record_data_type = _require_text("data_type", data_type)
        contract = self.get(contract_ref)
        try:
            entry = self.access_log_store.append(
                AccessLogRecord(
                    contract_uuid=contract.id,
                    actor_id=actor_id or SYSTEM_ACTOR,
                    action=record_action,
                    data_type=record_data_type,
                    resource_id=resource_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    timestamp=self.clock(),
                    success=success,
                    error_message=error_message,
                )
            )
            self.uow.commit()
        except Exception as exc:
            self.uow.rollback()
            record_operation_failure(
                operation="contract.log_access",
                exc=exc,
                resource_type="consent_contract",
                resource_id=str(contract_ref),
            )
            raise
        return entry

    def _current_status(self, contract_uuid: uuid.UUID) -> str | None:
        try:
            contract = self.contracts.get(contract_uuid)
        except ConsentEngineError:
            return None
        return ContractStatus(contract.status).value if contract is not None else None


def build_lifecycle_manager(
    db: Session,
    *,
    notifier: NotificationSink | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> ContractLifecycleManager:
    return ContractLifecycleManager(
        uow=db,
        contracts=SqlContractStore(db),
        rules=SqlRuleStore(db),
        audit=SqlAuditStore(db),
        access_logs=SqlAccessLogStore(db),
        directory=SqlPartyDirectory(db),
        notifier=notifier,
        clock=clock,
    )
