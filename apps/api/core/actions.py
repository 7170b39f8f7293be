from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Callable, Iterable, Mapping

from core.contract_types import ContractSnapshot, NotificationRequest, RuleDefinition, Transition, utc_now
from core.stores import AccessLogRecord, AccessLogStore
from models.contract import ContractStatus, RuleAction

DEFAULT_ACCESS_ACTION = "smart_contract_action"
DEFAULT_ACCESS_DATA_TYPE = "contract_execution"

# Column widths of consent_access_logs for values a rule or caller may supply.
ACCESS_FIELD_LIMITS: dict[str, int] = {
    "access_action": 50,
    "data_type": 50,
    "resource_id": 128,
}

# Status actions: the only status each is valid from, and the status it proposes.
STATUS_ACTIONS: dict[RuleAction, tuple[ContractStatus, ContractStatus]] = {
    RuleAction.AUTO_APPROVE: (ContractStatus.PENDING, ContractStatus.APPROVED),
    RuleAction.AUTO_REJECT: (ContractStatus.PENDING, ContractStatus.REJECTED),
    RuleAction.EXPIRE_CONTRACT: (ContractStatus.APPROVED, ContractStatus.EXPIRED),
}


class Outcome(StrEnum):
    TRANSITION_PROPOSED = "transition_proposed"
    ACCESS_LOGGED = "access_logged"
    NOTIFICATION_QUEUED = "notification_queued"
    NOOP = "noop"


@dataclass(frozen=True)
class ActionOutcome:
    action_taken: RuleAction
    outcome: Outcome
    transition: Transition | None = None
    notification: NotificationRequest | None = None
    reason: str | None = None


def _first_present(*candidates: Any, default: Any = None) -> Any:
    for candidate in candidates:
        if candidate not in (None, ""):
            return candidate
    return default


def oversized_access_fields(values: Mapping[str, Any], fields: Iterable[str] = ACCESS_FIELD_LIMITS) -> list[str]:
    """Names of access-log fields in ``values`` that would not fit their column."""
    oversized = []
    for name in fields:
        value = values.get(name)
        if value is not None and len(str(value)) > ACCESS_FIELD_LIMITS[name]:
            oversized.append(name)
    return oversized


def _bounded(value: Any, name: str) -> str:
    return str(value)[: ACCESS_FIELD_LIMITS[name]]


class ActionExecutor:
    """Applies a matched rule's action against a contract snapshot.

    Status actions only *propose* a transition; applying it is the lifecycle
    manager's job. An action that is not valid for the snapshot's status is a
    no-op, not an error.
    """

    def __init__(self, access_logs: AccessLogStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.access_logs = access_logs
        self.clock = clock

    def execute(
        self,
        rule: RuleDefinition,
        contract: ContractSnapshot,
        parameters: Mapping[str, Any],
        actor_id: str,
    ) -> ActionOutcome:
        action = RuleAction(rule.action)
        if action in STATUS_ACTIONS:
            return self._propose(rule, contract, action)
        if action == RuleAction.LOG_ACCESS:
            return self._log_access(rule, contract, parameters, actor_id)
        return self._notification(rule, contract)

    def _propose(self, rule: RuleDefinition, contract: ContractSnapshot, action: RuleAction) -> ActionOutcome:
        valid_from, target = STATUS_ACTIONS[action]
        if contract.status != valid_from:
            return ActionOutcome(
                action_taken=action,
                outcome=Outcome.NOOP,
                reason=f"not_valid_from_{contract.status.value}",
            )
        return ActionOutcome(
            action_taken=action,
            outcome=Outcome.TRANSITION_PROPOSED,
            transition=Transition(from_status=contract.status, to_status=target, rule_id=rule.rule_id),
        )

    def _log_access(
        self,
        rule: RuleDefinition,
        contract: ContractSnapshot,
        parameters: Mapping[str, Any],
        actor_id: str,
    ) -> ActionOutcome:
        resource_id = _first_present(rule.parameters.get("resource_id"), parameters.get("resource_id"))
        self.access_logs.append(
            AccessLogRecord(
                contract_uuid=contract.id,
                actor_id=actor_id,
                action=_bounded(
                    _first_present(rule.parameters.get("access_action"), default=DEFAULT_ACCESS_ACTION),
                    "access_action",
                ),
                data_type=_bounded(
                    _first_present(
                        rule.parameters.get("data_type"),
                        parameters.get("data_type"),
                        default=DEFAULT_ACCESS_DATA_TYPE,
                    ),
                    "data_type",
                ),
                resource_id=_bounded(resource_id, "resource_id") if resource_id is not None else None,
                timestamp=self.clock(),
                success=True,
            )
        )
        return ActionOutcome(action_taken=RuleAction.LOG_ACCESS, outcome=Outcome.ACCESS_LOGGED)

    def _notification(self, rule: RuleDefinition, contract: ContractSnapshot) -> ActionOutcome:
        recipient = _first_present(
            rule.parameters.get("recipient"),
            rule.parameters.get("role"),
            default=contract.patient_id,
        )
        message = _first_present(
            rule.parameters.get("message"),
            default=f"Consent contract {contract.contract_id} matched rule '{rule.name}'",
        )
        return ActionOutcome(
            action_taken=RuleAction.SEND_NOTIFICATION,
            outcome=Outcome.NOTIFICATION_QUEUED,
            notification=NotificationRequest(
                recipient=str(recipient),
                message=str(message),
                contract_id=contract.contract_id,
                rule_id=rule.rule_id,
            ),
        )
