from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from core.actions import ActionExecutor, Outcome
from core.conditions import ConditionEvaluator, EvaluationContext
from core.contract_types import ContractSnapshot, NotificationRequest, RuleDefinition, Transition
from core.logging_utils import log_structured_warning
from core.observability import METRIC_RULE_EVALUATION_FAILED, increment_metric

SUPERSEDED_REASON = "transition_already_proposed"


@dataclass(frozen=True)
class ExecutedRule:
    rule_id: str
    action: str
    outcome: str
    reason: str | None = None


@dataclass(frozen=True)
class RuleWarning:
    rule_id: str
    message: str


@dataclass
class RuleEvaluation:
    executed_rules: list[ExecutedRule] = field(default_factory=list)
    warnings: list[RuleWarning] = field(default_factory=list)
    notifications: list[NotificationRequest] = field(default_factory=list)
    transition: Transition | None = None

    @property
    def executed_rule_ids(self) -> list[str]:
        return [item.rule_id for item in self.executed_rules]

    @property
    def actions(self) -> list[str]:
        return [item.action for item in self.executed_rules]


def order_rules(rules: Iterable[RuleDefinition]) -> list[RuleDefinition]:
    """Active rules, highest priority first, ties broken by rule id."""
    return sorted((rule for rule in rules if rule.is_active), key=lambda rule: (-rule.priority, rule.rule_id))


class RuleEngine:
    """Evaluates a contract's rules in a fixed order against a snapshot.

    First proposed transition wins. Rules after it still run for their side
    effects; any further status change they would make is reported as a no-op.
    A rule whose condition cannot be evaluated is skipped with a warning.
    """

    def __init__(self, evaluator: ConditionEvaluator, executor: ActionExecutor) -> None:
        self.evaluator = evaluator
        self.executor = executor

    def evaluate(
        self,
        contract: ContractSnapshot,
        rules: Iterable[RuleDefinition],
        *,
        action: str,
        parameters: Mapping[str, Any],
        actor_id: str,
        now: datetime,
    ) -> RuleEvaluation:
        context = EvaluationContext(contract=contract, action=action, parameters=dict(parameters), now=now)
        result = RuleEvaluation()

        for rule in order_rules(rules):
            check = self.evaluator.check(rule.condition, context)
            if check.error is not None:
                increment_metric(METRIC_RULE_EVALUATION_FAILED, reason=rule.rule_id)
                log_structured_warning(
                    "rule.evaluation_failed",
                    contract_id=contract.contract_id,
                    rule_id=rule.rule_id,
                    reason=check.error.message,
                )
                result.warnings.append(RuleWarning(rule_id=rule.rule_id, message=check.error.message))
                continue
            if not check.matched:
                continue

            outcome = self.executor.execute(rule, contract, parameters, actor_id)
            reason = outcome.reason
            recorded = outcome.outcome
            if outcome.transition is not None:
                if result.transition is None:
                    result.transition = outcome.transition
                else:
                    recorded, reason = Outcome.NOOP, SUPERSEDED_REASON
            if outcome.notification is not None:
                result.notifications.append(outcome.notification)
            result.executed_rules.append(
                ExecutedRule(
                    rule_id=rule.rule_id,
                    action=outcome.action_taken.value,
                    outcome=recorded.value,
                    reason=reason,
                )
            )
        return result
