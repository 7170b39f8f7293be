import unittest
from unittest.mock import patch

from core.actions import ActionExecutor
from core.conditions import ConditionEvaluator
from core.observability import COUNTERS, METRIC_RULE_EVALUATION_FAILED
from core.rule_engine import SUPERSEDED_REASON, RuleEngine, order_rules
from models.contract import ContractStatus, RuleAction
from tests._helpers import T0, FixedClock, MemoryAccessLogStore, make_rule, make_snapshot


class RuleEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        COUNTERS.reset()
        self.access_logs = MemoryAccessLogStore()
        self.engine = RuleEngine(ConditionEvaluator(), ActionExecutor(self.access_logs, clock=FixedClock()))

    def _evaluate(self, rules, *, status=ContractStatus.PENDING, action="read", parameters=None):
        return self.engine.evaluate(
            make_snapshot(status),
            rules,
            action=action,
            parameters=parameters or {},
            actor_id="actor-1",
            now=T0,
        )

    def test_order_is_priority_desc_then_rule_id(self) -> None:
        rules = [
            make_rule("b", RuleAction.LOG_ACCESS, priority=1),
            make_rule("c", RuleAction.LOG_ACCESS, priority=5),
            make_rule("a", RuleAction.LOG_ACCESS, priority=1),
            make_rule("z", RuleAction.LOG_ACCESS, priority=9, is_active=False),
        ]
        self.assertEqual([rule.rule_id for rule in order_rules(rules)], ["c", "a", "b"])
        self.assertEqual(self._evaluate(rules).executed_rule_ids, ["c", "a", "b"])

    def test_higher_priority_approval_wins_and_rejection_is_noop(self) -> None:
        rules = [
            make_rule("reject", RuleAction.AUTO_REJECT, priority=1),
            make_rule("approve", RuleAction.AUTO_APPROVE, priority=5),
        ]
        evaluation = self._evaluate(rules)

        self.assertEqual(evaluation.transition.to_status, ContractStatus.APPROVED)
        self.assertEqual(evaluation.transition.rule_id, "approve")
        approve, reject = evaluation.executed_rules
        self.assertEqual((approve.rule_id, approve.outcome), ("approve", "transition_proposed"))
        self.assertEqual((reject.rule_id, reject.outcome, reject.reason), ("reject", "noop", SUPERSEDED_REASON))
        self.assertEqual(evaluation.actions, ["auto_approve", "auto_reject"])

    def test_side_effects_after_transition_still_run(self) -> None:
        rules = [
            make_rule("approve", RuleAction.AUTO_APPROVE, priority=3),
            make_rule("log", RuleAction.LOG_ACCESS, priority=2),
            make_rule("notify", RuleAction.SEND_NOTIFICATION, priority=1),
        ]
        evaluation = self._evaluate(rules)
        self.assertEqual(evaluation.executed_rule_ids, ["approve", "log", "notify"])
        self.assertEqual(len(self.access_logs.records), 1)
        self.assertEqual(len(evaluation.notifications), 1)

    def test_unmatched_rules_are_not_reported(self) -> None:
        rules = [
            make_rule("write-only", RuleAction.AUTO_APPROVE, '$action == "write"', priority=2),
            make_rule("read", RuleAction.LOG_ACCESS, '$action == "read"', priority=1),
        ]
        evaluation = self._evaluate(rules)
        self.assertEqual(evaluation.executed_rule_ids, ["read"])
        self.assertIsNone(evaluation.transition)

    def test_broken_condition_becomes_warning_and_rule_is_skipped(self) -> None:
        rules = [
            make_rule("broken", RuleAction.AUTO_APPROVE, "parameters.nope == 1", priority=5),
            make_rule("reject", RuleAction.AUTO_REJECT, "true", priority=1),
        ]
        with patch("core.rule_engine.log_structured_warning") as warning_log:
            evaluation = self._evaluate(rules)

        self.assertEqual([warning.rule_id for warning in evaluation.warnings], ["broken"])
        self.assertIn("parameters.nope", evaluation.warnings[0].message)
        self.assertEqual(evaluation.transition.to_status, ContractStatus.REJECTED)
        self.assertEqual(COUNTERS.value(METRIC_RULE_EVALUATION_FAILED), 1)
        warning_log.assert_called_once()
        self.assertEqual(warning_log.call_args.args[0], "rule.evaluation_failed")

    def test_evaluation_is_deterministic(self) -> None:
        rules = [
            make_rule("r2", RuleAction.AUTO_REJECT, priority=1),
            make_rule("r1", RuleAction.AUTO_APPROVE, priority=1),
            make_rule("r3", RuleAction.SEND_NOTIFICATION, priority=0),
        ]
        first = self._evaluate(rules)
        second = self._evaluate(list(reversed(rules)))
        self.assertEqual(first.executed_rules, second.executed_rules)
        self.assertEqual(first.transition, second.transition)
        self.assertEqual(first.transition.rule_id, "r1")

    def test_no_rules_means_no_effects(self) -> None:
        evaluation = self._evaluate([])
        self.assertEqual(evaluation.executed_rules, [])
        self.assertIsNone(evaluation.transition)


if __name__ == "__main__":
    unittest.main()
