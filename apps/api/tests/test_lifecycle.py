import re
import unittest
import uuid
from datetime import timedelta
from types import SimpleNamespace

from sqlalchemy import func, select

from core.contract_types import as_utc
from core.errors import ConflictError, ContractValidationError, NotFoundError
from core.lifecycle import DEFAULT_REVOCATION_REASON, build_lifecycle_manager
from core.observability import COUNTERS, METRIC_TRANSITION_COMMITTED, METRIC_TRANSITION_CONFLICT
from core.stores import SqlContractStore
from models.access_log import AccessLogEntry
from models.audit import AuditTrailEntry
from models.contract import ConsentContract, ContractStatus
from tests._helpers import (
    PATIENT_ID,
    REQUESTER_ID,
    T0,
    FixedClock,
    make_memory_session,
    rule_payload,
    seed_parties,
)


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    def notify(self, recipient, message, payload) -> None:
        self.sent.append((recipient, message, payload))


class FailingSink:
    def notify(self, recipient, message, payload) -> None:
        raise ConnectionError("notification service down")


class StaleStatusContractStore(SqlContractStore):
    """Serves a copy of the row with an outdated status, as a slower concurrent reader would see it."""

    def __init__(self, db, stale_status: ContractStatus) -> None:
        super().__init__(db)
        self.stale_status = stale_status

    def get(self, contract_uuid):
        contract = super().get(contract_uuid)
        if contract is None:
            return None
        values = {column.name: getattr(contract, column.name) for column in ConsentContract.__table__.columns}
        values["status"] = self.stale_status
        return SimpleNamespace(**values)


class LifecycleTestCase(unittest.TestCase):
    def setUp(self) -> None:
        COUNTERS.reset()
        self.db, self.engine = make_memory_session()
        seed_parties(self.db)
        self.clock = FixedClock()
        self.sink = RecordingSink()
        self.manager = build_lifecycle_manager(self.db, notifier=self.sink, clock=self.clock)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _create(self, rules=None, **overrides):
        values = {
            "patient_id": PATIENT_ID,
            "requester_id": REQUESTER_ID,
            "data_types": ["lab_results", "prescriptions"],
            "purpose": "Follow-up care",
            "duration": "1_month",
            "conditions": {"department": "cardiology"},
            "rules": rules or [],
            "actor_id": "admin-1",
        }
        values.update(overrides)
        contract = self.manager.create(**values)
        self.clock.advance(seconds=1)
        return contract

    def _audit_actions(self, contract) -> list[str]:
        return [entry.action for entry in self.manager.audit_trail(contract.id).items]


class ContractCreationTests(LifecycleTestCase):
    def test_create_persists_pending_contract_with_rules_and_audit(self) -> None:
        contract = self._create(
            rules=[
                rule_payload("approve-read", "auto_approve", '$action == "read"', priority=5),
                {"name": "log everything", "condition": "true", "action": "log_access"},
            ]
        )

        self.assertEqual(contract.status, ContractStatus.PENDING)
        self.assertRegex(contract.contract_id, r"^CONTRACT-\d{13}-[a-z0-9]{9}$")
        self.assertEqual(as_utc(contract.expires_at), T0 + timedelta(days=30))
        self.assertEqual(contract.created_by, "admin-1")
        self.assertEqual(contract.data_types, ["lab_results", "prescriptions"])
        self.assertEqual([rule.rule_id for rule in contract.rules], ["approve-read", "rule-002"])

        trail = self.manager.audit_trail(contract.id).items
        self.assertEqual([entry.action for entry in trail], ["created"])
        self.assertIsNone(trail[0].old_values)
        self.assertEqual(trail[0].new_values["status"], "pending")
        self.assertEqual(trail[0].changed_by, "admin-1")

    def test_reference_embeds_creation_time(self) -> None:
        contract = self._create()
        millis = int(re.match(r"^CONTRACT-(\d+)-", contract.contract_id).group(1))
        self.assertEqual(millis, int(T0.timestamp() * 1000))

    def test_duplicate_data_types_are_removed_in_order(self) -> None:
        contract = self._create(data_types=["imaging", "lab_results", "imaging"])
        self.assertEqual(contract.data_types, ["imaging", "lab_results"])

    def test_unknown_duration_is_rejected_without_writes(self) -> None:
        with self.assertRaises(ContractValidationError):
            self._create(duration="2_weeks")
        self.assertEqual(self.db.scalar(select(func.count()).select_from(ConsentContract)), 0)

    def test_missing_parties_are_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self._create(patient_id="ghost")
        with self.assertRaises(NotFoundError):
            self._create(requester_id="ghost")

    def test_invalid_rules_are_rejected(self) -> None:
        with self.assertRaises(ContractValidationError):
            self._create(rules=[rule_payload("r1", "delete_everything")])
        with self.assertRaises(ContractValidationError):
            self._create(rules=[rule_payload("r1", "log_access"), rule_payload("r1", "auto_reject")])
        with self.assertRaises(ContractValidationError):
            self._create(rules=[rule_payload("r1", "log_access", priority="high")])
        for parameters in ({"data_type": "x" * 51}, {"access_action": "a" * 51}, {"resource_id": "r" * 129}):
            with self.subTest(parameters=list(parameters)):
                with self.assertRaises(ContractValidationError):
                    self._create(rules=[rule_payload("r1", "log_access", parameters=parameters)])
        self.assertEqual(self.db.scalar(select(func.count()).select_from(ConsentContract)), 0)

    def test_required_fields(self) -> None:
        for field, value in (("data_types", []), ("purpose", "  "), ("patient_id", ""), ("duration", None)):
            with self.subTest(field=field):
                with self.assertRaises(ContractValidationError):
                    self._create(**{field: value})

    def test_malformed_condition_is_accepted_and_fails_closed_later(self) -> None:
        contract = self._create(rules=[rule_payload("broken", "auto_approve", "$action ==")])
        result = self.manager.execute(contract.id, action="read")
        self.assertFalse(result.status_changed)
        self.assertEqual([warning.rule_id for warning in result.warnings], ["broken"])


class ContractExecutionTests(LifecycleTestCase):
    def test_priority_approval_beats_rejection(self) -> None:
        contract = self._create(
            rules=[
                rule_payload("reject", "auto_reject", priority=1),
                rule_payload("approve", "auto_approve", priority=5),
            ]
        )
        result = self.manager.execute(contract.contract_id, action="read", actor_id="dr-1")

        self.assertTrue(result.status_changed)
        self.assertEqual(result.previous_status, ContractStatus.PENDING)
        self.assertEqual(result.new_status, ContractStatus.APPROVED)
        self.assertEqual([(item.rule_id, item.outcome) for item in result.executed_rules], [
            ("approve", "transition_proposed"),
            ("reject", "noop"),
        ])

        stored = self.manager.get(contract.id)
        self.assertEqual(stored.status, ContractStatus.APPROVED)
        self.assertEqual(as_utc(stored.approved_at), self.clock.now)

        trail = self.manager.audit_trail(contract.id).items
        self.assertEqual([entry.action for entry in trail], ["created", "status_changed"])
        self.assertEqual(trail[1].old_values, {"status": "pending"})
        self.assertEqual(trail[1].new_values, {"status": "approved"})
        self.assertEqual(trail[1].changed_by, "dr-1")
        self.assertIn("approve", trail[1].change_reason)
        self.assertEqual(COUNTERS.value(METRIC_TRANSITION_COMMITTED), 1)

    def test_expire_rule_observes_expiry(self) -> None:
        contract = self._create(
            rules=[
                rule_payload("approve", "auto_approve", "isPending", priority=2),
                rule_payload("expire", "expire_contract", "isApproved && isExpired", priority=1),
            ]
        )
        self.manager.execute(contract.id, action="read")
        self.clock.advance(days=31)
        result = self.manager.execute(contract.id, action="read")

        self.assertEqual(result.new_status, ContractStatus.EXPIRED)
        self.assertEqual(self.manager.get(contract.id).status, ContractStatus.EXPIRED)
        self.assertEqual(self._audit_actions(contract), ["created", "status_changed", "status_changed"])

    def test_execute_without_transition_records_access_only(self) -> None:
        contract = self._create(
            rules=[rule_payload("log", "log_access", parameters={"access_action": "view", "data_type": "lab_results"})]
        )
        result = self.manager.execute(contract.id, action="read", parameters={"resource_id": "lab-42"}, actor_id="dr-2")

        self.assertFalse(result.status_changed)
        self.assertIsNone(result.new_status)
        logs = self.manager.access_logs(contract.id).items
        self.assertEqual(len(logs), 1)
        self.assertEqual((logs[0].actor_id, logs[0].action, logs[0].resource_id), ("dr-2", "view", "lab-42"))
        self.assertEqual(self._audit_actions(contract), ["created"])

    def test_terminal_contract_still_runs_side_effects(self) -> None:
        contract = self._create(
            rules=[
                rule_payload("reject", "auto_reject", priority=2),
                rule_payload("log", "log_access", priority=1),
            ]
        )
        self.manager.execute(contract.id, action="read")
        result = self.manager.execute(contract.id, action="read")

        self.assertFalse(result.status_changed)
        self.assertEqual(result.executed_rules[0].outcome, "noop")
        self.assertEqual(self.manager.get(contract.id).status, ContractStatus.REJECTED)
        self.assertEqual(self.manager.access_logs(contract.id).count, 2)

    def test_notifications_are_delivered_after_commit(self) -> None:
        contract = self._create(rules=[rule_payload("notify", "send_notification", parameters={"role": "compliance"})])
        result = self.manager.execute(contract.id, action="read")

        self.assertEqual(result.notifications_delivered, 1)
        recipient, _message, payload = self.sink.sent[0]
        self.assertEqual(recipient, "compliance")
        self.assertEqual(payload, {"contract_id": contract.contract_id, "rule_id": "notify"})

    def test_notification_failure_does_not_fail_execution(self) -> None:
        contract = self._create(
            rules=[
                rule_payload("approve", "auto_approve", priority=2),
                rule_payload("notify", "send_notification", priority=1),
            ]
        )
        manager = build_lifecycle_manager(self.db, notifier=FailingSink(), clock=self.clock)
        result = manager.execute(contract.id, action="read")

        self.assertEqual(result.new_status, ContractStatus.APPROVED)
        self.assertEqual(result.notifications_queued, 1)
        self.assertEqual(result.notifications_delivered, 0)
        self.assertEqual(manager.get(contract.id).status, ContractStatus.APPROVED)

    def test_stale_snapshot_conflicts_and_rolls_back(self) -> None:
        contract = self._create(
            rules=[
                rule_payload("approve", "auto_approve", priority=2),
                rule_payload("log", "log_access", priority=1),
            ]
        )
        self.manager.execute(contract.id, action="read")
        logs_before = self.manager.access_logs(contract.id).count

        stale = build_lifecycle_manager(self.db, notifier=self.sink, clock=self.clock)
        stale.contracts = StaleStatusContractStore(self.db, ContractStatus.PENDING)
        with self.assertRaises(ConflictError):
            stale.execute(contract.id, action="read")

        self.assertEqual(self.manager.get(contract.id).status, ContractStatus.APPROVED)
        self.assertEqual(self._audit_actions(contract), ["created", "status_changed"])
        self.assertEqual(self.db.scalar(select(func.count()).select_from(AccessLogEntry)), logs_before)
        self.assertEqual(COUNTERS.value(METRIC_TRANSITION_CONFLICT), 1)

    def test_unknown_contract_and_empty_action(self) -> None:
        with self.assertRaises(NotFoundError):
            self.manager.execute(uuid.uuid4(), action="read")
        with self.assertRaises(NotFoundError):
            self.manager.execute("CONTRACT-0-missing00", action="read")
        contract = self._create()
        with self.assertRaises(ContractValidationError):
            self.manager.execute(contract.id, action=" ")

    def test_oversized_execution_parameters_are_rejected_before_any_write(self) -> None:
        contract = self._create(
            rules=[
                rule_payload("approve", "auto_approve", priority=2),
                rule_payload("log", "log_access", priority=1),
            ]
        )
        for parameters in ({"data_type": "x" * 200}, {"resource_id": "r" * 500}):
            with self.subTest(parameters=list(parameters)):
                with self.assertRaises(ContractValidationError) as ctx:
                    self.manager.execute(contract.id, action="read", parameters=parameters)
                self.assertEqual(ctx.exception.http_status, 422)
                self.assertFalse(ctx.exception.retryable)

        self.assertEqual(self.manager.get(contract.id).status, ContractStatus.PENDING)
        self.assertEqual(self.manager.access_logs(contract.id).count, 0)
        self.assertEqual(self._audit_actions(contract), ["created"])


class ContractRevocationTests(LifecycleTestCase):
    def test_revoke_pending_and_approved(self) -> None:
        pending = self._create()
        approved = self._create(rules=[rule_payload("approve", "auto_approve")])
        self.manager.execute(approved.id, action="read")

        revoked = self.manager.revoke(pending.id, reason="Patient request", actor_id=PATIENT_ID)
        self.assertEqual(revoked.status, ContractStatus.REVOKED)
        self.assertEqual(revoked.revocation_reason, "Patient request")
        self.assertEqual(as_utc(revoked.revoked_at), self.clock.now)

        revoked_approved = self.manager.revoke(approved.contract_id)
        self.assertEqual(revoked_approved.status, ContractStatus.REVOKED)
        self.assertEqual(revoked_approved.revocation_reason, DEFAULT_REVOCATION_REASON)

        trail = self.manager.audit_trail(pending.id).items
        self.assertEqual([entry.action for entry in trail], ["created", "revoked"])
        self.assertEqual(trail[-1].old_values, {"status": "pending"})
        self.assertEqual(trail[-1].new_values["status"], "revoked")
        self.assertEqual(trail[-1].changed_by, PATIENT_ID)

    def test_revoking_revoked_contract_conflicts_and_keeps_timestamp(self) -> None:
        contract = self._create()
        first = self.manager.revoke(contract.id, reason="first")
        revoked_at = as_utc(first.revoked_at)
        self.clock.advance(hours=1)

        with self.assertRaises(ConflictError) as ctx:
            self.manager.revoke(contract.id, reason="second")
        self.assertIn("already revoked", ctx.exception.message)

        stored = self.manager.get(contract.id)
        self.assertEqual(as_utc(stored.revoked_at), revoked_at)
        self.assertEqual(stored.revocation_reason, "first")
        self.assertEqual(self._audit_actions(contract), ["created", "revoked"])

    def test_other_terminal_statuses_cannot_be_revoked(self) -> None:
        contract = self._create(rules=[rule_payload("reject", "auto_reject")])
        self.manager.execute(contract.id, action="read")
        with self.assertRaises(ConflictError) as ctx:
            self.manager.revoke(contract.id)
        self.assertEqual(ctx.exception.current_status, "rejected")

    def test_concurrent_revoke_reports_already_revoked(self) -> None:
        contract = self._create()
        self.manager.revoke(contract.id)
        stale = build_lifecycle_manager(self.db, clock=self.clock)
        stale.contracts = StaleStatusContractStore(self.db, ContractStatus.PENDING)
        with self.assertRaises(ConflictError):
            stale.revoke(contract.id)
        self.assertEqual(self._audit_actions(contract), ["created", "revoked"])


class ContractQueryTests(LifecycleTestCase):
    def test_get_by_uuid_and_reference(self) -> None:
        contract = self._create()
        self.assertEqual(self.manager.get(contract.id).id, contract.id)
        self.assertEqual(self.manager.get(str(contract.id)).id, contract.id)
        self.assertEqual(self.manager.get(contract.contract_id).id, contract.id)
        with self.assertRaises(NotFoundError):
            self.manager.get("CONTRACT-nope")

    def test_list_for_patient_paginates_newest_first(self) -> None:
        created = [self._create(purpose=f"purpose {index}") for index in range(3)]
        self.manager.revoke(created[0].id)

        page = self.manager.list_for_patient(PATIENT_ID, limit=2, offset=0)
        self.assertEqual(page.count, 3)
        self.assertEqual([item.purpose for item in page.items], ["purpose 2", "purpose 1"])
        self.assertEqual({item.requester_name for item in page.items}, {"Grace Hopper"})

        revoked = self.manager.list_for_patient(PATIENT_ID, status="revoked")
        self.assertEqual([item.id for item in revoked.items], [created[0].id])
        self.assertEqual(self.manager.list_for_patient("someone-else").count, 0)

        with self.assertRaises(ContractValidationError):
            self.manager.list_for_patient(PATIENT_ID, status="archived")
        with self.assertRaises(ContractValidationError):
            self.manager.list_for_patient(PATIENT_ID, limit=0)

    def test_log_access_in_any_status_never_changes_status(self) -> None:
        contract = self._create()
        self.manager.revoke(contract.id)
        entry = self.manager.log_access(
            contract.contract_id,
            actor_id="dr-3",
            action="view_record",
            data_type="lab_results",
            ip_address="10.0.0.7",
            user_agent="pytest",
            success=False,
            error_message="contract revoked",
        )

        self.assertFalse(entry.success)
        self.assertEqual(self.manager.get(contract.id).status, ContractStatus.REVOKED)
        logs = self.manager.access_logs(contract.id).items
        self.assertEqual((logs[0].ip_address, logs[0].user_agent, logs[0].error_message), ("10.0.0.7", "pytest", "contract revoked"))
        with self.assertRaises(ContractValidationError):
            self.manager.log_access(contract.id, actor_id="dr-3", action="", data_type="lab_results")

    def test_overview_summarises_contracts_and_activity(self) -> None:
        approved = self._create(data_types=["lab_results"], rules=[rule_payload("approve", "auto_approve")])
        self.manager.execute(approved.id, action="read")
        self._create(data_types=["lab_results", "imaging"])

        overview = self.manager.overview()
        self.assertEqual(overview.total_contracts, 2)
        self.assertEqual(overview.status_counts["approved"], 1)
        self.assertEqual(overview.status_counts["pending"], 1)
        self.assertEqual(overview.status_counts["revoked"], 0)
        self.assertEqual(overview.data_type_counts, {"lab_results": 2, "imaging": 1})
        self.assertEqual(len(overview.recent_contracts), 2)
        self.assertEqual(overview.recent_contracts[0].patient_name, "Ada Lovelace")
        self.assertEqual(overview.recent_contracts[0].requester_name, "Grace Hopper")
        self.assertEqual(overview.audit_activity, {"created": 2, "status_changed": 1})

    def test_audit_trail_is_append_only_through_the_orm(self) -> None:
        contract = self._create()
        entry = self.db.scalar(select(AuditTrailEntry).where(AuditTrailEntry.contract_id == contract.id))
        entry.change_reason = "tampered"
        with self.assertRaises(ValueError):
            self.db.flush()
        self.db.rollback()


if __name__ == "__main__":
    unittest.main()
