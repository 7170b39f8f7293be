import tempfile
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from core.db import Base
from core.errors import ConflictError
from core.lifecycle import build_lifecycle_manager
from core.stores import SqlContractStore
from models.audit import AuditTrailEntry
from models.contract import ConsentContract, ContractStatus
from models.party import Patient, User
from tests._helpers import PATIENT_ID, REQUESTER_ID, FixedClock, rule_payload


class BarrierContractStore(SqlContractStore):
    """Holds each reader at the barrier after its first load so both snapshots predate either write."""

    def __init__(self, db, barrier: threading.Barrier) -> None:
        super().__init__(db)
        self.barrier = barrier
        self._waited = False

    def _hold(self, contract):
        if not self._waited:
            self._waited = True
            self.barrier.wait(timeout=10)
        return contract

    def get(self, contract_uuid):
        return self._hold(super().get(contract_uuid))

    def get_by_reference(self, reference):
        return self._hold(super().get_by_reference(reference))


class ConcurrentExecutionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(self.tmpdir.name) / "contracts.db"
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": 10},
        )
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)
        Base.metadata.create_all(bind=self.engine)
        self.clock = FixedClock()

        db = self.SessionLocal()
        try:
            db.add(Patient(id=PATIENT_ID, first_name="Ada", last_name="Lovelace"))
            db.add(User(id=REQUESTER_ID, first_name="Grace", last_name="Hopper"))
            db.commit()
        finally:
            db.close()

    def tearDown(self) -> None:
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _create_contract(self, rules) -> str:
        db = self.SessionLocal()
        try:
            contract = build_lifecycle_manager(db, clock=self.clock).create(
                patient_id=PATIENT_ID,
                requester_id=REQUESTER_ID,
                data_types=["lab_results"],
                purpose="Second opinion",
                duration="1_week",
                rules=rules,
            )
            return contract.contract_id
        finally:
            db.close()

    def _run_in_parallel(self, operation) -> list[str]:
        barrier = threading.Barrier(2)

        def _call():
            session = self.SessionLocal()
            try:
                manager = build_lifecycle_manager(session, clock=self.clock)
                manager.contracts = BarrierContractStore(session, barrier)
                operation(manager)
                return "ok"
            except ConflictError:
                return "conflict"
            finally:
                session.close()

        outcomes: list[str] = []
        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(_call) for _ in range(2)]
            for future in as_completed(futures):
                outcomes.append(future.result())
        return sorted(outcomes)

    def _stored(self, reference: str) -> tuple[ConsentContract, list[str]]:
        db = self.SessionLocal()
        try:
            contract = db.scalar(select(ConsentContract).where(ConsentContract.contract_id == reference))
            actions = list(
                db.scalars(
                    select(AuditTrailEntry.action).where(AuditTrailEntry.contract_id == contract.id)
                ).all()
            )
            db.expunge(contract)
            return contract, actions
        finally:
            db.close()

    def test_two_executes_against_same_pending_contract_commit_once(self) -> None:
        reference = self._create_contract([rule_payload("approve", "auto_approve")])

        outcomes = self._run_in_parallel(lambda manager: manager.execute(reference, action="read"))

        self.assertEqual(outcomes, ["conflict", "ok"])
        contract, actions = self._stored(reference)
        self.assertEqual(contract.status, ContractStatus.APPROVED)
        self.assertEqual(sorted(actions), ["created", "status_changed"])

    def test_competing_approve_and_reject_commit_exactly_one_decision(self) -> None:
        reference = self._create_contract(
            [
                rule_payload("approve", "auto_approve", '$parameters.decision == "approve"'),
                rule_payload("reject", "auto_reject", '$parameters.decision == "reject"'),
            ]
        )
        decisions = iter(["approve", "reject"])
        committed: list[str] = []
        lock = threading.Lock()

        def _decide(manager):
            with lock:
                decision = next(decisions)
            manager.execute(reference, action="review", parameters={"decision": decision})
            with lock:
                committed.append(decision)

        outcomes = self._run_in_parallel(_decide)

        self.assertEqual(outcomes, ["conflict", "ok"])
        self.assertEqual(len(committed), 1)
        expected = ContractStatus.APPROVED if committed[0] == "approve" else ContractStatus.REJECTED
        contract, actions = self._stored(reference)
        self.assertEqual(contract.status, expected)
        self.assertEqual(sorted(actions), ["created", "status_changed"])

    def test_execute_racing_revoke_leaves_exactly_one_transition(self) -> None:
        reference = self._create_contract([rule_payload("reject", "auto_reject")])

        calls = iter(
            [
                lambda manager: manager.execute(reference, action="read"),
                lambda manager: manager.revoke(reference, reason="patient withdrew"),
            ]
        )
        lock = threading.Lock()

        def _next_operation(manager):
            with lock:
                operation = next(calls)
            return operation(manager)

        outcomes = self._run_in_parallel(_next_operation)

        self.assertEqual(outcomes, ["conflict", "ok"])
        contract, actions = self._stored(reference)
        self.assertIn(contract.status, {ContractStatus.REJECTED, ContractStatus.REVOKED})
        self.assertEqual(len(actions), 2)
        self.assertIn("created", actions)


if __name__ == "__main__":
    unittest.main()
