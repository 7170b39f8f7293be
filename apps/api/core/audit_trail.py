from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Mapping

from core.contract_types import utc_now
from core.stores import AuditRecord, AuditStore
from models.contract import ContractStatus

SYSTEM_ACTOR = "system"


class AuditRecorder:
    """Appends before/after records to the audit store; never updates them."""

    def __init__(self, store: AuditStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    def _append(
        self,
        contract_uuid: uuid.UUID,
        action: str,
        old_values: Mapping[str, Any] | None,
        new_values: Mapping[str, Any] | None,
        changed_by: str | None,
        reason: str,
    ) -> Any:
        return self.store.append(
            AuditRecord(
                contract_uuid=contract_uuid,
                action=action,
                old_values=old_values,
                new_values=new_values,
                changed_by=changed_by or SYSTEM_ACTOR,
                change_reason=reason,
                timestamp=self.clock(),
            )
        )

    def record_created(self, contract_uuid: uuid.UUID, values: Mapping[str, Any], changed_by: str | None) -> Any:
        return self._append(contract_uuid, "created", None, values, changed_by, "Contract created")

    def record_transition(
        self,
        contract_uuid: uuid.UUID,
        old_status: ContractStatus,
        new_status: ContractStatus,
        changed_by: str | None,
        rule_id: str,
    ) -> Any:
        return self._append(
            contract_uuid,
            "status_changed",
            {"status": old_status.value},
            {"status": new_status.value},
            changed_by,
            f"Status changed to {new_status.value} by rule {rule_id}",
        )

    def record_revocation(
        self,
        contract_uuid: uuid.UUID,
        old_status: ContractStatus,
        reason: str,
        changed_by: str | None,
    ) -> Any:
        return self._append(
            contract_uuid,
            "revoked",
            {"status": old_status.value},
            {"status": ContractStatus.REVOKED.value, "revocation_reason": reason},
            changed_by,
            f"Contract revoked: {reason}",
        )
