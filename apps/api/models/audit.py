import uuid

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text, event, func, text
from sqlalchemy.dialects.postgresql import UUID

from core.db import Base
from core.observability import METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, increment_metric


class AuditTrailEntry(Base):
    __tablename__ = "consent_audit_trail"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contract_id = Column(
        UUID(as_uuid=True),
        ForeignKey("consent_contracts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    action = Column(String(50), nullable=False)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    changed_by = Column(String(64), nullable=False, default="system", server_default=text("'system'"))
    change_reason = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


@event.listens_for(AuditTrailEntry, "before_update", propagate=True)
def _prevent_update(_mapper, _connection, _target) -> None:
    increment_metric(METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, reason="audit_trail_update")
    raise ValueError("consent_audit_trail is append-only")


@event.listens_for(AuditTrailEntry, "before_delete", propagate=True)
def _prevent_delete(_mapper, _connection, _target) -> None:
    increment_metric(METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, reason="audit_trail_delete")
    raise ValueError("consent_audit_trail is append-only")
