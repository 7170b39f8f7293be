import uuid

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, event, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base
from core.observability import METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, increment_metric


class AccessLogEntry(Base):
    __tablename__ = "consent_access_logs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contract_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("consent_contracts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    data_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


@event.listens_for(AccessLogEntry, "before_update", propagate=True)
def _prevent_update(_mapper, _connection, _target) -> None:
    increment_metric(METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, reason="access_log_update")
    raise ValueError("consent_access_logs is append-only")


@event.listens_for(AccessLogEntry, "before_delete", propagate=True)
def _prevent_delete(_mapper, _connection, _target) -> None:
    increment_metric(METRIC_APPEND_ONLY_VIOLATION_ATTEMPT, reason="access_log_delete")
    raise ValueError("consent_access_logs is append-only")
