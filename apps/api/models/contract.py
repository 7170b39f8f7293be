import enum
import uuid
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


class ContractStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    REVOKED = "revoked"


class RuleAction(str, enum.Enum):
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    EXPIRE_CONTRACT = "expire_contract"
    LOG_ACCESS = "log_access"
    SEND_NOTIFICATION = "send_notification"


def _enum_column(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda x: [e.value for e in x],
    )


class ConsentContract(Base):
    __tablename__ = "consent_contracts"
    __table_args__ = (
        UniqueConstraint("contract_id", name="uq_consent_contracts_contract_id"),
        Index("ix_consent_contracts_patient_id", "patient_id"),
        Index("ix_consent_contracts_status", "status"),
        Index("ix_consent_contracts_expires_at", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contract_id: Mapped[str] = mapped_column(String(50), nullable=False)
    patient_id: Mapped[str] = mapped_column(String(64), ForeignKey("patients.id", ondelete="RESTRICT"), nullable=False)
    requester_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    data_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    purpose: Mapped[str] = mapped_column(Text, nullable=False)
    duration: Mapped[str] = mapped_column(String(50), nullable=False)
    conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[ContractStatus] = mapped_column(
        _enum_column(ContractStatus, "consentcontractstatus"),
        nullable=False,
        default=ContractStatus.PENDING,
        server_default=ContractStatus.PENDING.value,
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False, default="system", server_default=text("'system'"))

    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    approved_at: Mapped["DateTime | None"] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped["DateTime | None"] = mapped_column(DateTime(timezone=True), nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    rules: Mapped[list["ContractRule"]] = relationship(
        back_populates="contract",
        order_by="ContractRule.position",
        lazy="selectin",
    )
    requester: Mapped[Optional["User"]] = relationship("User", lazy="selectin", viewonly=True)

    @property
    def requester_name(self) -> str | None:
        return self.requester.display_name if self.requester is not None else None

    @property
    def requester_email(self) -> str | None:
        return self.requester.email if self.requester is not None else None


class ContractRule(Base):
    __tablename__ = "consent_contract_rules"
    __table_args__ = (
        UniqueConstraint("contract_uuid", "rule_id", name="uq_consent_contract_rules_contract_rule"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contract_uuid: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("consent_contracts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    rule_id: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    condition: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[RuleAction] = mapped_column(_enum_column(RuleAction, "consentruleaction"), nullable=False)
    parameters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    contract: Mapped[ConsentContract] = relationship(back_populates="rules")
