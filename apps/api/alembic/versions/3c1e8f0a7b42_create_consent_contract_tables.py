"""create consent contract tables

Revision ID: 3c1e8f0a7b42
Revises:
Create Date: 2026-10-18 09:30:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3c1e8f0a7b42"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CONTRACT_STATUSES = ("pending", "approved", "rejected", "expired", "revoked")
RULE_ACTIONS = ("auto_approve", "auto_reject", "expire_contract", "log_access", "send_notification")


def _has_table(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _has_index(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return any(idx["name"] == index_name for idx in inspector.get_indexes(table_name))


def _ensure_index(bind, table_name: str, index_name: str, columns: list[str]) -> None:
    inspector = sa.inspect(bind)
    if _has_table(inspector, table_name) and not _has_index(inspector, table_name, index_name):
        op.create_index(index_name, table_name, columns, unique=False)


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    # --- reference tables owned by the patient and user modules ---
    if not _has_table(inspector, "patients"):
        op.create_table(
            "patients",
            sa.Column("id", sa.String(length=64), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False),
            sa.Column("last_name", sa.String(length=100), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _has_table(inspector, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=64), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False),
            sa.Column("last_name", sa.String(length=100), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=50), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    # --- consent_contracts ---
    if not _has_table(inspector, "consent_contracts"):
        op.create_table(
            "consent_contracts",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("contract_id", sa.String(length=50), nullable=False),
            sa.Column("patient_id", sa.String(length=64), nullable=False),
            sa.Column("requester_id", sa.String(length=64), nullable=False),
            sa.Column("data_types", sa.JSON(), nullable=False),
            sa.Column("purpose", sa.Text(), nullable=False),
            sa.Column("duration", sa.String(length=50), nullable=False),
            sa.Column("conditions", sa.JSON(), nullable=False),
            sa.Column(
                "status",
                sa.Enum(*CONTRACT_STATUSES, name="consentcontractstatus", native_enum=False),
                server_default="pending",
                nullable=False,
            ),
            sa.Column("created_by", sa.String(length=64), server_default=sa.text("'system'"), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("revocation_reason", sa.Text(), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["requester_id"], ["users.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("contract_id", name="uq_consent_contracts_contract_id"),
        )
    _ensure_index(bind, "consent_contracts", "ix_consent_contracts_patient_id", ["patient_id"])
    _ensure_index(bind, "consent_contracts", "ix_consent_contracts_status", ["status"])
    _ensure_index(bind, "consent_contracts", "ix_consent_contracts_expires_at", ["expires_at"])

    # --- consent_contract_rules ---
    inspector = sa.inspect(bind)
    if not _has_table(inspector, "consent_contract_rules"):
        op.create_table(
            "consent_contract_rules",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("contract_uuid", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("rule_id", sa.String(length=64), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("condition", sa.Text(), nullable=False),
            sa.Column("action", sa.Enum(*RULE_ACTIONS, name="consentruleaction", native_enum=False), nullable=False),
            sa.Column("parameters", sa.JSON(), nullable=False),
            sa.Column("priority", sa.Integer(), nullable=False),
            sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
            sa.ForeignKeyConstraint(["contract_uuid"], ["consent_contracts.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("contract_uuid", "rule_id", name="uq_consent_contract_rules_contract_rule"),
        )
    _ensure_index(bind, "consent_contract_rules", "ix_consent_contract_rules_contract_uuid", ["contract_uuid"])

    # --- consent_audit_trail ---
    inspector = sa.inspect(bind)
    if not _has_table(inspector, "consent_audit_trail"):
        op.create_table(
            "consent_audit_trail",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("contract_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("action", sa.String(length=50), nullable=False),
            sa.Column("old_values", sa.JSON(), nullable=True),
            sa.Column("new_values", sa.JSON(), nullable=True),
            sa.Column("changed_by", sa.String(length=64), server_default=sa.text("'system'"), nullable=False),
            sa.Column("change_reason", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.ForeignKeyConstraint(["contract_id"], ["consent_contracts.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
    _ensure_index(bind, "consent_audit_trail", "ix_consent_audit_trail_contract_id", ["contract_id"])

    # --- consent_access_logs ---
    inspector = sa.inspect(bind)
    if not _has_table(inspector, "consent_access_logs"):
        op.create_table(
            "consent_access_logs",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("contract_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=False),
            sa.Column("action", sa.String(length=50), nullable=False),
            sa.Column("data_type", sa.String(length=50), nullable=False),
            sa.Column("resource_id", sa.String(length=128), nullable=True),
            sa.Column("ip_address", sa.String(length=64), nullable=True),
            sa.Column("user_agent", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("success", sa.Boolean(), server_default=sa.text("true"), nullable=False),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["contract_id"], ["consent_contracts.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
    _ensure_index(bind, "consent_access_logs", "ix_consent_access_logs_contract_id", ["contract_id"])
    _ensure_index(bind, "consent_access_logs", "ix_consent_access_logs_timestamp", ["timestamp"])


def downgrade() -> None:
    """Downgrade schema."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    for table_name in (
        "consent_access_logs",
        "consent_audit_trail",
        "consent_contract_rules",
        "consent_contracts",
        "users",
        "patients",
    ):
        if _has_table(inspector, table_name):
            op.drop_table(table_name)
