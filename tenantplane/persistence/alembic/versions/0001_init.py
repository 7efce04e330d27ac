"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("region", sa.String(), nullable=False),
        sa.Column("memory_mb", sa.Integer(), nullable=False),
        sa.Column("volume_gb", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("compute_app_name", sa.String(), nullable=False),
        sa.Column("compute_machine_id", sa.String(), nullable=True),
        sa.Column("compute_volume_id", sa.String(), nullable=True),
        sa.Column("hostname", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("source_event_id", sa.String(), nullable=True),
        sa.Column("last_event_seq", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("rotation_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rotation_failed_step", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("compute_app_name", name="uq_tenants_compute_app_name"),
    )
    op.create_index("ix_tenants_status", "tenants", ["status"])
    op.create_index("ix_tenants_owner_id", "tenants", ["owner_id"])
    op.create_index("ix_tenants_subscription_id", "tenants", ["subscription_id"])
    op.create_index("ix_tenants_owner_status", "tenants", ["owner_id", "status"])
    op.create_index(
        "uq_tenants_live_subscription",
        "tenants",
        ["subscription_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'deleted'"),
        sqlite_where=sa.text("status <> 'deleted'"),
    )

    op.create_table(
        "tenant_secrets",
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), primary_key=True),
        sa.Column("retrieval_token_hash", sa.String(), nullable=True),
        sa.Column("retrieval_token_sealed", sa.Text(), nullable=True),
        sa.Column("database_url_sealed", sa.Text(), nullable=False),
        sa.Column("signing_secret_sealed", sa.Text(), nullable=False),
        sa.Column("database_role", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("rotated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retrieved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tenant_secrets_retrieval_token_hash", "tenant_secrets", ["retrieval_token_hash"])

    # Append-only per-tenant log; (tenant_id, sequence_number) is the replay key.
    op.create_table(
        "provisioning_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("sequence_number", sa.BigInteger(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "sequence_number", name="uq_provisioning_events_seq"),
    )
    op.create_index(
        "ix_provisioning_events_tenant_seq", "provisioning_events", ["tenant_id", "sequence_number"]
    )

    op.create_table(
        "webhook_receipts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_receipts_provider_event"),
    )
    op.create_index("ix_webhook_receipts_tenant_id", "webhook_receipts", ["tenant_id"])

    op.create_table(
        "tenant_leases",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("scope", sa.String(), primary_key=True),
        sa.Column("holder", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "tenant_env_keys",
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), primary_key=True),
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "owner_api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="owner"),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_owner_api_keys_owner_id", "owner_api_keys", ["owner_id"])
    op.create_index("ix_owner_api_keys_key_hash", "owner_api_keys", ["key_hash"], unique=True)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
    )
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_owner_api_keys_key_hash", table_name="owner_api_keys")
    op.drop_index("ix_owner_api_keys_owner_id", table_name="owner_api_keys")
    op.drop_table("owner_api_keys")
    op.drop_table("tenant_env_keys")
    op.drop_table("tenant_leases")
    op.drop_index("ix_webhook_receipts_tenant_id", table_name="webhook_receipts")
    op.drop_table("webhook_receipts")
    op.drop_index("ix_provisioning_events_tenant_seq", table_name="provisioning_events")
    op.drop_table("provisioning_events")
    op.drop_index("ix_tenant_secrets_retrieval_token_hash", table_name="tenant_secrets")
    op.drop_table("tenant_secrets")
    op.drop_index("uq_tenants_live_subscription", table_name="tenants")
    op.drop_index("ix_tenants_owner_status", table_name="tenants")
    op.drop_index("ix_tenants_subscription_id", table_name="tenants")
    op.drop_index("ix_tenants_owner_id", table_name="tenants")
    op.drop_index("ix_tenants_status", table_name="tenants")
    op.drop_table("tenants")
