from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping SQLite-backed tests on the generic JSON type.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"
    __table_args__ = (
        Index("ix_tenants_owner_status", "owner_id", "status"),
        UniqueConstraint("compute_app_name", name="uq_tenants_compute_app_name"),
        # One live tenant per billing subscription; deleted tenants keep theirs for history.
        Index(
            "uq_tenants_live_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=text("status <> 'deleted'"),
            sqlite_where=text("status <> 'deleted'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Status is only ever written through the state machine's compare-and-set update.
    status: Mapped[str] = mapped_column(String, index=True)
    region: Mapped[str] = mapped_column(String)
    memory_mb: Mapped[int] = mapped_column(Integer)
    volume_gb: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    compute_app_name: Mapped[str] = mapped_column(String)
    compute_machine_id: Mapped[str | None] = mapped_column(String, nullable=True)
    compute_volume_id: Mapped[str | None] = mapped_column(String, nullable=True)
    hostname: Mapped[str] = mapped_column(String)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    plan_id: Mapped[str] = mapped_column(String)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Webhook event id that created this tenant, for idempotency audits.
    source_event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Per-tenant event sequence allocator, bumped in the same statement as status writes.
    last_event_seq: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    rotation_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rotation_failed_step: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TenantSecrets(Base):
    __tablename__ = "tenant_secrets"

    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), primary_key=True)
    # Only the token hash is matched; the sealed copy lets the owner see the URL until consumed.
    retrieval_token_hash: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    retrieval_token_sealed: Mapped[str | None] = mapped_column(Text, nullable=True)
    database_url_sealed: Mapped[str] = mapped_column(Text)
    signing_secret_sealed: Mapped[str] = mapped_column(Text)
    database_role: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retrieved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ProvisioningEvent(Base):
    __tablename__ = "provisioning_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence_number", name="uq_provisioning_events_seq"),
        Index("ix_provisioning_events_tenant_seq", "tenant_id", "sequence_number"),
    )

    # Append-only; rows are never updated after insert.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"))
    sequence_number: Mapped[int] = mapped_column(BigInteger)
    event_type: Mapped[str] = mapped_column(String)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class WebhookReceipt(Base):
    __tablename__ = "webhook_receipts"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_receipts_provider_event"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String)
    event_id: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantLease(Base):
    __tablename__ = "tenant_leases"

    # One row per (tenant, scope) acts as an exclusive advisory lock.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    scope: Mapped[str] = mapped_column(String, primary_key=True)
    holder: Mapped[str] = mapped_column(String)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TenantEnvKey(Base):
    __tablename__ = "tenant_env_keys"

    # Track key names only; values live in the provider secret store.
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), primary_key=True)
    key: Mapped[str] = mapped_column(String, primary_key=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OwnerApiKey(Base):
    __tablename__ = "owner_api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    role: Mapped[str] = mapped_column(String, default="owner")
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
